from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from cmdbgraph.core.config import get_settings
from cmdbgraph.core.errors import CmdbValidationError, TraversalCancelledError
from cmdbgraph.persistence.entity_store import EntityStore
from cmdbgraph.persistence.guards import require_tenant
from cmdbgraph.persistence.repos import relationships as relationships_repo
from cmdbgraph.services.graph import CHILD_TO_PARENT, PARENT_TO_CHILD


logger = logging.getLogger(__name__)


@dataclass
class CompositeNode:
    identity: str
    category: str
    # None when the CI could not be resolved.
    attributes: dict[str, Any] | None = None
    relationship: str | None = None
    direction: str | None = None
    children: list["CompositeNode"] = field(default_factory=list)
    # Set when cancellation cut this node's expansion short.
    truncated: bool = False

    @property
    def resolved(self) -> bool:
        return self.attributes is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "identity": self.identity,
            "category": self.category,
            "attributes": self.attributes,
            "relationship": self.relationship,
            "direction": self.direction,
            "truncated": self.truncated,
            "children": [child.to_dict() for child in self.children],
        }


class _Walk:
    def __init__(
        self,
        session: AsyncSession,
        store: EntityStore,
        tenant_id: str,
        cancel_event: asyncio.Event | None,
        partial_on_cancel: bool,
    ) -> None:
        self.session = session
        self.store = store
        self.tenant_id = tenant_id
        self.cancel_event = cancel_event
        self.partial_on_cancel = partial_on_cancel
        self.cancelled = False

    async def expand(
        self,
        node: CompositeNode,
        depth_remaining: int,
        path: frozenset[tuple[str, str]],
    ) -> CompositeNode:
        if not self.store.has(node.category):
            return node
        table = self.store.get(node.category)
        item = await table.get(self.session, self.tenant_id, node.identity)
        if item is None:
            return node
        node.attributes = item.snapshot()
        if depth_remaining <= 0:
            return node
        # Depth boundaries double as cancellation checkpoints.
        if self.cancel_event is not None and self.cancel_event.is_set():
            if not self.partial_on_cancel:
                raise TraversalCancelledError(f"Traversal cancelled at {node.category} {node.identity}")
            self.cancelled = True
            node.truncated = True
            return node
        path = path | {(node.identity, table.category.lower())}
        neighbours: list[tuple[str, str, str, str]] = []
        for edge in await relationships_repo.list_child_edges(
            self.session, tenant_id=self.tenant_id, parent_id=node.identity
        ):
            neighbours.append((edge.child_id, edge.child_category, edge.relationship_name, PARENT_TO_CHILD))
        for edge in await relationships_repo.list_parent_edges(
            self.session, tenant_id=self.tenant_id, child_id=node.identity
        ):
            neighbours.append((edge.parent_id, edge.parent_category, edge.relationship_name, CHILD_TO_PARENT))
        for other_id, other_category, relationship, direction in neighbours:
            # Anything already on the current path, the root included, closes a cycle.
            if (other_id, other_category.lower()) in path:
                continue
            child = CompositeNode(
                identity=other_id,
                category=other_category,
                relationship=relationship,
                direction=direction,
            )
            node.children.append(await self.expand(child, depth_remaining - 1, path))
        return node


async def expand(
    session: AsyncSession,
    store: EntityStore,
    *,
    tenant_id: str,
    root_id: str,
    root_category: str,
    depth: int,
    cancel_event: asyncio.Event | None = None,
    partial_on_cancel: bool = True,
) -> CompositeNode:
    """Expand the relationship graph around a CI into a nested tree.

    Edges are followed in both directions. A node ``depth`` hops from the root is
    resolved but not expanded further, and no node appears twice on one
    root-to-leaf path. Siblings reached through different paths are not
    deduplicated.

    If ``cancel_event`` is set while walking, the walk stops at the next depth
    boundary: either the partial tree is returned (truncated nodes are flagged)
    or :class:`TraversalCancelledError` is raised, per ``partial_on_cancel``.
    """
    require_tenant(tenant_id)
    settings = get_settings()
    if depth < 0 or depth > settings.cmdb_traversal_max_depth:
        raise CmdbValidationError(
            f"depth must be between 0 and {settings.cmdb_traversal_max_depth}, got {depth}"
        )
    root_schema = store.registry.schema(root_category)
    walk = _Walk(session, store, tenant_id, cancel_event, partial_on_cancel)
    root = CompositeNode(identity=root_id, category=root_schema.name)
    await walk.expand(root, depth, frozenset())
    if walk.cancelled:
        logger.info("ci_traversal_cancelled tenant=%s root=%s depth=%s", tenant_id, root_id, depth)
    return root
