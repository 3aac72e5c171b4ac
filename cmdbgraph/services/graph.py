from __future__ import annotations

from dataclasses import dataclass
import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from cmdbgraph.core.errors import (
    CmdbValidationError,
    ConstraintViolationError,
    EntityNotFoundError,
    ManagedDeleteBlockedError,
)
from cmdbgraph.persistence.entity_store import EntityStore
from cmdbgraph.persistence.guards import require_tenant
from cmdbgraph.persistence.repos import relationships as relationships_repo
from cmdbgraph.services.baselines import record_baseline
from cmdbgraph.services.details import purge_details


logger = logging.getLogger(__name__)

PARENT_TO_CHILD = "parent-to-child"
CHILD_TO_PARENT = "child-to-parent"
DIRECTIONS = (PARENT_TO_CHILD, CHILD_TO_PARENT)


@dataclass(frozen=True)
class EdgeKey:
    parent_id: str
    parent_category: str
    relationship_name: str
    child_id: str
    child_category: str

    @classmethod
    def oriented(
        cls,
        *,
        source_id: str,
        source_category: str,
        relationship_name: str,
        target_id: str,
        target_category: str,
        direction: str = PARENT_TO_CHILD,
    ) -> "EdgeKey":
        # child-to-parent swaps the endpoints so the source becomes the child.
        if direction not in DIRECTIONS:
            raise CmdbValidationError(f"Invalid relationship direction: {direction!r}")
        if direction == CHILD_TO_PARENT:
            return cls(target_id, target_category, relationship_name, source_id, source_category)
        return cls(source_id, source_category, relationship_name, target_id, target_category)

    def validate(self) -> None:
        for name in ("parent_id", "parent_category", "relationship_name", "child_id", "child_category"):
            if not getattr(self, name):
                raise CmdbValidationError(f"{name} is required")


@dataclass(frozen=True)
class DeleteOutcome:
    deleted: list[str]
    skipped_managed: list[str]


async def relate(
    session: AsyncSession,
    *,
    tenant_id: str,
    key: EdgeKey,
    created_by: str | None = None,
) -> bool:
    """Write one edge and commit; returns whether a new edge was written.

    Idempotent under contention too: when a concurrent writer inserts the same
    edge between the existence check and the flush, the unique constraint
    fires, the session is rolled back and the stored edge is reported as
    already present.
    """
    require_tenant(tenant_id)
    key.validate()
    try:
        _, created = await relationships_repo.create_edge(
            session,
            tenant_id=tenant_id,
            parent_id=key.parent_id,
            parent_category=key.parent_category,
            relationship_name=key.relationship_name,
            child_id=key.child_id,
            child_category=key.child_category,
            created_by=created_by,
        )
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        existing = await relationships_repo.get_edge(
            session,
            tenant_id=tenant_id,
            parent_id=key.parent_id,
            relationship_name=key.relationship_name,
            child_id=key.child_id,
        )
        if existing is None:
            raise ConstraintViolationError(f"Conflicting edge {key.relationship_name!r}") from exc
        logger.info(
            "ci_relate_conflict tenant=%s parent=%s relationship=%s child=%s",
            tenant_id,
            key.parent_id,
            key.relationship_name,
            key.child_id,
        )
        return False
    if created:
        logger.info(
            "ci_related tenant=%s parent=%s relationship=%s child=%s",
            tenant_id,
            key.parent_id,
            key.relationship_name,
            key.child_id,
        )
    return created


async def unrelate(session: AsyncSession, *, tenant_id: str, key: EdgeKey) -> int:
    # Removing an edge that does not exist is a no-op.
    require_tenant(tenant_id)
    key.validate()
    removed = await relationships_repo.delete_edges(
        session,
        tenant_id=tenant_id,
        parent_id=key.parent_id,
        parent_category=key.parent_category,
        relationship_name=key.relationship_name,
        child_id=key.child_id,
        child_category=key.child_category,
    )
    await session.commit()
    logger.info(
        "ci_unrelated tenant=%s parent=%s relationship=%s child=%s removed=%s",
        tenant_id,
        key.parent_id,
        key.relationship_name,
        key.child_id,
        removed,
    )
    return removed


async def _propagate(
    session: AsyncSession, store: EntityStore, *, tenant_id: str, entity_id: str, managed: bool
) -> list[str]:
    updated: list[str] = []
    child_edges = await relationships_repo.list_child_edges(session, tenant_id=tenant_id, parent_id=entity_id)
    parent_edges = await relationships_repo.list_parent_edges(session, tenant_id=tenant_id, child_id=entity_id)
    neighbours = [(edge.child_id, edge.child_category) for edge in child_edges if edge.is_contained]
    neighbours += [(edge.parent_id, edge.parent_category) for edge in parent_edges if edge.is_contained]
    for other_id, other_category in neighbours:
        if not store.has(other_category):
            logger.warning(
                "ci_propagate_unknown_category tenant=%s entity=%s category=%s", tenant_id, other_id, other_category
            )
            continue
        rows = await store.get(other_category).set_managed(
            session, tenant_id=tenant_id, identity=other_id, managed=managed
        )
        if rows:
            updated.append(other_id)
    return updated


async def propagate_managed_state(
    session: AsyncSession,
    store: EntityStore,
    *,
    tenant_id: str,
    entity_id: str,
    managed: bool,
) -> list[str]:
    """Copy ``managed`` onto directly contained neighbours, in both directions.

    Single hop: the neighbours' own contained neighbours are left alone. Returns
    the identities that were updated.
    """
    require_tenant(tenant_id)
    updated = await _propagate(session, store, tenant_id=tenant_id, entity_id=entity_id, managed=managed)
    await session.commit()
    logger.info(
        "ci_managed_propagated tenant=%s entity=%s managed=%s neighbours=%s",
        tenant_id,
        entity_id,
        managed,
        len(updated),
    )
    return updated


async def set_managed_state(
    session: AsyncSession,
    store: EntityStore,
    *,
    tenant_id: str,
    category: str,
    entity_ids: list[str],
    managed: bool,
) -> dict[str, list[str]]:
    # Move each CI, then its contained neighbours; returns entity -> propagated identities.
    require_tenant(tenant_id)
    table = store.get(category)
    missing = [
        entity_id for entity_id in entity_ids if await table.get(session, tenant_id, entity_id) is None
    ]
    if missing:
        raise EntityNotFoundError(f"{table.category} not found: {', '.join(missing)}")
    moved: dict[str, list[str]] = {}
    for entity_id in entity_ids:
        await table.set_managed(session, tenant_id=tenant_id, identity=entity_id, managed=managed)
        moved[entity_id] = await _propagate(
            session, store, tenant_id=tenant_id, entity_id=entity_id, managed=managed
        )
    await session.commit()
    logger.info(
        "ci_managed_state_set tenant=%s category=%s managed=%s count=%s",
        tenant_id,
        table.category,
        managed,
        len(entity_ids),
    )
    return moved


async def _delete_cascade(
    session: AsyncSession,
    store: EntityStore,
    *,
    tenant_id: str,
    entity_id: str,
    category: str,
    visited: set[str],
    outcome: DeleteOutcome,
) -> None:
    visited.add(entity_id)
    table = store.get(category)
    item = await table.get(session, tenant_id, entity_id)
    if item is None:
        return
    # Contained children go first, while the edges that point at them still exist.
    for edge in await relationships_repo.list_child_edges(session, tenant_id=tenant_id, parent_id=entity_id):
        if not edge.is_contained or edge.child_id in visited or not store.has(edge.child_category):
            continue
        child = await store.get(edge.child_category).get(session, tenant_id, edge.child_id)
        if child is None:
            continue
        if child.managed:
            logger.warning(
                "ci_delete_child_managed tenant=%s parent=%s child=%s", tenant_id, entity_id, edge.child_id
            )
            outcome.skipped_managed.append(edge.child_id)
            continue
        await _delete_cascade(
            session,
            store,
            tenant_id=tenant_id,
            entity_id=edge.child_id,
            category=edge.child_category,
            visited=visited,
            outcome=outcome,
        )
    await record_baseline(
        session,
        tenant_id=tenant_id,
        category=table.category,
        entity_id=entity_id,
        operation="delete",
        snapshot=item.snapshot(),
    )
    await purge_details(session, tenant_id=tenant_id, entity_id=entity_id, commit=False)
    await relationships_repo.delete_edges_touching(session, tenant_id=tenant_id, entity_id=entity_id)
    await table.delete(session, tenant_id=tenant_id, identity=entity_id)
    outcome.deleted.append(entity_id)


async def delete_entity(
    session: AsyncSession,
    store: EntityStore,
    *,
    tenant_id: str,
    category: str,
    entity_id: str,
) -> DeleteOutcome:
    """Delete an unmanaged CI together with its contained children.

    Every edge touching a deleted CI is removed, its detail rows are purged and a
    terminal ``delete`` baseline record is written. Managed children are kept and
    reported in ``skipped_managed``.
    """
    require_tenant(tenant_id)
    table = store.get(category)
    item = await table.get(session, tenant_id, entity_id)
    if item is None:
        raise EntityNotFoundError(f"{table.category} {entity_id} not found")
    if item.managed:
        raise ManagedDeleteBlockedError(f"{table.category} {entity_id} is managed and cannot be deleted")
    outcome = DeleteOutcome(deleted=[], skipped_managed=[])
    await _delete_cascade(
        session,
        store,
        tenant_id=tenant_id,
        entity_id=entity_id,
        category=table.category,
        visited=set(),
        outcome=outcome,
    )
    await session.commit()
    logger.info(
        "ci_deleted tenant=%s category=%s identity=%s cascaded=%s skipped_managed=%s",
        tenant_id,
        table.category,
        entity_id,
        len(outcome.deleted) - 1,
        len(outcome.skipped_managed),
    )
    return outcome
