from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from cmdbgraph.core.errors import CmdbError, CmdbValidationError
from cmdbgraph.persistence.entity_store import EntityStore
from cmdbgraph.persistence.guards import require_tenant
from cmdbgraph.services.details import replace_details
from cmdbgraph.services.graph import DIRECTIONS, PARENT_TO_CHILD, EdgeKey, relate
from cmdbgraph.services.upsert import UpsertResult, upsert_ci


logger = logging.getLogger(__name__)

TOP_LEVEL = 0


@dataclass(frozen=True)
class ChildPayload:
    category: str
    attributes: dict[str, Any]
    relationship: str
    direction: str = PARENT_TO_CHILD
    # Level this child registers under so later children can attach to it.
    mapping_level: int | None = None
    # Level of the CI this child attaches to; 0 is the top-level CI.
    parent_mapping_level: int = TOP_LEVEL


@dataclass(frozen=True)
class CompositePayload:
    category: str
    attributes: dict[str, Any]
    children: list[ChildPayload] = field(default_factory=list)
    additional_tables: dict[str, list[dict[str, Any]]] | None = None


class MappingLevels:
    """Ordered association of mapping level -> resolved ``(identity, category)``."""

    def __init__(self) -> None:
        self._levels: dict[int, tuple[str, str]] = {}

    def bind(self, level: int, identity: str, category: str) -> None:
        if level in self._levels:
            raise CmdbValidationError(f"mapping_level {level} is already bound")
        self._levels[level] = (identity, category)

    def resolve(self, level: int) -> tuple[str, str]:
        try:
            return self._levels[level]
        except KeyError:
            raise CmdbValidationError(f"parent_mapping_level {level} does not refer to an earlier CI") from None


@dataclass
class ChildResult:
    index: int
    category: str
    mapping_level: int | None
    # ok | failed | aborted
    status: str
    identity: str | None = None
    existed: bool | None = None
    relationship_created: bool = False
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "category": self.category,
            "mapping_level": self.mapping_level,
            "status": self.status,
            "identity": self.identity,
            "existed": self.existed,
            "relationship_created": self.relationship_created,
            "error": self.error,
        }


@dataclass
class CompositeIngestResult:
    identity: str
    category: str
    existed: bool
    children: list[ChildResult] = field(default_factory=list)
    # A store failure stopped processing of the remaining children.
    aborted: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "identity": self.identity,
            "category": self.category,
            "existed": self.existed,
            "aborted": self.aborted,
            "children": [child.to_dict() for child in self.children],
        }


async def _ingest_child(
    session: AsyncSession,
    store: EntityStore,
    *,
    tenant_id: str,
    child: ChildPayload,
    levels: MappingLevels,
    created_by: str | None,
) -> tuple[UpsertResult, bool]:
    if not child.relationship:
        raise CmdbValidationError("relationship is required for child CIs")
    if child.direction not in DIRECTIONS:
        raise CmdbValidationError(f"Invalid relationship direction: {child.direction!r}")
    if child.mapping_level is not None and child.mapping_level <= TOP_LEVEL:
        raise CmdbValidationError("mapping_level must be positive")
    parent_id, parent_category = levels.resolve(child.parent_mapping_level or TOP_LEVEL)
    result = await upsert_ci(
        session, store, tenant_id=tenant_id, category=child.category, attributes=child.attributes
    )
    if child.mapping_level is not None:
        levels.bind(child.mapping_level, result.identity, result.category)
    key = EdgeKey.oriented(
        source_id=parent_id,
        source_category=parent_category,
        relationship_name=child.relationship,
        target_id=result.identity,
        target_category=result.category,
        direction=child.direction,
    )
    created = await relate(session, tenant_id=tenant_id, key=key, created_by=created_by)
    return result, created


async def ingest_composite(
    session: AsyncSession,
    store: EntityStore,
    *,
    tenant_id: str,
    payload: CompositePayload,
    created_by: str | None = None,
) -> CompositeIngestResult:
    """Upsert a top-level CI, its detail tables and its children, wiring edges.

    A failure on the top-level CI fails the call. Children are best effort: a
    rejected child is reported and skipped, while a store failure aborts the
    remaining children. Each child commits on its own, so children processed
    before a failure are kept.
    """
    require_tenant(tenant_id)
    top = await upsert_ci(
        session, store, tenant_id=tenant_id, category=payload.category, attributes=payload.attributes
    )
    if payload.additional_tables:
        await replace_details(
            session,
            tenant_id=tenant_id,
            category=top.category,
            entity_id=top.identity,
            tables=payload.additional_tables,
        )
    levels = MappingLevels()
    levels.bind(TOP_LEVEL, top.identity, top.category)
    outcome = CompositeIngestResult(identity=top.identity, category=top.category, existed=top.existed)
    for index, child in enumerate(payload.children):
        if outcome.aborted:
            outcome.children.append(
                ChildResult(index=index, category=child.category, mapping_level=child.mapping_level, status="aborted")
            )
            continue
        try:
            result, created = await _ingest_child(
                session, store, tenant_id=tenant_id, child=child, levels=levels, created_by=created_by
            )
        except CmdbError as exc:
            await session.rollback()
            logger.warning(
                "ci_child_rejected tenant=%s parent=%s index=%s error=%s", tenant_id, top.identity, index, exc
            )
            outcome.children.append(
                ChildResult(
                    index=index,
                    category=child.category,
                    mapping_level=child.mapping_level,
                    status="failed",
                    error=str(exc),
                )
            )
            continue
        except SQLAlchemyError as exc:
            await session.rollback()
            logger.warning(
                "ci_child_store_failure tenant=%s parent=%s index=%s error=%s",
                tenant_id,
                top.identity,
                index,
                exc.__class__.__name__,
            )
            outcome.aborted = True
            outcome.children.append(
                ChildResult(
                    index=index,
                    category=child.category,
                    mapping_level=child.mapping_level,
                    status="failed",
                    error=exc.__class__.__name__,
                )
            )
            continue
        outcome.children.append(
            ChildResult(
                index=index,
                category=result.category,
                mapping_level=child.mapping_level,
                status="ok",
                identity=result.identity,
                existed=result.existed,
                relationship_created=created,
            )
        )
    logger.info(
        "ci_composite_ingested tenant=%s category=%s identity=%s children=%s aborted=%s",
        tenant_id,
        top.category,
        top.identity,
        len(payload.children),
        outcome.aborted,
    )
    return outcome


@dataclass
class BatchItemResult:
    index: int
    result: CompositeIngestResult | None = None
    error: str | None = None
    error_code: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "result": self.result.to_dict() if self.result else None,
            "error": self.error,
            "error_code": self.error_code,
        }


async def ingest_batch(
    session: AsyncSession,
    store: EntityStore,
    *,
    tenant_id: str,
    payloads: list[CompositePayload],
    created_by: str | None = None,
) -> list[BatchItemResult]:
    # Payloads are independent; one failing never stops the rest.
    require_tenant(tenant_id)
    results: list[BatchItemResult] = []
    for index, payload in enumerate(payloads):
        try:
            outcome = await ingest_composite(
                session, store, tenant_id=tenant_id, payload=payload, created_by=created_by
            )
        except CmdbError as exc:
            await session.rollback()
            results.append(BatchItemResult(index=index, error=str(exc), error_code=exc.code))
            continue
        except SQLAlchemyError as exc:
            await session.rollback()
            logger.warning("ci_batch_store_failure tenant=%s index=%s error=%s", tenant_id, index, exc.__class__.__name__)
            results.append(BatchItemResult(index=index, error=exc.__class__.__name__, error_code="STORE_UNAVAILABLE"))
            continue
        results.append(BatchItemResult(index=index, result=outcome))
    return results
