from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from cmdbgraph.domain.models import RelatedCi, RelationshipKind
from cmdbgraph.persistence.guards import require_tenant_id, tenant_predicate


@dataclass(frozen=True)
class EdgeView:
    # Stored edge joined with its kind; unknown kinds are not contained.
    parent_id: str
    parent_category: str
    relationship_name: str
    child_id: str
    child_category: str
    is_contained: bool


def _edge_select():
    return select(RelatedCi, RelationshipKind.is_contained).outerjoin(
        RelationshipKind, RelationshipKind.name == RelatedCi.relationship_name
    )


def _to_view(row: RelatedCi, is_contained: bool | None) -> EdgeView:
    return EdgeView(
        parent_id=row.parent_id,
        parent_category=row.parent_category,
        relationship_name=row.relationship_name,
        child_id=row.child_id,
        child_category=row.child_category,
        is_contained=bool(is_contained),
    )


async def get_edge(
    session: AsyncSession,
    *,
    tenant_id: str,
    parent_id: str,
    relationship_name: str,
    child_id: str,
) -> RelatedCi | None:
    require_tenant_id(tenant_id)
    result = await session.execute(
        select(RelatedCi).where(
            tenant_predicate(RelatedCi, tenant_id),
            RelatedCi.parent_id == parent_id,
            RelatedCi.relationship_name == relationship_name,
            RelatedCi.child_id == child_id,
        )
    )
    return result.scalars().first()


async def create_edge(
    session: AsyncSession,
    *,
    tenant_id: str,
    parent_id: str,
    parent_category: str,
    relationship_name: str,
    child_id: str,
    child_category: str,
    created_by: str | None = None,
) -> tuple[RelatedCi, bool]:
    # Returns (edge, created); an existing edge for the key tuple is reused.
    existing = await get_edge(
        session,
        tenant_id=tenant_id,
        parent_id=parent_id,
        relationship_name=relationship_name,
        child_id=child_id,
    )
    if existing is not None:
        return existing, False
    edge = RelatedCi(
        tenant_id=tenant_id,
        parent_id=parent_id,
        parent_category=parent_category,
        relationship_name=relationship_name,
        child_id=child_id,
        child_category=child_category,
        created_by=created_by,
    )
    session.add(edge)
    await session.flush()
    return edge, True


async def delete_edges(
    session: AsyncSession,
    *,
    tenant_id: str,
    parent_id: str,
    parent_category: str,
    relationship_name: str,
    child_id: str,
    child_category: str,
) -> int:
    require_tenant_id(tenant_id)
    result = await session.execute(
        delete(RelatedCi).where(
            tenant_predicate(RelatedCi, tenant_id),
            RelatedCi.parent_id == parent_id,
            RelatedCi.parent_category == parent_category,
            RelatedCi.relationship_name == relationship_name,
            RelatedCi.child_id == child_id,
            RelatedCi.child_category == child_category,
        )
    )
    return int(result.rowcount or 0)


async def delete_edges_touching(session: AsyncSession, *, tenant_id: str, entity_id: str) -> int:
    # Drop every edge where the entity is either endpoint.
    require_tenant_id(tenant_id)
    result = await session.execute(
        delete(RelatedCi).where(
            tenant_predicate(RelatedCi, tenant_id),
            or_(RelatedCi.parent_id == entity_id, RelatedCi.child_id == entity_id),
        )
    )
    return int(result.rowcount or 0)


async def list_child_edges(session: AsyncSession, *, tenant_id: str, parent_id: str) -> list[EdgeView]:
    # Edges where the entity is the parent side.
    require_tenant_id(tenant_id)
    stmt = (
        _edge_select()
        .where(tenant_predicate(RelatedCi, tenant_id), RelatedCi.parent_id == parent_id)
        .order_by(RelatedCi.id.asc())
    )
    result = await session.execute(stmt)
    return [_to_view(row, contained) for row, contained in result.all()]


async def list_parent_edges(session: AsyncSession, *, tenant_id: str, child_id: str) -> list[EdgeView]:
    # Edges where the entity is the child side.
    require_tenant_id(tenant_id)
    stmt = (
        _edge_select()
        .where(tenant_predicate(RelatedCi, tenant_id), RelatedCi.child_id == child_id)
        .order_by(RelatedCi.id.asc())
    )
    result = await session.execute(stmt)
    return [_to_view(row, contained) for row, contained in result.all()]


async def upsert_kind(
    session: AsyncSession, *, name: str, is_contained: bool, description: str | None = None
) -> RelationshipKind:
    kind = await session.get(RelationshipKind, name)
    if kind is None:
        kind = RelationshipKind(name=name, is_contained=is_contained, description=description)
        session.add(kind)
    else:
        kind.is_contained = is_contained
        if description is not None:
            kind.description = description
    await session.flush()
    return kind
