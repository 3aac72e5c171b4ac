from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from cmdbgraph.domain.models import BaselineDefinition, BaselineRecord, TenantCmdbSettings
from cmdbgraph.persistence.guards import require_tenant_id, tenant_predicate


async def list_enabled_definitions(
    session: AsyncSession,
    *,
    tenant_id: str,
    category: str,
) -> list[BaselineDefinition]:
    require_tenant_id(tenant_id)
    result = await session.execute(
        select(BaselineDefinition)
        .where(
            tenant_predicate(BaselineDefinition, tenant_id),
            func.lower(BaselineDefinition.category) == category.lower(),
            BaselineDefinition.enabled.is_(True),
        )
        .order_by(BaselineDefinition.id.asc())
    )
    return list(result.scalars().all())


async def create_definition(
    session: AsyncSession,
    *,
    tenant_id: str,
    category: str,
    name: str,
    max_level: int = 10,
    enabled: bool = True,
) -> BaselineDefinition:
    require_tenant_id(tenant_id)
    definition = BaselineDefinition(
        tenant_id=tenant_id,
        category=category,
        name=name,
        max_level=max_level,
        enabled=enabled,
    )
    session.add(definition)
    await session.flush()
    return definition


async def default_tracking_enabled(session: AsyncSession, *, tenant_id: str) -> bool:
    require_tenant_id(tenant_id)
    row = await session.get(TenantCmdbSettings, tenant_id)
    return bool(row and row.default_change_tracking)


async def set_default_tracking(session: AsyncSession, *, tenant_id: str, enabled: bool) -> TenantCmdbSettings:
    require_tenant_id(tenant_id)
    row = await session.get(TenantCmdbSettings, tenant_id)
    if row is None:
        row = TenantCmdbSettings(tenant_id=tenant_id, default_change_tracking=enabled)
        session.add(row)
    else:
        row.default_change_tracking = enabled
    await session.flush()
    return row


def _stream(tenant_id: str, entity_id: str, baseline_name: str):
    return (
        tenant_predicate(BaselineRecord, tenant_id),
        BaselineRecord.entity_id == entity_id,
        BaselineRecord.baseline_name == baseline_name,
    )


async def has_insert_record(
    session: AsyncSession, *, tenant_id: str, entity_id: str, baseline_name: str
) -> bool:
    require_tenant_id(tenant_id)
    result = await session.execute(
        select(BaselineRecord.id)
        .where(*_stream(tenant_id, entity_id, baseline_name), BaselineRecord.operation == "insert")
        .limit(1)
    )
    return result.scalar_one_or_none() is not None


async def list_update_ids(
    session: AsyncSession, *, tenant_id: str, entity_id: str, baseline_name: str
) -> list[int]:
    # Oldest first; id breaks ties between records stamped in the same instant.
    require_tenant_id(tenant_id)
    result = await session.execute(
        select(BaselineRecord.id)
        .where(*_stream(tenant_id, entity_id, baseline_name), BaselineRecord.operation == "update")
        .order_by(BaselineRecord.created_at.asc(), BaselineRecord.id.asc())
    )
    return list(result.scalars().all())


async def delete_records(session: AsyncSession, *, tenant_id: str, record_ids: list[int]) -> int:
    if not record_ids:
        return 0
    require_tenant_id(tenant_id)
    result = await session.execute(
        delete(BaselineRecord).where(
            tenant_predicate(BaselineRecord, tenant_id),
            BaselineRecord.id.in_(record_ids),
        )
    )
    return int(result.rowcount or 0)


async def append_record(
    session: AsyncSession,
    *,
    tenant_id: str,
    entity_id: str,
    category: str,
    baseline_name: str,
    operation: str,
    snapshot: dict[str, Any],
    created_at: datetime,
) -> BaselineRecord:
    require_tenant_id(tenant_id)
    record = BaselineRecord(
        tenant_id=tenant_id,
        entity_id=entity_id,
        category=category,
        baseline_name=baseline_name,
        operation=operation,
        snapshot_json=snapshot,
        created_at=created_at,
    )
    session.add(record)
    await session.flush()
    return record


async def list_records(
    session: AsyncSession,
    *,
    tenant_id: str,
    entity_id: str,
    baseline_name: str,
    operation: str | None = None,
) -> list[BaselineRecord]:
    require_tenant_id(tenant_id)
    stmt = select(BaselineRecord).where(*_stream(tenant_id, entity_id, baseline_name))
    if operation is not None:
        stmt = stmt.where(BaselineRecord.operation == operation)
    result = await session.execute(stmt.order_by(BaselineRecord.created_at.asc(), BaselineRecord.id.asc()))
    return list(result.scalars().all())
