from __future__ import annotations

from typing import Any

from sqlalchemy import delete, insert, select
from sqlalchemy.ext.asyncio import AsyncSession

from cmdbgraph.domain.models import (
    InboundConnection,
    InstalledPackage,
    ListeningPort,
    OutboundConnection,
    RunningProcess,
)
from cmdbgraph.persistence.guards import require_tenant_id, tenant_predicate


# Detail kind name as it appears in ingestion payloads -> model.
DETAIL_MODELS = {
    "inbound_connections": InboundConnection,
    "outbound_connections": OutboundConnection,
    "running_processes": RunningProcess,
    "installed_packages": InstalledPackage,
    "listening_ports": ListeningPort,
}


async def delete_discovered(session: AsyncSession, model, *, tenant_id: str, entity_id: str) -> int:
    # Manually created rows are never touched by discovery.
    require_tenant_id(tenant_id)
    result = await session.execute(
        delete(model).where(
            tenant_predicate(model, tenant_id),
            model.entity_id == entity_id,
            model.manually_created.is_(False),
        )
    )
    return int(result.rowcount or 0)


async def bulk_insert(session: AsyncSession, model, rows: list[dict[str, Any]]) -> None:
    if rows:
        await session.execute(insert(model), rows)


async def delete_all(session: AsyncSession, *, tenant_id: str, entity_id: str) -> int:
    require_tenant_id(tenant_id)
    removed = 0
    for model in DETAIL_MODELS.values():
        result = await session.execute(
            delete(model).where(tenant_predicate(model, tenant_id), model.entity_id == entity_id)
        )
        removed += int(result.rowcount or 0)
    return removed


async def list_rows(session: AsyncSession, model, *, tenant_id: str, entity_id: str) -> list[Any]:
    require_tenant_id(tenant_id)
    result = await session.execute(
        select(model)
        .where(tenant_predicate(model, tenant_id), model.entity_id == entity_id)
        .order_by(model.id.asc())
    )
    return list(result.scalars().all())
