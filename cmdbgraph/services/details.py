from __future__ import annotations

import logging
from typing import Any, Mapping

from sqlalchemy.ext.asyncio import AsyncSession

from cmdbgraph.core.errors import CmdbValidationError
from cmdbgraph.persistence.guards import require_tenant
from cmdbgraph.persistence.repos import details as details_repo
from cmdbgraph.persistence.repos.details import DETAIL_MODELS


logger = logging.getLogger(__name__)

# Discovery agents report detail rows with these field names.
FIELD_ALIASES = {
    "IpAddress": "ip_address",
    "LocalPort": "local_port",
    "ServiceName": "service_name",
    "ProcessName": "process_name",
    "RemotePort": "remote_port",
    "ForeignAddress": "remote_ip_address",
    "ConnectionType": "connection_protocol",
    "ProcessId": "process_id",
    "Command": "command",
    "Description": "description",
    "ApplicationName": "application_name",
    "SoftwareVersion": "version",
    "InstalledDate": "installed_date",
    "ServerName": "manufacturer",
}


def _detail_row(model, raw: Mapping[str, Any], *, tenant_id: str, entity_id: str, category: str) -> dict[str, Any]:
    columns = set(model.__table__.columns.keys()) - {"id", "tenant_id", "entity_id", "category", "manually_created"}
    row: dict[str, Any] = {}
    for key, value in raw.items():
        column = FIELD_ALIASES.get(key, key)
        if column not in columns:
            raise CmdbValidationError(f"Unknown field {key!r} for {model.__tablename__}")
        row[column] = None if value is None else str(value)
    row.update(tenant_id=tenant_id, entity_id=entity_id, category=category, manually_created=False)
    return row


async def replace_details(
    session: AsyncSession,
    *,
    tenant_id: str,
    category: str,
    entity_id: str,
    tables: Mapping[str, list[Mapping[str, Any]]],
    commit: bool = True,
) -> dict[str, int]:
    """Replace discovered detail rows for each kind present in ``tables``.

    Kinds absent from ``tables`` are left untouched; an empty list clears the kind.
    Manually created rows always survive.
    """
    require_tenant(tenant_id)
    unknown = sorted(set(tables) - set(DETAIL_MODELS))
    if unknown:
        raise CmdbValidationError(f"Unknown detail tables: {', '.join(unknown)}")
    written: dict[str, int] = {}
    for kind, raw_rows in tables.items():
        model = DETAIL_MODELS[kind]
        rows = [
            _detail_row(model, raw, tenant_id=tenant_id, entity_id=entity_id, category=category)
            for raw in raw_rows or []
        ]
        await details_repo.delete_discovered(session, model, tenant_id=tenant_id, entity_id=entity_id)
        await details_repo.bulk_insert(session, model, rows)
        written[kind] = len(rows)
    if commit:
        await session.commit()
    logger.info(
        "ci_details_replaced tenant=%s entity=%s tables=%s",
        tenant_id,
        entity_id,
        ",".join(f"{kind}:{count}" for kind, count in written.items()) or "-",
    )
    return written


async def purge_details(session: AsyncSession, *, tenant_id: str, entity_id: str, commit: bool = True) -> int:
    # Drops manual rows too; only used when the owning CI goes away.
    require_tenant(tenant_id)
    removed = await details_repo.delete_all(session, tenant_id=tenant_id, entity_id=entity_id)
    if commit:
        await session.commit()
    return removed


async def list_details(session: AsyncSession, *, tenant_id: str, entity_id: str) -> dict[str, list[dict[str, Any]]]:
    require_tenant(tenant_id)
    output: dict[str, list[dict[str, Any]]] = {}
    for kind, model in DETAIL_MODELS.items():
        rows = await details_repo.list_rows(session, model, tenant_id=tenant_id, entity_id=entity_id)
        output[kind] = [
            {column: getattr(row, column) for column in model.__table__.columns.keys() if column != "tenant_id"}
            for row in rows
        ]
    return output
