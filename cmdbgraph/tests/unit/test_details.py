from __future__ import annotations

import pytest

from cmdbgraph.core.errors import CmdbValidationError
from cmdbgraph.domain.models import ListeningPort
from cmdbgraph.services.details import list_details, purge_details, replace_details


@pytest.mark.asyncio
async def test_replace_preserves_manual_rows(session, tenant_id) -> None:
    session.add(
        ListeningPort(
            tenant_id=tenant_id, entity_id="e1", category="Server", local_port="8080", manually_created=True
        )
    )
    await session.commit()

    written = await replace_details(
        session,
        tenant_id=tenant_id,
        category="Server",
        entity_id="e1",
        tables={
            "listening_ports": [{"LocalPort": 22, "ConnectionType": "tcp"}, {"local_port": "443"}],
            "installed_packages": [{"ApplicationName": "openssl", "SoftwareVersion": "3.0"}],
        },
    )
    assert written == {"listening_ports": 2, "installed_packages": 1}
    details = await list_details(session, tenant_id=tenant_id, entity_id="e1")
    assert sorted(row["local_port"] for row in details["listening_ports"]) == ["22", "443", "8080"]
    assert details["installed_packages"][0]["version"] == "3.0"

    # Only the kinds present are replaced; an empty list clears discovered rows.
    await replace_details(
        session, tenant_id=tenant_id, category="Server", entity_id="e1", tables={"listening_ports": []}
    )
    details = await list_details(session, tenant_id=tenant_id, entity_id="e1")
    assert [row["local_port"] for row in details["listening_ports"]] == ["8080"]
    assert len(details["installed_packages"]) == 1

    removed = await purge_details(session, tenant_id=tenant_id, entity_id="e1")
    assert removed == 2


@pytest.mark.asyncio
async def test_replace_rejects_unknown_tables_and_fields(session, tenant_id) -> None:
    with pytest.raises(CmdbValidationError):
        await replace_details(session, tenant_id=tenant_id, category="Server", entity_id="e1", tables={"fans": []})
    with pytest.raises(CmdbValidationError):
        await replace_details(
            session,
            tenant_id=tenant_id,
            category="Server",
            entity_id="e1",
            tables={"running_processes": [{"Owner": "root"}]},
        )
