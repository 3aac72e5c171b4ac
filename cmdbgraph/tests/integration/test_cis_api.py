from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from cmdbgraph.apps.api.deps import get_db, get_store
from cmdbgraph.apps.api.main import create_app
from cmdbgraph.persistence.repos import baselines as baselines_repo
from cmdbgraph.tests.utils.cmdb import seed_default_rules, seed_kinds


@pytest.fixture
async def client(session_factory, store, session, tenant_id):
    await seed_default_rules(session, tenant_id=tenant_id)
    await seed_kinds(session, runs_on=True, depends_on=False)
    await baselines_repo.set_default_tracking(session, tenant_id=tenant_id, enabled=True)
    await session.commit()

    app = create_app()

    async def _db():
        async with session_factory() as db_session:
            yield db_session

    app.dependency_overrides[get_db] = _db
    app.dependency_overrides[get_store] = lambda: store
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as http_client:
        yield http_client


def _headers(tenant_id: str) -> dict[str, str]:
    return {"X-Tenant-Id": tenant_id}


@pytest.mark.asyncio
async def test_ingest_expand_history_and_delete(client, tenant_id) -> None:
    body = {
        "category": "Server",
        "attributes": {"hostname": "srv1", "ip": "10.0.0.1"},
        "children": [
            {
                "category": "Application",
                "attributes": {"name": "nginx"},
                "relationship": "runs_on",
                "direction": "child-to-parent",
                "mapping_level": 1,
            }
        ],
    }
    response = await client.post("/v1/cis", json=body, headers=_headers(tenant_id))
    assert response.status_code == 200
    payload = response.json()
    assert payload["meta"]["api_version"] == "v1"
    server_id = payload["data"]["identity"]
    assert payload["data"]["existed"] is False
    assert payload["data"]["children"][0]["status"] == "ok"
    app_id = payload["data"]["children"][0]["identity"]

    body["attributes"]["ip"] = "10.0.0.2"
    response = await client.post("/v1/cis", json=body, headers=_headers(tenant_id))
    assert response.json()["data"]["existed"] is True

    response = await client.get(f"/v1/cis/Server/{server_id}?depth=1", headers=_headers(tenant_id))
    assert response.status_code == 200
    tree = response.json()["data"]
    assert tree["attributes"]["ip"] == "10.0.0.2"
    assert [(child["identity"], child["direction"]) for child in tree["children"]] == [(app_id, "child-to-parent")]

    response = await client.get(
        f"/v1/cis/Server/{server_id}/baselines/default/history", headers=_headers(tenant_id)
    )
    assert response.status_code == 200
    changes = response.json()["data"]
    assert [(item["attribute"], item["old"], item["new"]) for item in changes] == [("ip", "10.0.0.1", "10.0.0.2")]

    response = await client.delete(f"/v1/cis/Server/{server_id}", headers=_headers(tenant_id))
    assert response.status_code == 200
    # The application is the edge parent, so it is not a contained child of the server.
    assert response.json()["data"]["deleted"] == [server_id]

    response = await client.get(f"/v1/cis/Server/{server_id}", headers=_headers(tenant_id))
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "CMDB_NOT_FOUND"


@pytest.mark.asyncio
async def test_managed_ci_delete_is_rejected(client, tenant_id) -> None:
    response = await client.post(
        "/v1/cis", json={"category": "Server", "attributes": {"hostname": "m1"}}, headers=_headers(tenant_id)
    )
    server_id = response.json()["data"]["identity"]
    response = await client.post(
        "/v1/cis/managed-state",
        json={"category": "Server", "entity_ids": [server_id], "managed": True},
        headers=_headers(tenant_id),
    )
    assert response.status_code == 200
    response = await client.delete(f"/v1/cis/Server/{server_id}", headers=_headers(tenant_id))
    assert response.status_code == 409
    assert response.json()["error"]["code"] == "CMDB_MANAGED_DELETE_BLOCKED"


@pytest.mark.asyncio
async def test_relationship_routes(client, tenant_id) -> None:
    ids = []
    for hostname in ("r1", "r2"):
        response = await client.post(
            "/v1/cis", json={"category": "Server", "attributes": {"hostname": hostname}}, headers=_headers(tenant_id)
        )
        ids.append(response.json()["data"]["identity"])
    edge = {
        "source_id": ids[0],
        "source_category": "Server",
        "relationship": "depends_on",
        "target_id": ids[1],
        "target_category": "Server",
    }
    first = await client.post("/v1/relationships", json=edge, headers=_headers(tenant_id))
    second = await client.post("/v1/relationships", json=edge, headers=_headers(tenant_id))
    assert first.json()["data"]["created"] is True
    assert second.json()["data"]["created"] is False

    removed = await client.request("DELETE", "/v1/relationships", json=edge, headers=_headers(tenant_id))
    assert removed.json()["data"]["removed"] == 1
    again = await client.request("DELETE", "/v1/relationships", json=edge, headers=_headers(tenant_id))
    assert again.status_code == 200
    assert again.json()["data"]["removed"] == 0


@pytest.mark.asyncio
async def test_details_route_lists_discovered_rows(client, tenant_id) -> None:
    body = {
        "category": "Server",
        "attributes": {"hostname": "srv-details"},
        "additional_tables": {"listening_ports": [{"LocalPort": 22, "ConnectionType": "tcp"}]},
    }
    response = await client.post("/v1/cis", json=body, headers=_headers(tenant_id))
    assert response.status_code == 200
    server_id = response.json()["data"]["identity"]

    response = await client.get(f"/v1/cis/Server/{server_id}/details", headers=_headers(tenant_id))
    assert response.status_code == 200
    details = response.json()["data"]
    assert [row["local_port"] for row in details["listening_ports"]] == ["22"]
    assert details["installed_packages"] == []
    assert "tenant_id" not in details["listening_ports"][0]

    response = await client.get(f"/v1/cis/Server/{server_id}/details", headers=_headers("other-tenant"))
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "CMDB_NOT_FOUND"

    response = await client.delete(f"/v1/cis/Server/{server_id}", headers=_headers(tenant_id))
    assert response.status_code == 200
    response = await client.get(f"/v1/cis/Server/{server_id}/details", headers=_headers(tenant_id))
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_error_mapping(client, tenant_id) -> None:
    response = await client.post("/v1/cis", json={"category": "Server", "attributes": {"hostname": "x"}})
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "TENANT_REQUIRED"

    response = await client.post(
        "/v1/cis", json={"category": "Router", "attributes": {"name": "r"}}, headers=_headers(tenant_id)
    )
    assert response.status_code == 422
    assert response.json()["error"]["code"] == "CMDB_UNKNOWN_CATEGORY"

    response = await client.post(
        "/v1/cis", json={"category": "Server", "attributes": {"ip": "1.2.3.4"}}, headers=_headers(tenant_id)
    )
    assert response.status_code == 422
    assert response.json()["error"]["code"] == "CMDB_IDENTITY_UNRESOLVABLE"

    response = await client.post(
        "/v1/cis/batch",
        json={"items": [{"category": "Server", "attributes": {"hostname": "b1"}}, {"category": "Server"}]},
        headers=_headers(tenant_id),
    )
    assert response.status_code == 200
    items = response.json()["data"]
    assert items[0]["result"]["existed"] is False
    assert items[1]["error_code"] == "CMDB_IDENTITY_UNRESOLVABLE"


@pytest.mark.asyncio
async def test_health(client) -> None:
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
