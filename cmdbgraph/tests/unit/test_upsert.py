from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from cmdbgraph.core.config import get_settings
from cmdbgraph.core.errors import (
    CmdbError,
    CmdbValidationError,
    ConstraintViolationError,
    IdentityUnresolvableError,
    TenantRequiredError,
)
from cmdbgraph.persistence.repos import baselines as baselines_repo
from cmdbgraph.services import identification
from cmdbgraph.services.upsert import compute_identity, upsert_ci
from cmdbgraph.tests.utils.cmdb import count_records, seed_rule


T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _naive(value: datetime) -> datetime:
    return value.replace(tzinfo=None)


async def _track(session, tenant_id: str) -> None:
    await baselines_repo.set_default_tracking(session, tenant_id=tenant_id, enabled=True)
    await session.commit()


def test_identity_is_deterministic() -> None:
    first = compute_identity("clientA", "Server", ["srv1"])
    assert first == compute_identity("clientA", "Server", ["srv1"])
    assert first != compute_identity("clientB", "Server", ["srv1"])
    assert first != compute_identity("clientA", "Application", ["srv1"])
    assert compute_identity("clientA", "Server", ["a", "b"]) != compute_identity("clientA", "Server", ["b", "a"])


def test_identity_keeps_delimiter_values_apart() -> None:
    assert compute_identity("clientA", "Server", ["a|b", "c"]) != compute_identity("clientA", "Server", ["a", "b|c"])
    assert compute_identity("clientA", "Server", ['a","b']) != compute_identity("clientA", "Server", ["a", "b"])
    assert compute_identity("client|A", "Server", ["x"]) != compute_identity("client", "A|Server", ["x"])


@pytest.mark.asyncio
async def test_criterion_values_containing_delimiters_store_distinct_cis(session, store, tenant_id) -> None:
    await seed_rule(session, tenant_id=tenant_id, category="Server", criteria=["hostname", "ip"])
    first = await upsert_ci(
        session, store, tenant_id=tenant_id, category="Server", attributes={"hostname": "a|b", "ip": "c"}
    )
    second = await upsert_ci(
        session, store, tenant_id=tenant_id, category="Server", attributes={"hostname": "a", "ip": "b|c"}
    )
    assert first.existed is False
    assert second.existed is False
    assert first.identity != second.identity
    table = store.get("Server")
    assert (await table.get(session, tenant_id, first.identity)).attributes["hostname"] == "a|b"
    assert (await table.get(session, tenant_id, second.identity)).attributes["hostname"] == "a"


@pytest.mark.asyncio
async def test_blank_tenant_is_rejected_even_without_predicate_guard(
    session, store, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("AUTHZ_REQUIRE_TENANT_PREDICATE", "false")
    get_settings.cache_clear()
    for blank in ("", "   "):
        with pytest.raises(TenantRequiredError) as exc_info:
            await upsert_ci(session, store, tenant_id=blank, category="Server", attributes={"hostname": "srv1"})
        assert isinstance(exc_info.value, CmdbValidationError)
        assert isinstance(exc_info.value, CmdbError)
    rows = await session.execute(select(func.count()).select_from(store.get("Server").table))
    assert rows.scalar_one() == 0


@pytest.mark.asyncio
async def test_discovery_runs_create_update_then_touch(session, store, tenant_id) -> None:
    await seed_rule(session, tenant_id=tenant_id, category="Server", criteria=["hostname"])
    await _track(session, tenant_id)

    first = await upsert_ci(
        session, store, tenant_id=tenant_id, category="Server", attributes={"hostname": "srv1", "ip": "10.0.0.1"}, now=T0
    )
    assert first.existed is False
    assert first.identity == compute_identity(tenant_id, "Server", ["srv1"])
    assert await count_records(session, tenant_id=tenant_id, entity_id=first.identity, operation="insert") == 1

    second = await upsert_ci(
        session,
        store,
        tenant_id=tenant_id,
        category="Server",
        attributes={"hostname": "srv1", "ip": "10.0.0.2"},
        now=T0 + timedelta(minutes=1),
    )
    assert second.existed is True
    assert second.identity == first.identity
    assert second.material is True
    assert await count_records(session, tenant_id=tenant_id, entity_id=first.identity, operation="update") == 1

    third_at = T0 + timedelta(minutes=2)
    third = await upsert_ci(
        session,
        store,
        tenant_id=tenant_id,
        category="Server",
        attributes={"hostname": "srv1", "ip": "10.0.0.2"},
        now=third_at,
    )
    assert third.existed is True
    assert third.changed is False
    assert await count_records(session, tenant_id=tenant_id, entity_id=first.identity, operation="update") == 1
    assert await count_records(session, tenant_id=tenant_id, entity_id=first.identity, operation="insert") == 1

    item = await store.get("Server").get(session, tenant_id, first.identity)
    assert item.attributes["ip"] == "10.0.0.2"
    assert _naive(item.last_discovered_at) == _naive(third_at)
    assert _naive(item.last_modified_at) == _naive(T0 + timedelta(minutes=1))


@pytest.mark.asyncio
async def test_new_ci_defaults(session, store, tenant_id) -> None:
    await seed_rule(session, tenant_id=tenant_id, category="Server", criteria=["hostname"])
    result = await upsert_ci(session, store, tenant_id=tenant_id, category="server", attributes={"hostname": "srv2"})
    item = await store.get("Server").get(session, tenant_id, result.identity)
    assert item.category == "Server"
    assert item.managed is False
    assert item.status == "active"
    assert item.last_discovered_at is not None

    managed = await upsert_ci(
        session, store, tenant_id=tenant_id, category="Server", attributes={"hostname": "srv3", "managed": True}
    )
    item = await store.get("Server").get(session, tenant_id, managed.identity)
    assert item.managed is True


@pytest.mark.asyncio
async def test_bookkeeping_change_is_not_material(session, store, tenant_id) -> None:
    await seed_rule(session, tenant_id=tenant_id, category="Server", criteria=["hostname"])
    await _track(session, tenant_id)
    created = await upsert_ci(
        session, store, tenant_id=tenant_id, category="Server", attributes={"hostname": "srv1", "location": "dc1"}
    )
    result = await upsert_ci(
        session,
        store,
        tenant_id=tenant_id,
        category="Server",
        attributes={"hostname": "srv1", "location": "dc2", "description": "moved"},
    )
    assert result.changed is True
    assert result.material is False
    assert await count_records(session, tenant_id=tenant_id, entity_id=created.identity, operation="update") == 0
    item = await store.get("Server").get(session, tenant_id, created.identity)
    assert item.attributes["location"] == "dc2"
    assert item.attributes["description"] == "moved"


@pytest.mark.asyncio
async def test_typed_values_compare_after_coercion(session, store, tenant_id) -> None:
    await seed_rule(session, tenant_id=tenant_id, category="Server", criteria=["hostname"])
    await upsert_ci(session, store, tenant_id=tenant_id, category="Server", attributes={"hostname": "h", "cpu_count": 4})
    result = await upsert_ci(
        session, store, tenant_id=tenant_id, category="Server", attributes={"hostname": "h", "cpu_count": "4"}
    )
    assert result.changed is False


@pytest.mark.asyncio
async def test_identity_unresolvable(session, store, tenant_id) -> None:
    with pytest.raises(IdentityUnresolvableError):
        await upsert_ci(session, store, tenant_id=tenant_id, category="Server", attributes={"hostname": "srv1"})

    await seed_rule(session, tenant_id=tenant_id, category="Server", criteria=["hostname", "serial_number"])
    with pytest.raises(IdentityUnresolvableError):
        await upsert_ci(session, store, tenant_id=tenant_id, category="Server", attributes={"hostname": "srv1"})


@pytest.mark.asyncio
async def test_null_allowed_identity_uses_present_values(session, store, tenant_id) -> None:
    await seed_rule(
        session, tenant_id=tenant_id, category="Server", criteria=["serial_number", "hostname"], allow_null=True
    )
    result = await upsert_ci(session, store, tenant_id=tenant_id, category="Server", attributes={"hostname": "srvX"})
    assert result.identity == compute_identity(tenant_id, "Server", ["srvX"])


@pytest.mark.asyncio
async def test_unknown_attributes(session, store, tenant_id, monkeypatch: pytest.MonkeyPatch) -> None:
    await seed_rule(session, tenant_id=tenant_id, category="Server", criteria=["hostname"])
    with pytest.raises(CmdbValidationError):
        await upsert_ci(
            session, store, tenant_id=tenant_id, category="Server", attributes={"hostname": "s", "rack": "r1"}
        )
    await session.rollback()

    monkeypatch.setenv("CMDB_REJECT_UNKNOWN_ATTRIBUTES", "false")
    get_settings.cache_clear()
    result = await upsert_ci(
        session, store, tenant_id=tenant_id, category="Server", attributes={"hostname": "s", "rack": "r1"}
    )
    assert result.existed is False


def _blind_evaluate(monkeypatch: pytest.MonkeyPatch) -> None:
    # The first evaluation misses the stored row, as a racing writer would.
    original = identification.evaluate
    calls = {"count": 0}

    async def _evaluate(session, table, *, tenant_id, rules, attributes):
        calls["count"] += 1
        if calls["count"] == 1:
            applicable, _ = identification.select_rule(identification.rule_specs(rules), attributes)
            return identification.NoMatch(applicable=applicable)
        return await original(session, table, tenant_id=tenant_id, rules=rules, attributes=attributes)

    monkeypatch.setattr(identification, "evaluate", _evaluate)


@pytest.mark.asyncio
async def test_insert_conflict_resolves_as_update(session, store, tenant_id, monkeypatch: pytest.MonkeyPatch) -> None:
    await seed_rule(session, tenant_id=tenant_id, category="Server", criteria=["hostname"])
    created = await upsert_ci(
        session, store, tenant_id=tenant_id, category="Server", attributes={"hostname": "srv1", "ip": "10.0.0.1"}
    )
    _blind_evaluate(monkeypatch)
    result = await upsert_ci(
        session, store, tenant_id=tenant_id, category="Server", attributes={"hostname": "srv1", "ip": "10.0.0.9"}
    )
    assert result.existed is True
    assert result.identity == created.identity
    item = await store.get("Server").get(session, tenant_id, created.identity)
    assert item.attributes["ip"] == "10.0.0.9"


@pytest.mark.asyncio
async def test_insert_conflict_surfaces_without_retry(session, store, tenant_id, monkeypatch: pytest.MonkeyPatch) -> None:
    await seed_rule(session, tenant_id=tenant_id, category="Server", criteria=["hostname"])
    await upsert_ci(session, store, tenant_id=tenant_id, category="Server", attributes={"hostname": "srv1"})
    monkeypatch.setenv("CMDB_RETRY_ON_CONFLICT", "false")
    get_settings.cache_clear()
    _blind_evaluate(monkeypatch)
    with pytest.raises(ConstraintViolationError):
        await upsert_ci(session, store, tenant_id=tenant_id, category="Server", attributes={"hostname": "srv1"})
