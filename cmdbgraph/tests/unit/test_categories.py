from __future__ import annotations

from datetime import datetime, timezone
import json

import pytest
from sqlalchemy import inspect
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from cmdbgraph.core.errors import CmdbValidationError, UnknownCategoryError
from cmdbgraph.domain.categories import (
    CategoryRegistry,
    CategorySchema,
    coerce_value,
    load_registry,
    validate_identifier,
)
from cmdbgraph.persistence.db import create_schema


def test_identifier_validation_rejects_sql_fragments() -> None:
    assert validate_identifier("Server_2", kind="category") == "Server_2"
    for bad in ("", None, "2server", "server;drop", "ci-name", "a b"):
        with pytest.raises(CmdbValidationError):
            validate_identifier(bad, kind="category")


def test_schema_rejects_system_column_shadowing_and_unknown_types() -> None:
    with pytest.raises(CmdbValidationError):
        CategorySchema("Server", {"managed": "boolean"})
    with pytest.raises(CmdbValidationError):
        CategorySchema("Server", {"hostname": "varchar"})


def test_registry_lookup_is_case_insensitive(registry: CategoryRegistry) -> None:
    assert registry.schema("server").name == "Server"
    assert registry.table("SERVER").name == "ci_server"
    with pytest.raises(UnknownCategoryError):
        registry.schema("Router")
    with pytest.raises(CmdbValidationError):
        registry.register(CategorySchema("SERVER", {}))


def test_coerce_value_types() -> None:
    assert coerce_value("integer", "4") == 4
    assert coerce_value("integer", "") is None
    assert coerce_value("string", "") == ""
    assert coerce_value("string", 7) == "7"
    assert coerce_value("string", {"b": 1, "a": 2}) == '{"a": 2, "b": 1}'
    assert coerce_value("boolean", "yes") is True
    assert coerce_value("boolean", "0") is False
    assert coerce_value("number", "1.5") == 1.5
    parsed = coerce_value("timestamp", "2026-01-02T03:04:05Z")
    assert parsed == datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    naive = coerce_value("timestamp", "2026-01-02T03:04:05")
    assert naive.tzinfo is timezone.utc
    with pytest.raises(CmdbValidationError):
        coerce_value("integer", "four")
    with pytest.raises(CmdbValidationError):
        coerce_value("boolean", "maybe")


def test_load_registry_from_file(tmp_path) -> None:
    path = tmp_path / "categories.json"
    path.write_text(
        json.dumps({"categories": [{"name": "Switch", "attributes": {"mac": "string", "ports": "integer"}}]}),
        encoding="utf-8",
    )
    registry = load_registry(path)
    assert registry.categories() == ["Switch"]
    assert list(registry.schema("switch").attributes) == ["mac", "ports"]
    assert "ports" in registry.table("Switch").c


@pytest.mark.asyncio
async def test_create_schema_builds_static_and_category_tables(registry: CategoryRegistry) -> None:
    engine = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool)
    try:
        await create_schema(registry, bind=engine)
        async with engine.connect() as conn:
            names = set(await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names()))
    finally:
        await engine.dispose()
    assert {"ci_server", "ci_application", "ci_disk"} <= names
    assert {"identification_rules", "related_cis", "baseline_records", "ci_listening_ports"} <= names
