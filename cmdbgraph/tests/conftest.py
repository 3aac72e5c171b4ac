from __future__ import annotations

import os

# Point the module-level engine at sqlite before any cmdbgraph import builds it.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from uuid import uuid4

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from cmdbgraph.core.config import get_settings
from cmdbgraph.domain.categories import CategoryRegistry, CategorySchema
from cmdbgraph.persistence.db import create_schema
from cmdbgraph.persistence.entity_store import EntityStore


@pytest.fixture(autouse=True)
def reset_settings_cache() -> None:
    # monkeypatch.setenv in one test must not leak cached settings into the next.
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def registry() -> CategoryRegistry:
    return CategoryRegistry(
        [
            CategorySchema(
                "Server",
                {
                    "hostname": "string",
                    "ip": "string",
                    "serial_number": "string",
                    "cpu_count": "integer",
                    "location": "string",
                    "description": "string",
                },
            ),
            CategorySchema("Application", {"name": "string", "version": "string"}),
            CategorySchema("Disk", {"device": "string", "size_gb": "number"}),
        ]
    )


@pytest.fixture
def store(registry: CategoryRegistry) -> EntityStore:
    return EntityStore(registry)


@pytest.fixture
async def db_engine(registry: CategoryRegistry):
    # One in-memory database per test; StaticPool keeps it alive across connections.
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await create_schema(registry, bind=engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, expire_on_commit=False)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as db_session:
        yield db_session


@pytest.fixture
def tenant_id() -> str:
    return f"t-cmdb-{uuid4().hex}"
