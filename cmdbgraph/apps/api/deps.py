from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from cmdbgraph.persistence.db import get_session
from cmdbgraph.persistence.entity_store import EntityStore, get_entity_store


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


def get_store() -> EntityStore:
    return get_entity_store()


def get_tenant_id(x_tenant_id: str | None = Header(default=None)) -> str:
    # Authentication is upstream; the gateway forwards the resolved tenant.
    if not x_tenant_id or not x_tenant_id.strip():
        raise HTTPException(
            status_code=400,
            detail={"code": "TENANT_REQUIRED", "message": "X-Tenant-Id header is required"},
        )
    return x_tenant_id.strip()
