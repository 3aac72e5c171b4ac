from __future__ import annotations

from fastapi import APIRouter
from pydantic import BaseModel

from cmdbgraph.persistence.db import pool_stats
from cmdbgraph.persistence.entity_store import get_entity_store


router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str
    categories: list[str]
    db_pool: dict[str, int | None]


@router.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    # Unversioned and unwrapped for load balancer health checks.
    return HealthResponse(
        status="ok",
        categories=get_entity_store().registry.categories(),
        db_pool=pool_stats(),
    )
