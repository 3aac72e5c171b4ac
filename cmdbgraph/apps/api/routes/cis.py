from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from cmdbgraph.apps.api.deps import get_db, get_store, get_tenant_id
from cmdbgraph.apps.api.response import success_response
from cmdbgraph.core.errors import EntityNotFoundError
from cmdbgraph.persistence.entity_store import EntityStore
from cmdbgraph.services.baselines import baseline_history
from cmdbgraph.services.details import list_details
from cmdbgraph.services.graph import PARENT_TO_CHILD, delete_entity, set_managed_state
from cmdbgraph.services.ingestion import (
    ChildPayload,
    CompositePayload,
    ingest_batch,
    ingest_composite,
)
from cmdbgraph.services.traversal import expand


router = APIRouter(prefix="/cis", tags=["cis"])


class ChildRequest(BaseModel):
    category: str
    attributes: dict[str, Any] = Field(default_factory=dict)
    relationship: str
    direction: str = Field(default=PARENT_TO_CHILD)
    mapping_level: int | None = Field(default=None)
    parent_mapping_level: int = Field(default=0)

    model_config = {"extra": "forbid"}


class CompositeRequest(BaseModel):
    category: str
    attributes: dict[str, Any] = Field(default_factory=dict)
    children: list[ChildRequest] = Field(default_factory=list)
    additional_tables: dict[str, list[dict[str, Any]]] | None = Field(default=None)
    created_by: str | None = Field(default=None)

    # Tenant comes from the header only.
    model_config = {"extra": "forbid"}

    def to_payload(self) -> CompositePayload:
        return CompositePayload(
            category=self.category,
            attributes=dict(self.attributes),
            children=[
                ChildPayload(
                    category=child.category,
                    attributes=dict(child.attributes),
                    relationship=child.relationship,
                    direction=child.direction,
                    mapping_level=child.mapping_level,
                    parent_mapping_level=child.parent_mapping_level,
                )
                for child in self.children
            ],
            additional_tables=self.additional_tables,
        )


class BatchRequest(BaseModel):
    items: list[CompositeRequest]
    created_by: str | None = Field(default=None)


class ManagedStateRequest(BaseModel):
    category: str
    entity_ids: list[str] = Field(min_length=1)
    managed: bool


@router.post("")
async def ingest_ci(
    request: Request,
    payload: CompositeRequest,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    store: EntityStore = Depends(get_store),
) -> dict:
    outcome = await ingest_composite(
        db, store, tenant_id=tenant_id, payload=payload.to_payload(), created_by=payload.created_by
    )
    return success_response(request=request, data=outcome.to_dict())


@router.post("/batch")
async def ingest_ci_batch(
    request: Request,
    payload: BatchRequest,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    store: EntityStore = Depends(get_store),
) -> dict:
    results = await ingest_batch(
        db,
        store,
        tenant_id=tenant_id,
        payloads=[item.to_payload() for item in payload.items],
        created_by=payload.created_by,
    )
    return success_response(request=request, data=[item.to_dict() for item in results])


@router.post("/managed-state")
async def move_managed_state(
    request: Request,
    payload: ManagedStateRequest,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    store: EntityStore = Depends(get_store),
) -> dict:
    moved = await set_managed_state(
        db,
        store,
        tenant_id=tenant_id,
        category=payload.category,
        entity_ids=payload.entity_ids,
        managed=payload.managed,
    )
    return success_response(request=request, data={"managed": payload.managed, "propagated": moved})


@router.get("/{category}/{identity}")
async def get_composite(
    request: Request,
    category: str,
    identity: str,
    depth: int = Query(default=1, ge=0),
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    store: EntityStore = Depends(get_store),
) -> dict:
    root = await expand(
        db, store, tenant_id=tenant_id, root_id=identity, root_category=category, depth=depth
    )
    if not root.resolved:
        raise EntityNotFoundError(f"{category} {identity} not found")
    return success_response(request=request, data=jsonable_encoder(root.to_dict()))


@router.delete("/{category}/{identity}")
async def delete_ci(
    request: Request,
    category: str,
    identity: str,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    store: EntityStore = Depends(get_store),
) -> dict:
    outcome = await delete_entity(db, store, tenant_id=tenant_id, category=category, entity_id=identity)
    return success_response(
        request=request,
        data={"deleted": outcome.deleted, "skipped_managed": outcome.skipped_managed},
    )


@router.get("/{category}/{identity}/details")
async def get_details(
    request: Request,
    category: str,
    identity: str,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    store: EntityStore = Depends(get_store),
) -> dict:
    if await store.get(category).get(db, tenant_id, identity) is None:
        raise EntityNotFoundError(f"{category} {identity} not found")
    details = await list_details(db, tenant_id=tenant_id, entity_id=identity)
    return success_response(request=request, data=details)


@router.get("/{category}/{identity}/baselines/{baseline}/history")
async def get_baseline_history(
    request: Request,
    category: str,
    identity: str,
    baseline: str,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    store: EntityStore = Depends(get_store),
) -> dict:
    # Validates the category even though records are keyed by entity.
    store.get(category)
    changes = await baseline_history(db, tenant_id=tenant_id, entity_id=identity, baseline_name=baseline)
    data = [
        {
            "attribute": change.attribute,
            "old": change.old,
            "new": change.new,
            "operation": change.operation,
            "at": change.at,
        }
        for change in changes
    ]
    return success_response(request=request, data=jsonable_encoder(data))
