from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from cmdbgraph.apps.api.deps import get_db, get_tenant_id
from cmdbgraph.apps.api.response import success_response
from cmdbgraph.services.graph import PARENT_TO_CHILD, EdgeKey, relate, unrelate


router = APIRouter(prefix="/relationships", tags=["relationships"])


class RelationshipRequest(BaseModel):
    source_id: str
    source_category: str
    relationship: str
    target_id: str
    target_category: str
    # child-to-parent makes the source the child of the stored edge.
    direction: str = Field(default=PARENT_TO_CHILD)
    created_by: str | None = Field(default=None)

    model_config = {"extra": "forbid"}

    def to_key(self) -> EdgeKey:
        return EdgeKey.oriented(
            source_id=self.source_id,
            source_category=self.source_category,
            relationship_name=self.relationship,
            target_id=self.target_id,
            target_category=self.target_category,
            direction=self.direction,
        )


def _edge_data(key: EdgeKey) -> dict:
    return {
        "parent_id": key.parent_id,
        "parent_category": key.parent_category,
        "relationship": key.relationship_name,
        "child_id": key.child_id,
        "child_category": key.child_category,
    }


@router.post("")
async def create_relationship(
    request: Request,
    payload: RelationshipRequest,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    key = payload.to_key()
    created = await relate(db, tenant_id=tenant_id, key=key, created_by=payload.created_by)
    return success_response(request=request, data={**_edge_data(key), "created": created})


@router.delete("")
async def delete_relationship(
    request: Request,
    payload: RelationshipRequest,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    key = payload.to_key()
    removed = await unrelate(db, tenant_id=tenant_id, key=key)
    return success_response(request=request, data={**_edge_data(key), "removed": removed})
