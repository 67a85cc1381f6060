from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from tenantadmin.apps.api.deps import Principal, get_db, require_role
from tenantadmin.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantadmin.apps.api.response import SuccessEnvelope, success_response
from tenantadmin.core.errors import NotFoundError
from tenantadmin.persistence.repos import projects as projects_repo
from tenantadmin.services.authz.relationships import (
    DEFAULT_RELATION_MODEL,
    RelationshipStore,
    get_relationship_store,
)


router = APIRouter(prefix="/relationships", tags=["relationships"], responses=DEFAULT_ERROR_RESPONSES)

ObjectType = Literal["project", "projects"]


class RelationshipRequest(BaseModel):
    subject_id: str = Field(min_length=1, max_length=255)
    relation: str = Field(min_length=1, max_length=64)
    object_type: ObjectType
    object_id: str = Field(min_length=1, max_length=255)

    model_config = {"extra": "forbid"}


class RelationshipResponse(BaseModel):
    subject_id: str
    relation: str
    object_type: str
    object_id: str


class CheckResponse(BaseModel):
    allowed: bool
    outcome: str


def _known_relations(object_type: str) -> set[str]:
    rules = DEFAULT_RELATION_MODEL.get(object_type, {})
    known = set(rules)
    for implied_by in rules.values():
        known.update(implied_by)
    return known


def get_store() -> RelationshipStore:
    return get_relationship_store()


async def _ensure_in_tenant(db: AsyncSession, principal: Principal, object_type: str, object_id: str) -> None:
    # Tenant admins manage tuples only for objects inside their own tenant.
    if object_type == "projects":
        if object_id != principal.tenant_id:
            raise NotFoundError("Object not found")
        return
    project = await projects_repo.get_project(db, principal.tenant_id, object_id, include_deleted=True)
    if project is None:
        raise NotFoundError("Object not found")


def _validate_relation(payload: RelationshipRequest) -> None:
    if payload.relation not in _known_relations(payload.object_type):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "code": "INVALID_RELATION",
                "message": f"Unknown relation '{payload.relation}' for {payload.object_type}",
            },
        )


@router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    response_model=SuccessEnvelope[RelationshipResponse],
)
async def write_relationship(
    request: Request,
    payload: RelationshipRequest,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
    store: RelationshipStore = Depends(get_store),
) -> dict:
    _validate_relation(payload)
    await _ensure_in_tenant(db, principal, payload.object_type, payload.object_id)
    await store.write(payload.subject_id, payload.relation, payload.object_type, payload.object_id)
    return success_response(request=request, data=RelationshipResponse(**payload.model_dump()).model_dump())


@router.delete("", response_model=SuccessEnvelope[RelationshipResponse])
async def remove_relationship(
    request: Request,
    payload: RelationshipRequest,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
    store: RelationshipStore = Depends(get_store),
) -> dict:
    _validate_relation(payload)
    await _ensure_in_tenant(db, principal, payload.object_type, payload.object_id)
    await store.remove(payload.subject_id, payload.relation, payload.object_type, payload.object_id)
    return success_response(request=request, data=RelationshipResponse(**payload.model_dump()).model_dump())


@router.post("/check", response_model=SuccessEnvelope[CheckResponse])
async def check_relationship(
    request: Request,
    payload: RelationshipRequest,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
    store: RelationshipStore = Depends(get_store),
) -> dict:
    await _ensure_in_tenant(db, principal, payload.object_type, payload.object_id)
    result = await store.check(payload.subject_id, payload.relation, payload.object_type, payload.object_id)
    data = CheckResponse(allowed=result.allowed, outcome=result.outcome.value)
    return success_response(request=request, data=data.model_dump())


@router.get("", response_model=SuccessEnvelope[list[RelationshipResponse]])
async def list_relationships(
    request: Request,
    object_type: ObjectType = Query(...),
    object_id: str = Query(..., min_length=1),
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
    store: RelationshipStore = Depends(get_store),
) -> dict:
    await _ensure_in_tenant(db, principal, object_type, object_id)
    tuples = await store.list_tuples(object_type, object_id)
    data = [
        RelationshipResponse(
            subject_id=item.subject_id,
            relation=item.relation,
            object_type=item.object_type,
            object_id=item.object_id,
        ).model_dump()
        for item in tuples
    ]
    return success_response(request=request, data=data)
