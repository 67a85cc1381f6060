from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from tenantadmin.apps.api.deps import Principal, get_authorization_gate, get_current_principal, get_db
from tenantadmin.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantadmin.apps.api.response import SuccessEnvelope, success_response
from tenantadmin.domain.models import Project
from tenantadmin.services import projects as project_service
from tenantadmin.services.authz.gate import AuthorizationGate, Identity, OwnerGrant
from tenantadmin.services.events.outbox import relay_pending_events
from tenantadmin.services.events.queue import is_inline_mode


router = APIRouter(prefix="/projects", tags=["projects"], responses=DEFAULT_ERROR_RESPONSES)


class ProjectResponse(BaseModel):
    id: str
    tenant_id: str
    name: str
    description: str
    is_deleted: bool
    version: int
    created_by: str
    created_at: str | None
    last_updated_by: str | None
    last_updated_at: str | None


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _to_response(project: Project) -> ProjectResponse:
    return ProjectResponse(
        id=project.id,
        tenant_id=project.tenant_id,
        name=project.name,
        description=project.description,
        is_deleted=project.is_deleted,
        version=project.version,
        created_by=project.created_by,
        created_at=_iso(project.created_at),
        last_updated_by=project.last_updated_by,
        last_updated_at=_iso(project.last_updated_at),
    )


@router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    response_model=SuccessEnvelope[ProjectResponse],
)
async def create_project(
    request: Request,
    payload: project_service.ProjectCreate,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    gate: AuthorizationGate = Depends(get_authorization_gate),
) -> dict:
    async def _create(identity: Identity) -> Project:
        return await project_service.create_project(db, identity, payload)

    # The collection check targets the caller's tenant; the project does not exist yet.
    project = await gate.execute(
        principal,
        relation="create",
        resource_type="projects",
        resource_id=None,
        mutation=_create,
        grant=OwnerGrant(object_type="project", object_id=lambda created: created.id),
    )
    if is_inline_mode():
        # No worker in inline mode; drain the outbox after the response is sent.
        background_tasks.add_task(relay_pending_events)
    return success_response(request=request, data=_to_response(project).model_dump())


@router.get("", response_model=SuccessEnvelope[list[ProjectResponse]])
async def list_projects(
    request: Request,
    include_deleted: bool = Query(default=False),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    projects = await project_service.list_projects(
        db, principal.tenant_id, include_deleted=include_deleted
    )
    return success_response(request=request, data=[_to_response(p).model_dump() for p in projects])


@router.get("/{project_id}", response_model=SuccessEnvelope[ProjectResponse])
async def get_project(
    project_id: str,
    request: Request,
    include_deleted: bool = Query(default=False),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    project = await project_service.get_project(
        db, principal.tenant_id, project_id, include_deleted=include_deleted
    )
    return success_response(request=request, data=_to_response(project).model_dump())


@router.patch("/{project_id}", response_model=SuccessEnvelope[ProjectResponse])
async def update_project(
    project_id: str,
    request: Request,
    payload: project_service.ProjectUpdate,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    gate: AuthorizationGate = Depends(get_authorization_gate),
) -> dict:
    # Another tenant's project answers 404 before any relation check.
    await project_service.get_project(db, principal.tenant_id, project_id)

    async def _update(identity: Identity) -> Project:
        return await project_service.update_project(db, identity, project_id, payload)

    project = await gate.execute(
        principal,
        relation="editor",
        resource_type="project",
        resource_id=project_id,
        mutation=_update,
    )
    return success_response(request=request, data=_to_response(project).model_dump())


@router.delete("/{project_id}", response_model=SuccessEnvelope[ProjectResponse])
async def delete_project(
    project_id: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    gate: AuthorizationGate = Depends(get_authorization_gate),
) -> dict:
    await project_service.get_project(db, principal.tenant_id, project_id)

    async def _delete(identity: Identity) -> Project:
        return await project_service.delete_project(db, identity, project_id)

    project = await gate.execute(
        principal,
        relation="owner",
        resource_type="project",
        resource_id=project_id,
        mutation=_delete,
    )
    return success_response(request=request, data=_to_response(project).model_dump())
