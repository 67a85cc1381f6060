from __future__ import annotations

import logging
from datetime import datetime, timezone

from pydantic import BaseModel, Field, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from tenantadmin.core.errors import ConflictError, DatabaseError, NotFoundError
from tenantadmin.domain.events import PROJECT_CREATED, ProjectCreatedData
from tenantadmin.domain.models import Project
from tenantadmin.persistence.repos import projects as projects_repo
from tenantadmin.services.authz.gate import Identity
from tenantadmin.services.events.outbox import publish


logger = logging.getLogger(__name__)

NAME_MAX_LENGTH = 200
DESCRIPTION_MAX_LENGTH = 1000


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _strip(value):
    return value.strip() if isinstance(value, str) else value


class ProjectCreate(BaseModel):
    name: str = Field(min_length=1, max_length=NAME_MAX_LENGTH)
    description: str = Field(default="", max_length=DESCRIPTION_MAX_LENGTH)

    # Ownership and audit fields come from the request context; payloads carrying them fail validation.
    model_config = {"extra": "forbid"}

    @field_validator("name", "description", mode="before")
    @classmethod
    def strip_text(cls, value):
        return _strip(value)


class ProjectUpdate(BaseModel):
    # Version the caller last read; a mismatch means someone else wrote first.
    version: int = Field(ge=1)
    name: str | None = Field(default=None, min_length=1, max_length=NAME_MAX_LENGTH)
    description: str | None = Field(default=None, max_length=DESCRIPTION_MAX_LENGTH)

    model_config = {"extra": "forbid"}

    @field_validator("name", "description", mode="before")
    @classmethod
    def strip_text(cls, value):
        return _strip(value)


async def create_project(session: AsyncSession, identity: Identity, data: ProjectCreate) -> Project:
    """Insert the project and its ``project.created`` event in one transaction."""
    project = projects_repo.add_project(
        session,
        tenant_id=identity.tenant_id,
        created_by=identity.subject_id,
        name=data.name,
        description=data.description,
    )
    event: ProjectCreatedData = {
        "project_id": project.id,
        "tenant_id": project.tenant_id,
        "name": project.name,
        "created_by": project.created_by,
    }
    publish(
        session,
        tenant_id=project.tenant_id,
        event_type=PROJECT_CREATED,
        aggregate_id=project.id,
        payload=dict(event),
    )
    try:
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        raise DatabaseError("Failed to create project") from exc
    logger.info("project created id=%s tenant=%s by=%s", project.id, project.tenant_id, project.created_by)
    return project


async def get_project(
    session: AsyncSession,
    tenant_id: str,
    project_id: str,
    *,
    include_deleted: bool = False,
) -> Project:
    # Another tenant's project and a missing one are indistinguishable.
    project = await projects_repo.get_project(
        session, tenant_id, project_id, include_deleted=include_deleted
    )
    if project is None:
        raise NotFoundError("Project not found")
    return project


async def list_projects(
    session: AsyncSession,
    tenant_id: str,
    *,
    include_deleted: bool = False,
) -> list[Project]:
    return await projects_repo.list_projects(session, tenant_id, include_deleted=include_deleted)


async def update_project(
    session: AsyncSession,
    identity: Identity,
    project_id: str,
    data: ProjectUpdate,
) -> Project:
    project = await get_project(session, identity.tenant_id, project_id)
    if project.version != data.version:
        raise ConflictError(
            f"Project {project_id} was modified concurrently (expected version {data.version}, "
            f"current {project.version})"
        )
    if data.name is not None:
        project.name = data.name
    if data.description is not None:
        project.description = data.description
    project.last_updated_by = identity.subject_id
    project.last_updated_at = _utc_now()
    await _commit_or_conflict(session, project_id)
    logger.info("project updated id=%s version=%s", project.id, project.version)
    return project


async def delete_project(session: AsyncSession, identity: Identity, project_id: str) -> Project:
    """Soft-delete the project and its owned resources together."""
    project = await get_project(session, identity.tenant_id, project_id)
    # Bulk update before touching the project so autoflush cannot hit the version check early.
    cascaded = await projects_repo.soft_delete_resources(session, identity.tenant_id, project_id)
    project.is_deleted = True
    project.last_updated_by = identity.subject_id
    project.last_updated_at = _utc_now()
    await _commit_or_conflict(session, project_id)
    logger.info("project deleted id=%s resources=%s", project.id, cascaded)
    return project


async def _commit_or_conflict(session: AsyncSession, project_id: str) -> None:
    # The version column guards the UPDATE; zero matched rows means a concurrent commit.
    try:
        await session.commit()
    except StaleDataError as exc:
        await session.rollback()
        raise ConflictError(f"Project {project_id} was modified concurrently") from exc
    except SQLAlchemyError as exc:
        await session.rollback()
        raise DatabaseError(f"Failed to save project {project_id}") from exc
