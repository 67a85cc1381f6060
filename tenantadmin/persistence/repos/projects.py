from __future__ import annotations

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from tenantadmin.domain.models import Project, ProjectResource
from tenantadmin.persistence.db import dialect_name
from tenantadmin.persistence.guards import require_tenant_id, tenant_predicate, visible_predicate


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def add_project(
    session: AsyncSession,
    *,
    tenant_id: str,
    created_by: str,
    name: str,
    description: str,
) -> Project:
    # Identity, ownership and audit fields are always assigned here, never by callers.
    now = _utc_now()
    project = Project(
        id=uuid4().hex,
        tenant_id=tenant_id,
        name=name,
        description=description,
        is_deleted=False,
        created_by=created_by,
        created_at=now,
        last_updated_by=created_by,
        last_updated_at=now,
    )
    session.add(project)
    return project


async def get_project(
    session: AsyncSession,
    tenant_id: str,
    project_id: str,
    *,
    include_deleted: bool = False,
) -> Project | None:
    # Predicates are built before any session access so a missing tenant fails fast.
    stmt = select(Project).where(
        Project.id == project_id,
        visible_predicate(Project, tenant_id, include_deleted=include_deleted),
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def list_projects(
    session: AsyncSession,
    tenant_id: str,
    *,
    include_deleted: bool = False,
) -> list[Project]:
    stmt = (
        select(Project)
        .where(visible_predicate(Project, tenant_id, include_deleted=include_deleted))
        .order_by(Project.created_at, Project.id)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def soft_delete_resources(session: AsyncSession, tenant_id: str, project_id: str) -> int:
    # Owned resources follow the project; runs inside the caller's transaction.
    stmt = (
        update(ProjectResource)
        .where(
            ProjectResource.project_id == project_id,
            tenant_predicate(ProjectResource, tenant_id),
            ProjectResource.is_deleted.is_(False),
        )
        .values(is_deleted=True)
    )
    result = await session.execute(stmt)
    return int(result.rowcount or 0)


async def upsert_resource(
    session: AsyncSession,
    *,
    project_id: str,
    tenant_id: str,
    kind: str,
    external_id: str,
) -> None:
    # One row per (project, kind); a re-run refreshes the external id in place.
    require_tenant_id(tenant_id)
    values = {
        "id": uuid4().hex,
        "project_id": project_id,
        "tenant_id": tenant_id,
        "kind": kind,
        "external_id": external_id,
        "is_deleted": False,
        "created_at": _utc_now(),
    }
    dialect = dialect_name(session)
    if dialect in ("postgresql", "sqlite"):
        insert_fn = pg_insert if dialect == "postgresql" else sqlite_insert
        stmt = insert_fn(ProjectResource).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[ProjectResource.project_id, ProjectResource.kind],
            set_={"external_id": stmt.excluded.external_id},
        )
        await session.execute(stmt)
        return
    result = await session.execute(
        select(ProjectResource).where(
            ProjectResource.project_id == project_id,
            ProjectResource.kind == kind,
        )
    )
    existing = result.scalar_one_or_none()
    if existing is None:
        session.add(ProjectResource(**values))
    else:
        existing.external_id = external_id
    await session.flush()


async def list_resources(
    session: AsyncSession,
    tenant_id: str,
    project_id: str,
    *,
    include_deleted: bool = False,
) -> list[ProjectResource]:
    stmt = (
        select(ProjectResource)
        .where(
            ProjectResource.project_id == project_id,
            visible_predicate(ProjectResource, tenant_id, include_deleted=include_deleted),
        )
        .order_by(ProjectResource.kind)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())
