from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable
from uuid import uuid4

from sqlalchemy import and_, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from tenantadmin.domain.models import WorkflowInstance, WorkflowSignal, WorkflowStepResult
from tenantadmin.persistence.db import dialect_name


async def _insert_ignoring_conflict(session: AsyncSession, model, values: dict[str, Any]) -> bool:
    dialect = dialect_name(session)
    if dialect == "postgresql":
        stmt = pg_insert(model).values(**values).on_conflict_do_nothing()
    elif dialect == "sqlite":
        stmt = sqlite_insert(model).values(**values).on_conflict_do_nothing()
    else:
        raise NotImplementedError(f"Unsupported dialect for conflict-free insert: {dialect}")
    result = await session.execute(stmt)
    return (result.rowcount or 0) > 0


async def insert_instance_if_absent(
    session: AsyncSession,
    *,
    workflow_id: str,
    tenant_id: str,
    workflow_type: str,
    state: str,
    input_json: dict[str, Any],
    now: datetime,
) -> bool:
    # False when an instance already exists for this id (duplicate trigger).
    return await _insert_ignoring_conflict(
        session,
        WorkflowInstance,
        {
            "id": workflow_id,
            "tenant_id": tenant_id,
            "workflow_type": workflow_type,
            "state": state,
            "run": 1,
            "input_json": input_json,
            "config_json": {},
            "cancel_requested": False,
            "created_at": now,
            "updated_at": now,
        },
    )


async def get_instance(
    session: AsyncSession,
    workflow_id: str,
    *,
    tenant_id: str | None = None,
    for_update: bool = False,
) -> WorkflowInstance | None:
    stmt = select(WorkflowInstance).where(WorkflowInstance.id == workflow_id)
    if tenant_id is not None:
        stmt = stmt.where(WorkflowInstance.tenant_id == tenant_id)
    if for_update:
        stmt = stmt.with_for_update()
    # Long-lived runners must see transitions committed by other sessions.
    result = await session.execute(stmt.execution_options(populate_existing=True))
    return result.scalar_one_or_none()


def _lease_available(owner: str, now: datetime):
    return or_(
        WorkflowInstance.lease_owner.is_(None),
        WorkflowInstance.lease_owner == owner,
        WorkflowInstance.lease_expires_at.is_(None),
        WorkflowInstance.lease_expires_at < now,
    )


async def claim_lease(
    session: AsyncSession,
    workflow_id: str,
    *,
    owner: str,
    now: datetime,
    expires_at: datetime,
    terminal_states: Iterable[str],
) -> bool:
    # Conditional update: at most one owner holds an unexpired lease.
    result = await session.execute(
        update(WorkflowInstance)
        .where(
            WorkflowInstance.id == workflow_id,
            WorkflowInstance.state.not_in(list(terminal_states)),
            _lease_available(owner, now),
        )
        .values(lease_owner=owner, lease_expires_at=expires_at)
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) > 0


async def release_lease(session: AsyncSession, workflow_id: str, *, owner: str) -> None:
    await session.execute(
        update(WorkflowInstance)
        .where(WorkflowInstance.id == workflow_id, WorkflowInstance.lease_owner == owner)
        .values(lease_owner=None, lease_expires_at=None)
        .execution_options(synchronize_session=False)
    )


async def list_resumable(
    session: AsyncSession,
    *,
    now: datetime,
    terminal_states: Iterable[str],
    limit: int = 100,
) -> list[str]:
    # Non-terminal instances nobody is actively driving.
    result = await session.execute(
        select(WorkflowInstance.id)
        .where(
            WorkflowInstance.state.not_in(list(terminal_states)),
            or_(
                WorkflowInstance.lease_owner.is_(None),
                and_(
                    WorkflowInstance.lease_expires_at.is_not(None),
                    WorkflowInstance.lease_expires_at < now,
                ),
            ),
        )
        .order_by(WorkflowInstance.created_at, WorkflowInstance.id)
        .limit(limit)
    )
    return list(result.scalars().all())


async def record_step_result(
    session: AsyncSession,
    *,
    workflow_id: str,
    run: int,
    step: str,
    success: bool,
    attempts: int,
    resource_ids: dict[str, str],
    error_message: str | None,
    now: datetime,
) -> bool:
    # Results are immutable; a second record for the same step is dropped.
    return await _insert_ignoring_conflict(
        session,
        WorkflowStepResult,
        {
            "id": uuid4().hex,
            "workflow_id": workflow_id,
            "run": run,
            "step": step,
            "success": success,
            "attempts": attempts,
            "resource_ids_json": resource_ids,
            "error_message": error_message,
            "created_at": now,
        },
    )


async def get_step_result(
    session: AsyncSession,
    *,
    workflow_id: str,
    run: int,
    step: str,
) -> WorkflowStepResult | None:
    result = await session.execute(
        select(WorkflowStepResult).where(
            WorkflowStepResult.workflow_id == workflow_id,
            WorkflowStepResult.run == run,
            WorkflowStepResult.step == step,
        )
    )
    return result.scalar_one_or_none()


async def list_step_results(
    session: AsyncSession,
    workflow_id: str,
    *,
    run: int | None = None,
) -> list[WorkflowStepResult]:
    stmt = select(WorkflowStepResult).where(WorkflowStepResult.workflow_id == workflow_id)
    if run is not None:
        stmt = stmt.where(WorkflowStepResult.run == run)
    result = await session.execute(
        stmt.order_by(WorkflowStepResult.run, WorkflowStepResult.created_at, WorkflowStepResult.id)
    )
    return list(result.scalars().all())


def add_signal(
    session: AsyncSession,
    *,
    workflow_id: str,
    signal_type: str,
    payload: dict[str, Any],
    applied: bool,
    now: datetime,
) -> WorkflowSignal:
    signal = WorkflowSignal(
        id=uuid4().hex,
        workflow_id=workflow_id,
        signal_type=signal_type,
        payload_json=payload,
        applied=applied,
        received_at=now,
    )
    session.add(signal)
    return signal


async def list_signals(session: AsyncSession, workflow_id: str) -> list[WorkflowSignal]:
    result = await session.execute(
        select(WorkflowSignal)
        .where(WorkflowSignal.workflow_id == workflow_id)
        .order_by(WorkflowSignal.received_at, WorkflowSignal.id)
    )
    return list(result.scalars().all())
