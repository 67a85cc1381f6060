"""Durable provisioning workflow engine.

One ``WorkflowInstance`` row per project drives the state machine in
``tenantadmin.domain.state``. The runner holds a lease on the row while it
works and commits after every step, so a crashed worker's instance can be
picked up by another runner once the lease expires. Resumption continues
from the persisted state and never re-executes a step already recorded as
successful for the current run.

Configuration and cancel signals are written by other processes (the API)
and observed by the runner between steps.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from tenantadmin.core.config import get_settings
from tenantadmin.core.errors import NotFoundError, WorkflowStateError
from tenantadmin.domain.models import WorkflowInstance
from tenantadmin.domain.state import STEP_SEQUENCE, TERMINAL_STATES, WorkflowState, can_transition
from tenantadmin.persistence.repos import projects as projects_repo
from tenantadmin.persistence.repos import workflows as workflows_repo
from tenantadmin.services.telemetry import increment_counter
from tenantadmin.services.workflows.retry import StepOutcome, StepRetryPolicy, run_step_with_retry
from tenantadmin.services.workflows.steps import ProvisioningActivities, ProvisioningConfiguration, StepContext


logger = logging.getLogger(__name__)

WORKFLOW_TYPE = "project-lifecycle"
SIGNAL_CONFIGURATION = "update_configuration"
SIGNAL_CANCEL = "cancel"
STEP_NOTIFICATIONS = "send_notifications"
PROJECT_DELETED = "project deleted"

_TERMINAL_VALUES = [state.value for state in TERMINAL_STATES]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class StepRecord:
    step: str
    run: int
    success: bool
    attempts: int
    resource_ids: dict[str, str]
    error: str | None


@dataclass(frozen=True)
class WorkflowStatus:
    project_id: str
    tenant_id: str
    state: WorkflowState
    run: int
    cancel_requested: bool
    error_message: str | None
    config: dict[str, Any]
    steps: list[StepRecord] = field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None


class WorkflowEngine:
    def __init__(
        self,
        *,
        session_factory: Callable[[], Any] | None = None,
        activities: ProvisioningActivities | None = None,
        policy: StepRetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        worker_id: str | None = None,
        lease_seconds: int | None = None,
        notifications_strict: bool | None = None,
    ) -> None:
        settings = get_settings()
        self._session_factory = session_factory
        self._activities = activities or ProvisioningActivities(session_factory=session_factory)
        self._policy = policy or StepRetryPolicy.from_settings()
        self._sleep = sleep
        self.worker_id = worker_id or f"runner-{uuid4().hex[:12]}"
        self._lease_seconds = lease_seconds or settings.workflow_lease_seconds
        self._notifications_strict = (
            settings.workflow_notifications_strict if notifications_strict is None else notifications_strict
        )
        self._steps: dict[str, Callable[[StepContext], Awaitable[StepOutcome]]] = {
            "provision_resources": self._activities.provision_resources,
            "configure_permissions": self._activities.configure_permissions,
            "send_notifications": self._activities.send_notifications,
        }

    def _sessions(self) -> AsyncSession:
        if self._session_factory is not None:
            return self._session_factory()
        from tenantadmin.persistence.db import SessionLocal

        return SessionLocal()

    async def _load(
        self,
        session: AsyncSession,
        project_id: str,
        tenant_id: str | None = None,
        *,
        lock: bool = False,
    ) -> WorkflowInstance:
        instance = await workflows_repo.get_instance(session, project_id, tenant_id=tenant_id, for_update=lock)
        if instance is None:
            raise NotFoundError(f"No provisioning workflow for project {project_id}")
        return instance

    def _apply_transition(
        self,
        instance: WorkflowInstance,
        target: WorkflowState,
        *,
        error: str | None = None,
    ) -> None:
        current = WorkflowState(instance.state)
        if not can_transition(current, target):
            raise WorkflowStateError(f"Illegal transition {current.value} -> {target.value}")
        now = _utc_now()
        instance.state = target.value
        instance.updated_at = now
        if error is not None:
            instance.error_message = error
        if target.is_terminal:
            instance.completed_at = now
            instance.lease_owner = None
            instance.lease_expires_at = None
        else:
            instance.lease_expires_at = now + timedelta(seconds=self._lease_seconds)
        logger.info(
            "workflow transition project=%s run=%s %s -> %s",
            instance.id,
            instance.run,
            current.value,
            target.value,
        )

    async def start(self, project_id: str, tenant_id: str, *, input: dict[str, Any] | None = None) -> bool:
        """Create the instance for a project; False when one already exists."""
        async with self._sessions() as session:
            created = await workflows_repo.insert_instance_if_absent(
                session,
                workflow_id=project_id,
                tenant_id=tenant_id,
                workflow_type=WORKFLOW_TYPE,
                state=WorkflowState.INITIALIZING.value,
                input_json=dict(input or {}),
                now=_utc_now(),
            )
            await session.commit()
        if created:
            increment_counter("workflow_started_total")
            logger.info("workflow created project=%s tenant=%s", project_id, tenant_id)
        else:
            increment_counter("workflow_duplicate_start_total")
            logger.info("workflow already exists project=%s; start ignored", project_id)
        return created

    async def _claim(self, project_id: str, owner: str | None = None) -> bool:
        now = _utc_now()
        async with self._sessions() as session:
            claimed = await workflows_repo.claim_lease(
                session,
                project_id,
                owner=owner or self.worker_id,
                now=now,
                expires_at=now + timedelta(seconds=self._lease_seconds),
                terminal_states=_TERMINAL_VALUES,
            )
            await session.commit()
        return claimed

    async def _release(self, project_id: str, owner: str | None = None) -> None:
        async with self._sessions() as session:
            await workflows_repo.release_lease(session, project_id, owner=owner or self.worker_id)
            await session.commit()

    async def run(self, project_id: str) -> WorkflowState:
        """Drive an instance to a terminal state, or return early if another runner holds it."""
        if not await self._claim(project_id):
            state = await self.get_state(project_id)
            logger.info("workflow not claimed project=%s state=%s", project_id, state.value)
            return state
        try:
            return await self._drive(project_id)
        finally:
            await self._release(project_id)

    def _holds_lease(self, instance: WorkflowInstance) -> bool:
        if instance.lease_owner == self.worker_id:
            return True
        # Lease expired and another runner claimed the instance; it owns every further commit.
        increment_counter("workflow_lease_lost_total")
        logger.warning(
            "workflow lease lost project=%s run=%s owner=%s",
            instance.id,
            instance.run,
            instance.lease_owner,
        )
        return False

    async def _project_deleted(self, session: AsyncSession, instance: WorkflowInstance) -> bool:
        project = await projects_repo.get_project(
            session, instance.tenant_id, instance.id, include_deleted=True
        )
        return project is None or project.is_deleted

    async def _stop_for_deleted_project(self, session: AsyncSession, instance: WorkflowInstance) -> WorkflowState:
        # Rows a step wrote after the delete cascaded follow the project.
        await projects_repo.soft_delete_resources(session, instance.tenant_id, instance.id)
        self._apply_transition(instance, WorkflowState.CANCELLED, error=PROJECT_DELETED)
        await session.commit()
        increment_counter("workflow_cancelled_total")
        logger.warning("workflow stopped project=%s run=%s: project deleted", instance.id, instance.run)
        return WorkflowState.CANCELLED

    async def _drive(self, project_id: str) -> WorkflowState:
        async with self._sessions() as session:
            instance = await self._load(session, project_id, lock=True)
            if not self._holds_lease(instance):
                return WorkflowState(instance.state)
            if WorkflowState(instance.state) is WorkflowState.INITIALIZING:
                if await self._project_deleted(session, instance):
                    return await self._stop_for_deleted_project(session, instance)
                if instance.cancel_requested:
                    self._apply_transition(instance, WorkflowState.CANCELLED)
                    await session.commit()
                    return WorkflowState.CANCELLED
                self._apply_transition(instance, WorkflowState.PROVISIONING)
                await session.commit()

        for index, (step, step_state) in enumerate(STEP_SEQUENCE):
            async with self._sessions() as session:
                instance = await self._load(session, project_id, lock=True)
                state = WorkflowState(instance.state)
                if state.is_terminal:
                    return state
                if not self._holds_lease(instance):
                    return state
                if state is not step_state:
                    # Checkpointed past this step in an earlier attempt.
                    continue
                if await self._project_deleted(session, instance):
                    return await self._stop_for_deleted_project(session, instance)
                if instance.cancel_requested:
                    self._apply_transition(instance, WorkflowState.CANCELLED)
                    await session.commit()
                    increment_counter("workflow_cancelled_total")
                    return WorkflowState.CANCELLED
                run = instance.run
                ctx = StepContext(
                    project_id=instance.id,
                    tenant_id=instance.tenant_id,
                    run=run,
                    input=dict(instance.input_json or {}),
                    config=dict(instance.config_json or {}),
                )
                recorded = await workflows_repo.get_step_result(
                    session, workflow_id=project_id, run=run, step=step
                )

            if recorded is not None and recorded.success:
                outcome = StepOutcome(
                    success=True,
                    resource_ids=dict(recorded.resource_ids_json or {}),
                    attempts=recorded.attempts,
                )
                logger.info("step already recorded project=%s run=%s step=%s; skipping", project_id, run, step)
            else:
                outcome = await run_step_with_retry(
                    step,
                    lambda step=step, ctx=ctx: self._steps[step](ctx),
                    self._policy,
                    sleep=self._sleep,
                )

            next_state = STEP_SEQUENCE[index + 1][1] if index + 1 < len(STEP_SEQUENCE) else WorkflowState.COMPLETED
            error: str | None = None
            if not outcome.success:
                if step == STEP_NOTIFICATIONS and not self._notifications_strict:
                    increment_counter("workflow_notification_failures_total")
                    logger.warning(
                        "notification step failed project=%s run=%s error=%s; completing anyway",
                        project_id,
                        run,
                        outcome.error,
                    )
                else:
                    next_state = WorkflowState.FAILED
                    error = f"{step}: {outcome.error}"

            async with self._sessions() as session:
                instance = await self._load(session, project_id, lock=True)
                if WorkflowState(instance.state).is_terminal or instance.run != run:
                    # Finalized elsewhere while the step was running.
                    return WorkflowState(instance.state)
                if not self._holds_lease(instance):
                    return WorkflowState(instance.state)
                await workflows_repo.record_step_result(
                    session,
                    workflow_id=project_id,
                    run=run,
                    step=step,
                    success=outcome.success,
                    attempts=outcome.attempts,
                    resource_ids=outcome.resource_ids,
                    error_message=outcome.error,
                    now=_utc_now(),
                )
                if await self._project_deleted(session, instance):
                    return await self._stop_for_deleted_project(session, instance)
                self._apply_transition(instance, next_state, error=error)
                await session.commit()

            if next_state is WorkflowState.FAILED:
                increment_counter("workflow_failed_total")
                logger.error("workflow failed project=%s run=%s error=%s", project_id, run, error)
                return WorkflowState.FAILED

        increment_counter("workflow_completed_total")
        return await self.get_state(project_id)

    async def get_state(self, project_id: str, *, tenant_id: str | None = None) -> WorkflowState:
        async with self._sessions() as session:
            instance = await self._load(session, project_id, tenant_id)
            return WorkflowState(instance.state)

    async def get_status(self, project_id: str, *, tenant_id: str | None = None) -> WorkflowStatus:
        # Read-only snapshot; never changes state.
        async with self._sessions() as session:
            instance = await self._load(session, project_id, tenant_id)
            results = await workflows_repo.list_step_results(session, project_id, run=instance.run)
            return WorkflowStatus(
                project_id=instance.id,
                tenant_id=instance.tenant_id,
                state=WorkflowState(instance.state),
                run=instance.run,
                cancel_requested=instance.cancel_requested,
                error_message=instance.error_message,
                config=dict(instance.config_json or {}),
                steps=[
                    StepRecord(
                        step=row.step,
                        run=row.run,
                        success=row.success,
                        attempts=row.attempts,
                        resource_ids=dict(row.resource_ids_json or {}),
                        error=row.error_message,
                    )
                    for row in results
                ],
                created_at=instance.created_at,
                updated_at=instance.updated_at,
                completed_at=instance.completed_at,
            )

    async def update_configuration(
        self,
        project_id: str,
        payload: ProvisioningConfiguration | dict[str, Any],
        *,
        tenant_id: str | None = None,
    ) -> bool:
        """Record a configuration signal; returns False when the instance is terminal and it was ignored.

        Raises ``pydantic.ValidationError`` for payloads that are not a valid configuration.
        """
        if not isinstance(payload, ProvisioningConfiguration):
            payload = ProvisioningConfiguration.model_validate(payload)
        config = payload.as_config()
        async with self._sessions() as session:
            instance = await self._load(session, project_id, tenant_id)
            applied = not WorkflowState(instance.state).is_terminal
            workflows_repo.add_signal(
                session,
                workflow_id=project_id,
                signal_type=SIGNAL_CONFIGURATION,
                payload=config,
                applied=applied,
                now=_utc_now(),
            )
            if applied:
                merged = dict(instance.config_json or {})
                merged.update(config)
                instance.config_json = merged
                instance.updated_at = _utc_now()
            await session.commit()
        if applied:
            logger.info("configuration signal applied project=%s keys=%s", project_id, sorted(config))
        else:
            logger.info("configuration signal ignored project=%s (terminal)", project_id)
        return applied

    async def cancel(self, project_id: str, *, tenant_id: str | None = None) -> WorkflowState:
        """Request cancellation; takes effect immediately when no runner holds the instance."""
        async with self._sessions() as session:
            instance = await self._load(session, project_id, tenant_id)
            if WorkflowState(instance.state).is_terminal:
                raise WorkflowStateError(f"Workflow for project {project_id} is already {instance.state}")
            instance.cancel_requested = True
            instance.updated_at = _utc_now()
            workflows_repo.add_signal(
                session,
                workflow_id=project_id,
                signal_type=SIGNAL_CANCEL,
                payload={},
                applied=True,
                now=_utc_now(),
            )
            await session.commit()

        # Distinct owner so a cancel never rides on a lease this engine holds for a run.
        cancel_owner = f"{self.worker_id}:cancel"
        if await self._claim(project_id, cancel_owner):
            try:
                async with self._sessions() as session:
                    instance = await self._load(session, project_id)
                    if not WorkflowState(instance.state).is_terminal:
                        self._apply_transition(instance, WorkflowState.CANCELLED)
                        await session.commit()
                        increment_counter("workflow_cancelled_total")
            finally:
                await self._release(project_id, cancel_owner)
        return await self.get_state(project_id)

    async def retrigger(self, project_id: str, *, tenant_id: str | None = None) -> int:
        """Reset a failed or cancelled instance for a new run and return the run number."""
        async with self._sessions() as session:
            instance = await self._load(session, project_id, tenant_id)
            state = WorkflowState(instance.state)
            if state not in (WorkflowState.FAILED, WorkflowState.CANCELLED):
                raise WorkflowStateError(f"Only failed or cancelled workflows can be retried (state={state.value})")
            instance.run = instance.run + 1
            instance.state = WorkflowState.INITIALIZING.value
            instance.cancel_requested = False
            instance.error_message = None
            instance.completed_at = None
            instance.lease_owner = None
            instance.lease_expires_at = None
            instance.updated_at = _utc_now()
            run = instance.run
            await session.commit()
        increment_counter("workflow_retriggered_total")
        logger.info("workflow retriggered project=%s run=%s", project_id, run)
        return run

    async def list_resumable(self, *, limit: int = 100) -> list[str]:
        async with self._sessions() as session:
            return await workflows_repo.list_resumable(
                session,
                now=_utc_now(),
                terminal_states=_TERMINAL_VALUES,
                limit=limit,
            )

    async def resume_incomplete(self, *, limit: int = 100) -> dict[str, WorkflowState]:
        # Restart recovery: drive every unleased non-terminal instance.
        results: dict[str, WorkflowState] = {}
        for project_id in await self.list_resumable(limit=limit):
            try:
                results[project_id] = await self.run(project_id)
            except Exception:  # noqa: BLE001 - one broken instance must not block the rest
                logger.exception("workflow resume failed project=%s", project_id)
        if results:
            logger.info("resumed %s workflow(s)", len(results))
        return results


_engine: WorkflowEngine | None = None


def get_workflow_engine() -> WorkflowEngine:
    global _engine
    if _engine is None:
        _engine = WorkflowEngine()
    return _engine


def set_workflow_engine(engine: WorkflowEngine | None) -> None:
    global _engine
    _engine = engine
