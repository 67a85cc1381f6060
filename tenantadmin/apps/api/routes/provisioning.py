from __future__ import annotations

from typing import Any

from fastapi import APIRouter, BackgroundTasks, Depends, Request, status
from pydantic import BaseModel

from tenantadmin.apps.api.deps import Principal, get_authorization_gate, get_current_principal
from tenantadmin.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantadmin.apps.api.response import SuccessEnvelope, success_response
from tenantadmin.services.authz.gate import AuthorizationGate, Identity
from tenantadmin.services.events.queue import (
    ProvisioningJobPayload,
    enqueue_provisioning_job,
    is_inline_mode,
)
from tenantadmin.services.workflows.engine import WorkflowEngine, WorkflowStatus, get_workflow_engine
from tenantadmin.services.workflows.steps import ProvisioningConfiguration


router = APIRouter(
    prefix="/projects/{project_id}/provisioning",
    tags=["provisioning"],
    responses=DEFAULT_ERROR_RESPONSES,
)


class StepResponse(BaseModel):
    step: str
    success: bool
    attempts: int
    resource_ids: dict[str, str]
    error: str | None


class ProvisioningStatusResponse(BaseModel):
    project_id: str
    state: str
    run: int
    cancel_requested: bool
    error_message: str | None
    config: dict[str, Any]
    steps: list[StepResponse]
    created_at: str | None
    updated_at: str | None
    completed_at: str | None


class SignalResponse(BaseModel):
    project_id: str
    state: str
    applied: bool
    run: int | None = None


def _iso(value) -> str | None:
    return value.isoformat() if value is not None else None


def _to_response(snapshot: WorkflowStatus) -> ProvisioningStatusResponse:
    return ProvisioningStatusResponse(
        project_id=snapshot.project_id,
        state=snapshot.state.value,
        run=snapshot.run,
        cancel_requested=snapshot.cancel_requested,
        error_message=snapshot.error_message,
        config=snapshot.config,
        steps=[
            StepResponse(
                step=step.step,
                success=step.success,
                attempts=step.attempts,
                resource_ids=step.resource_ids,
                error=step.error,
            )
            for step in snapshot.steps
        ],
        created_at=_iso(snapshot.created_at),
        updated_at=_iso(snapshot.updated_at),
        completed_at=_iso(snapshot.completed_at),
    )


def get_engine() -> WorkflowEngine:
    return get_workflow_engine()


async def _ensure_in_tenant(engine: WorkflowEngine, principal: Principal, project_id: str) -> None:
    # Another tenant's workflow answers 404 before any relation check.
    await engine.get_state(project_id, tenant_id=principal.tenant_id)


@router.get("", response_model=SuccessEnvelope[ProvisioningStatusResponse])
async def get_provisioning_status(
    project_id: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    engine: WorkflowEngine = Depends(get_engine),
) -> dict:
    snapshot = await engine.get_status(project_id, tenant_id=principal.tenant_id)
    return success_response(request=request, data=_to_response(snapshot).model_dump())


@router.post(
    "/configuration",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=SuccessEnvelope[SignalResponse],
)
async def update_provisioning_configuration(
    project_id: str,
    request: Request,
    payload: ProvisioningConfiguration,
    principal: Principal = Depends(get_current_principal),
    engine: WorkflowEngine = Depends(get_engine),
    gate: AuthorizationGate = Depends(get_authorization_gate),
) -> dict:
    await _ensure_in_tenant(engine, principal, project_id)

    async def _signal(identity: Identity) -> bool:
        return await engine.update_configuration(project_id, payload, tenant_id=identity.tenant_id)

    applied = await gate.execute(
        principal,
        relation="editor",
        resource_type="project",
        resource_id=project_id,
        mutation=_signal,
    )
    state = await engine.get_state(project_id, tenant_id=principal.tenant_id)
    data = SignalResponse(project_id=project_id, state=state.value, applied=applied)
    return success_response(request=request, data=data.model_dump())


@router.post(
    "/cancel",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=SuccessEnvelope[SignalResponse],
)
async def cancel_provisioning(
    project_id: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    engine: WorkflowEngine = Depends(get_engine),
    gate: AuthorizationGate = Depends(get_authorization_gate),
) -> dict:
    await _ensure_in_tenant(engine, principal, project_id)

    async def _cancel(identity: Identity):
        return await engine.cancel(project_id, tenant_id=identity.tenant_id)

    state = await gate.execute(
        principal,
        relation="owner",
        resource_type="project",
        resource_id=project_id,
        mutation=_cancel,
    )
    data = SignalResponse(project_id=project_id, state=state.value, applied=True)
    return success_response(request=request, data=data.model_dump())


@router.post(
    "/retry",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=SuccessEnvelope[SignalResponse],
)
async def retry_provisioning(
    project_id: str,
    request: Request,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(get_current_principal),
    engine: WorkflowEngine = Depends(get_engine),
    gate: AuthorizationGate = Depends(get_authorization_gate),
) -> dict:
    await _ensure_in_tenant(engine, principal, project_id)

    async def _retrigger(identity: Identity) -> int:
        return await engine.retrigger(project_id, tenant_id=identity.tenant_id)

    run = await gate.execute(
        principal,
        relation="owner",
        resource_type="project",
        resource_id=project_id,
        mutation=_retrigger,
    )
    job = ProvisioningJobPayload(project_id=project_id, tenant_id=principal.tenant_id, run=run)
    if is_inline_mode():
        background_tasks.add_task(enqueue_provisioning_job, job)
    else:
        await enqueue_provisioning_job(job)
    state = await engine.get_state(project_id, tenant_id=principal.tenant_id)
    data = SignalResponse(project_id=project_id, state=state.value, applied=True, run=run)
    return success_response(request=request, data=data.model_dump())
