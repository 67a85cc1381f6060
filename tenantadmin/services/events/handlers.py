from __future__ import annotations

import logging
from typing import Any

from tenantadmin.persistence.repos import projects as projects_repo
from tenantadmin.services.events.queue import ProvisioningJobPayload
from tenantadmin.services.workflows.engine import get_workflow_engine


logger = logging.getLogger(__name__)


async def handle_provisioning_job(payload: ProvisioningJobPayload) -> str | None:
    """Run provisioning for one project; returns the final state, or None when skipped.

    Exceptions propagate so the queue (or the outbox relay in inline mode)
    retries the delivery.
    """
    from tenantadmin.persistence.db import SessionLocal

    async with SessionLocal() as session:
        project = await projects_repo.get_project(session, payload.tenant_id, payload.project_id)
    if project is None:
        # Deleted or rolled back before delivery; nothing left to provision.
        logger.warning(
            "project not found for provisioning project=%s tenant=%s; skipping",
            payload.project_id,
            payload.tenant_id,
        )
        return None

    engine = get_workflow_engine()
    if payload.run <= 1:
        await engine.start(
            payload.project_id,
            payload.tenant_id,
            input={"name": payload.name, "created_by": payload.created_by},
        )
    state = await engine.run(payload.project_id)
    return state.value


async def handle_project_created(event_payload: dict[str, Any]) -> str | None:
    # Duplicate deliveries reach the same instance; start() ignores them.
    payload = ProvisioningJobPayload.model_validate({**event_payload, "run": 1})
    return await handle_provisioning_job(payload)
