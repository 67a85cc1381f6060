from __future__ import annotations

import asyncio
import logging

from arq import Retry
from arq.connections import RedisSettings
from sqlalchemy.exc import SQLAlchemyError

from tenantadmin.core.config import get_settings
from tenantadmin.core.logging import configure_logging
from tenantadmin.services.events.handlers import handle_provisioning_job
from tenantadmin.services.events.outbox import run_outbox_relay_loop
from tenantadmin.services.events.queue import ProvisioningJobPayload
from tenantadmin.services.workflows.engine import get_workflow_engine


logger = logging.getLogger(__name__)


async def run_project_provisioning(ctx, payload: dict) -> str | None:
    # Validate in the worker so the job schema stays the contract.
    job_payload = ProvisioningJobPayload.model_validate(payload)
    settings = get_settings()
    attempt = ctx.get("job_try", 1)
    try:
        return await handle_provisioning_job(job_payload)
    except (SQLAlchemyError, OSError) as exc:
        if attempt < settings.provisioning_job_max_tries:
            logger.warning(
                "provisioning job infrastructure error project=%s attempt=%s: %s",
                job_payload.project_id,
                attempt,
                exc,
            )
            raise Retry(defer=settings.provisioning_job_retry_defer_s * attempt) from exc
        raise


async def _resume_incomplete() -> None:
    try:
        resumed = await get_workflow_engine().resume_incomplete()
    except Exception:  # noqa: BLE001 - the relay loop still runs if recovery fails
        logger.exception("workflow recovery failed at startup")
        return
    for project_id, state in resumed.items():
        logger.info("recovered workflow project=%s state=%s", project_id, state.value)


async def _startup(ctx) -> None:
    # Relay loop feeds the queue; recovery drives instances a dead worker left behind.
    configure_logging()
    ctx["relay_task"] = asyncio.create_task(run_outbox_relay_loop())
    ctx["recovery_task"] = asyncio.create_task(_resume_incomplete())


async def _shutdown(ctx) -> None:
    tasks = []
    for key in ("relay_task", "recovery_task"):
        task = ctx.get(key)
        if task:
            task.cancel()
            tasks.append(task)
    # Wait for the cancelled loops so their sessions close before the event loop stops.
    await asyncio.gather(*tasks, return_exceptions=True)


class WorkerSettings:
    # Class attributes keep the arq CLI entrypoint working: `arq tenantadmin.workers.provisioning_worker.WorkerSettings`.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.provisioning_queue_name
    max_tries = settings.provisioning_job_max_tries
    functions = [run_project_provisioning]
    on_startup = _startup
    on_shutdown = _shutdown
