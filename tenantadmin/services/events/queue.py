from __future__ import annotations

import asyncio
import logging

from arq import create_pool
from arq.connections import RedisSettings
from pydantic import BaseModel

from tenantadmin.core.config import get_settings


logger = logging.getLogger(__name__)

_redis_pool = None
_redis_pool_loop = None
_redis_lock = asyncio.Lock()

PROVISIONING_JOB = "run_project_provisioning"


def _queue_key(queue_name: str) -> str:
    # arq's queue naming convention, used for depth checks.
    return f"arq:queue:{queue_name}"


class ProvisioningJobPayload(BaseModel):
    # Job schema shared by the outbox relay, the retry endpoint and the worker.
    project_id: str
    tenant_id: str
    name: str = ""
    created_by: str | None = None
    run: int = 1


def provisioning_job_id(project_id: str, run: int = 1) -> str:
    # arq drops a second job with the same id, so redelivery of one event collapses.
    if run <= 1:
        return f"provision:{project_id}"
    return f"provision:{project_id}:run-{run}"


def is_inline_mode() -> bool:
    return get_settings().workflow_execution_mode.lower() == "inline"


async def get_redis_pool():
    # Cached per event loop; tests run several loops in one process.
    global _redis_pool, _redis_pool_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_pool_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_pool_loop != current_loop:
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.provisioning_queue_name,
            )
            _redis_pool_loop = current_loop
    return _redis_pool


async def get_queue_depth() -> int | None:
    # None signals Redis is unreachable to the health endpoint.
    if is_inline_mode():
        return 0
    settings = get_settings()
    try:
        redis = await get_redis_pool()
        depth = await redis.llen(_queue_key(settings.provisioning_queue_name))
        return int(depth)
    except Exception:  # noqa: BLE001 - health endpoint reports degraded Redis
        return None


async def enqueue_provisioning_job(payload: ProvisioningJobPayload) -> str:
    # In inline mode the handler runs in-process and its completion is the acknowledgement.
    job_id = provisioning_job_id(payload.project_id, payload.run)
    if is_inline_mode():
        from tenantadmin.services.events.handlers import handle_provisioning_job

        await handle_provisioning_job(payload)
        return job_id

    settings = get_settings()
    redis = await get_redis_pool()
    job = await redis.enqueue_job(
        PROVISIONING_JOB,
        payload.model_dump(),
        _job_id=job_id,
        _queue_name=settings.provisioning_queue_name,
    )
    if job is None:
        # Same id already queued or recently finished; the first delivery wins.
        logger.info("provisioning job already enqueued job_id=%s", job_id)
    return job_id
