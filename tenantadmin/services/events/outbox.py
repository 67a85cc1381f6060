"""Transactional outbox for domain events.

``publish`` adds an event row to the caller's session, so the event becomes
durable exactly when the aggregate change commits. ``relay_pending_events``
later hands due rows to the provisioning queue and flips them to
``dispatched`` only after the hand-off returned. Failed deliveries stay
pending with a capped exponential backoff and are retried indefinitely.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from tenantadmin.core.config import get_settings
from tenantadmin.domain.events import PROJECT_CREATED
from tenantadmin.domain.models import OutboxEvent
from tenantadmin.persistence.repos import outbox as outbox_repo
from tenantadmin.services.events.queue import ProvisioningJobPayload, enqueue_provisioning_job
from tenantadmin.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

Deliver = Callable[[OutboxEvent], Awaitable[None]]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RelayReport:
    dispatched: int
    failed: int


def publish(
    session: AsyncSession,
    *,
    tenant_id: str,
    event_type: str,
    aggregate_id: str,
    payload: dict,
) -> OutboxEvent:
    return outbox_repo.add_event(
        session,
        tenant_id=tenant_id,
        event_type=event_type,
        aggregate_id=aggregate_id,
        payload=payload,
        now=_utc_now(),
    )


def retry_delay_s(attempts: int) -> float:
    # attempts counts failures so far, including the one just recorded.
    settings = get_settings()
    raw = settings.outbox_retry_backoff_s * (2 ** max(attempts - 1, 0))
    return min(raw, settings.outbox_retry_max_backoff_s)


async def deliver_event(event: OutboxEvent) -> None:
    if event.event_type == PROJECT_CREATED:
        job = ProvisioningJobPayload.model_validate({**(event.payload_json or {}), "run": 1})
        await enqueue_provisioning_job(job)
        return
    # Unknown types are acknowledged so they do not block the relay forever.
    logger.warning("no handler for outbox event type=%s id=%s", event.event_type, event.id)


async def relay_pending_events(
    *,
    session_factory: Callable[[], AsyncSession] | None = None,
    deliver: Deliver | None = None,
    limit: int | None = None,
) -> RelayReport:
    """Deliver due pending events once; safe to call concurrently on PostgreSQL."""
    if session_factory is None:
        from tenantadmin.persistence.db import SessionLocal

        session_factory = SessionLocal
    deliver = deliver or deliver_event
    batch = limit or get_settings().outbox_batch_size
    dispatched = 0
    failed = 0
    async with session_factory() as session:
        events = await outbox_repo.list_due_events(session, now=_utc_now(), limit=batch)
        for event in events:
            try:
                await deliver(event)
            except Exception as exc:  # noqa: BLE001 - every failure reschedules the event
                delay = retry_delay_s(event.attempts + 1)
                outbox_repo.mark_failed(
                    event,
                    error=f"{type(exc).__name__}: {exc}",
                    next_attempt_at=_utc_now() + timedelta(seconds=delay),
                )
                failed += 1
                increment_counter("outbox_delivery_failures_total")
                logger.warning(
                    "outbox delivery failed id=%s type=%s attempts=%s retry_in_s=%.1f",
                    event.id,
                    event.event_type,
                    event.attempts,
                    delay,
                    exc_info=True,
                )
            else:
                outbox_repo.mark_dispatched(event, now=_utc_now())
                dispatched += 1
                increment_counter("outbox_dispatched_total")
            # Commit per event so one acknowledgement is never lost to a later failure.
            await session.commit()
    if dispatched or failed:
        logger.info("outbox relay dispatched=%s failed=%s", dispatched, failed)
    return RelayReport(dispatched=dispatched, failed=failed)


async def run_outbox_relay_loop(stop_event: asyncio.Event | None = None) -> None:
    # Worker background loop; errors are logged and the next tick retries.
    settings = get_settings()
    interval = max(1, int(settings.outbox_poll_interval_s))
    while stop_event is None or not stop_event.is_set():
        try:
            await relay_pending_events()
        except Exception:  # noqa: BLE001 - keep the relay alive across transient DB errors
            logger.exception("outbox relay iteration failed")
        await asyncio.sleep(interval)
