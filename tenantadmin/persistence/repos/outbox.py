from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantadmin.domain.models import OutboxEvent


STATUS_PENDING = "pending"
STATUS_DISPATCHED = "dispatched"


def add_event(
    session: AsyncSession,
    *,
    tenant_id: str,
    event_type: str,
    aggregate_id: str,
    payload: dict[str, Any],
    now: datetime,
) -> OutboxEvent:
    # Caller owns the transaction; the row commits or rolls back with the aggregate.
    event = OutboxEvent(
        id=uuid4().hex,
        tenant_id=tenant_id,
        event_type=event_type,
        aggregate_id=aggregate_id,
        payload_json=payload,
        status=STATUS_PENDING,
        attempts=0,
        next_attempt_at=now,
        created_at=now,
    )
    session.add(event)
    return event


async def list_due_events(session: AsyncSession, *, now: datetime, limit: int) -> list[OutboxEvent]:
    # Oldest first so a backlog drains in publication order.
    stmt = (
        select(OutboxEvent)
        .where(
            OutboxEvent.status == STATUS_PENDING,
            or_(OutboxEvent.next_attempt_at.is_(None), OutboxEvent.next_attempt_at <= now),
        )
        .order_by(OutboxEvent.created_at, OutboxEvent.id)
        .limit(limit)
    )
    if session.get_bind().dialect.name == "postgresql":
        # Concurrent relays skip rows another relay is already delivering.
        stmt = stmt.with_for_update(skip_locked=True)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_events_for_aggregate(session: AsyncSession, aggregate_id: str) -> list[OutboxEvent]:
    result = await session.execute(
        select(OutboxEvent)
        .where(OutboxEvent.aggregate_id == aggregate_id)
        .order_by(OutboxEvent.created_at, OutboxEvent.id)
    )
    return list(result.scalars().all())


def mark_dispatched(event: OutboxEvent, *, now: datetime) -> None:
    event.status = STATUS_DISPATCHED
    event.attempts = event.attempts + 1
    event.dispatched_at = now
    event.last_error = None


def mark_failed(event: OutboxEvent, *, error: str, next_attempt_at: datetime) -> None:
    # Stays pending; the relay picks it up again once next_attempt_at passes.
    event.attempts = event.attempts + 1
    event.last_error = error[:2000]
    event.next_attempt_at = next_attempt_at
