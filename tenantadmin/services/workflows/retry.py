from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import Awaitable, Callable

from tenantadmin.core.config import get_settings
from tenantadmin.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StepOutcome:
    # Steps report failure as a value; the engine decides what it means.
    success: bool
    resource_ids: dict[str, str] = field(default_factory=dict)
    error: str | None = None
    attempts: int = 1

    @classmethod
    def ok(cls, resource_ids: dict[str, str] | None = None) -> "StepOutcome":
        return cls(success=True, resource_ids=dict(resource_ids or {}))

    @classmethod
    def failure(cls, error: str) -> "StepOutcome":
        return cls(success=False, error=error)


@dataclass(frozen=True)
class StepRetryPolicy:
    initial_interval_s: float = 1.0
    max_interval_s: float = 60.0
    backoff_coefficient: float = 2.0
    max_attempts: int = 3

    @classmethod
    def from_settings(cls) -> "StepRetryPolicy":
        settings = get_settings()
        return cls(
            initial_interval_s=settings.workflow_retry_initial_interval_s,
            max_interval_s=settings.workflow_retry_max_interval_s,
            backoff_coefficient=settings.workflow_retry_backoff_coefficient,
            max_attempts=settings.workflow_retry_max_attempts,
        )

    def delay_for(self, attempt: int) -> float:
        # Delay after the given failed attempt (1-based), capped at max_interval_s.
        raw = self.initial_interval_s * (self.backoff_coefficient ** (attempt - 1))
        return min(raw, self.max_interval_s)

    def delays(self) -> list[float]:
        return [self.delay_for(attempt) for attempt in range(1, max(self.max_attempts, 1))]


Sleep = Callable[[float], Awaitable[None]]


async def run_step_with_retry(
    step: str,
    func: Callable[[], Awaitable[StepOutcome]],
    policy: StepRetryPolicy,
    *,
    sleep: Sleep = asyncio.sleep,
) -> StepOutcome:
    """Run one workflow step until it succeeds or the policy is exhausted.

    Exceptions escaping the step are folded into a failed ``StepOutcome`` so
    the caller only ever sees values. ``attempts`` on the returned outcome is
    the number of invocations actually made.
    """
    max_attempts = max(policy.max_attempts, 1)
    outcome = StepOutcome.failure("step not attempted")
    for attempt in range(1, max_attempts + 1):
        try:
            outcome = await func()
        except Exception as exc:  # noqa: BLE001 - step failures are values
            logger.warning("step %s raised on attempt %s: %s", step, attempt, exc, exc_info=True)
            outcome = StepOutcome.failure(f"{type(exc).__name__}: {exc}")
        if outcome.success:
            return replace(outcome, attempts=attempt)
        if attempt < max_attempts:
            delay = policy.delay_for(attempt)
            increment_counter("workflow_step_retries_total")
            logger.info(
                "step %s failed attempt=%s retry_in_s=%.2f error=%s",
                step,
                attempt,
                delay,
                outcome.error,
            )
            await sleep(delay)
    return replace(outcome, attempts=max_attempts)
