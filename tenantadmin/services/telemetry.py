from __future__ import annotations

import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class ExternalCallSample:
    ts: float
    integration: str
    latency_ms: float
    success: bool


_external_samples: Deque[ExternalCallSample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    # Capture relationship-backend and webhook latency and outcomes.
    _external_samples.append(
        ExternalCallSample(
            ts=time.time(),
            integration=integration,
            latency_ms=latency_ms,
            success=success,
        )
    )


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def external_call_samples(integration: str | None = None) -> list[ExternalCallSample]:
    return [s for s in _external_samples if integration is None or s.integration == integration]


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def reset_counters() -> None:
    # Tests assert on absolute counter values.
    _counters.clear()
    _external_samples.clear()
