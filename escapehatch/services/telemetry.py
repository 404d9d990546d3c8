from __future__ import annotations

import math
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


# Process-local; counters are read by tests and the ops scripts, not exported.
_external_samples: Deque[ExternalCallSample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)
_gauges: dict[str, float] = {}


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    _external_samples.append(ExternalCallSample(time.time(), integration, latency_ms, success))


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def set_gauge(name: str, value: float) -> None:
    _gauges[name] = value


def external_call_stats(integration: str, *, window_s: int = 300) -> dict[str, float | int | None]:
    """Call count, failure count, p95 and max latency for one integration."""
    cutoff = time.time() - window_s
    samples = [s for s in _external_samples if s.integration == integration and s.ts >= cutoff]
    latencies = sorted(s.latency_ms for s in samples)
    p95 = latencies[max(0, math.ceil(0.95 * len(latencies)) - 1)] if latencies else None
    return {
        "calls": len(samples),
        "failures": sum(1 for s in samples if not s.success),
        "p95_ms": p95,
        "max_ms": latencies[-1] if latencies else None,
    }


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def gauges_snapshot() -> dict[str, float]:
    return dict(_gauges)


def reset_telemetry() -> None:
    _external_samples.clear()
    _counters.clear()
    _gauges.clear()
