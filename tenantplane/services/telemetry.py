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
    operation: str
    latency_ms: float
    success: bool


_external_samples: Deque[ExternalCallSample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)


def record_external_call(*, integration: str, operation: str, latency_ms: float, success: bool) -> None:
    # Capture provider call latency and outcomes per operation.
    _external_samples.append(
        ExternalCallSample(
            ts=time.time(),
            integration=integration,
            operation=operation,
            latency_ms=latency_ms,
            success=success,
        )
    )


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def external_latency_by_operation(window_s: int) -> dict[str, dict[str, float | None]]:
    # Aggregate provider latency per integration.operation over the window.
    cutoff = time.time() - window_s
    grouped: dict[str, list[float]] = defaultdict(list)
    for sample in _external_samples:
        if sample.ts < cutoff:
            continue
        grouped[f"{sample.integration}.{sample.operation}"].append(sample.latency_ms)
    result: dict[str, dict[str, float | None]] = {}
    for key, latencies in grouped.items():
        latencies.sort()
        p95_idx = max(0, math.ceil(0.95 * len(latencies)) - 1)
        result[key] = {"p95": latencies[p95_idx], "max": latencies[-1]}
    return result


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def reset_telemetry() -> None:
    # Tests reset process-wide samples between cases.
    _external_samples.clear()
    _counters.clear()
