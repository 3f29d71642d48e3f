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
    # Capture outbound call latency and outcomes for probes and deliveries.
    _external_samples.append(
        ExternalCallSample(
            ts=time.time(),
            integration=integration,
            latency_ms=latency_ms,
            success=success,
        )
    )


def increment_counter(name: str, value: int = 1) -> None:
    # Store counters for dropped, retried and delivered events.
    _counters[name] += value


def counter_value(name: str) -> int:
    return int(_counters.get(name, 0))


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def external_call_stats(window_s: int) -> dict[str, dict[str, float]]:
    # Summarize per-integration success ratio over a trailing window.
    cutoff = time.time() - window_s
    grouped: dict[str, list[ExternalCallSample]] = defaultdict(list)
    for sample in _external_samples:
        if sample.ts >= cutoff:
            grouped[sample.integration].append(sample)
    stats: dict[str, dict[str, float]] = {}
    for integration, samples in grouped.items():
        successes = sum(1 for sample in samples if sample.success)
        stats[integration] = {
            "count": float(len(samples)),
            "success_ratio": successes / len(samples),
            "avg_latency_ms": sum(sample.latency_ms for sample in samples) / len(samples),
        }
    return stats


def reset_telemetry() -> None:
    _external_samples.clear()
    _counters.clear()
