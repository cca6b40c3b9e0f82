from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class RequestSample:
    ts: float
    path: str
    status_code: int
    latency_ms: float


@dataclass(frozen=True)
class MigrationSample:
    ts: float
    variant: str
    status: str
    duration_ms: float
    migrated: int
    failed: int


_request_samples: Deque[RequestSample] = deque(maxlen=20000)
_migration_samples: Deque[MigrationSample] = deque(maxlen=1000)
_counters: dict[str, int] = defaultdict(int)


def record_request(*, path: str, status_code: int, latency_ms: float) -> None:
    # Track request latency and status for availability reporting.
    _request_samples.append(
        RequestSample(ts=time.time(), path=path, status_code=status_code, latency_ms=latency_ms)
    )


def record_migration(*, variant: str, status: str, duration_ms: float, migrated: int, failed: int) -> None:
    _migration_samples.append(
        MigrationSample(
            ts=time.time(),
            variant=variant,
            status=status,
            duration_ms=duration_ms,
            migrated=migrated,
            failed=failed,
        )
    )


def increment_counter(name: str, value: int = 1) -> None:
    # Store counters for ops dashboards.
    _counters[name] += value


def _window_samples(window_s: int) -> list[RequestSample]:
    cutoff = time.time() - window_s
    return [sample for sample in _request_samples if sample.ts >= cutoff]


def availability(window_s: int) -> float | None:
    # Calculate availability as % of non-5xx requests over the window.
    samples = _window_samples(window_s)
    if not samples:
        return None
    total = len(samples)
    failures = sum(1 for sample in samples if sample.status_code >= 500)
    return ((total - failures) / total) * 100.0


def p95_latency(window_s: int, *, path_prefix: str | None = None) -> float | None:
    samples = _window_samples(window_s)
    if path_prefix:
        samples = [sample for sample in samples if sample.path.startswith(path_prefix)]
    if not samples:
        return None
    latencies = sorted(sample.latency_ms for sample in samples)
    idx = max(0, math.ceil(0.95 * len(latencies)) - 1)
    return latencies[idx]


def migration_stats() -> dict[str, float | int | None]:
    # Summarize recent migration runs for the health payload.
    if not _migration_samples:
        return {"runs": 0, "partial": 0, "p95_duration_ms": None}
    durations = sorted(sample.duration_ms for sample in _migration_samples)
    idx = max(0, math.ceil(0.95 * len(durations)) - 1)
    return {
        "runs": len(_migration_samples),
        "partial": sum(1 for sample in _migration_samples if sample.status == "partial"),
        "p95_duration_ms": durations[idx],
    }


def counters_snapshot() -> dict[str, int]:
    # Return a copy of all counters for metrics reporting.
    return dict(_counters)


def reset() -> None:
    # Test helper; production code never clears telemetry.
    _request_samples.clear()
    _migration_samples.clear()
    _counters.clear()
