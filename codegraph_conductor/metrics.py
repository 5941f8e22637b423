"""Per-operation counters and latency percentiles."""

from __future__ import annotations

import math
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, Optional, Sequence

LATENCY_WINDOW = 1000


def percentile(samples: Sequence[float], pct: float) -> float:
    """Nearest-rank percentile; ``0.0`` for an empty sample."""
    if not samples:
        return 0.0
    ordered = sorted(samples)
    rank = max(1, math.ceil(pct / 100.0 * len(ordered)))
    return ordered[rank - 1]


@dataclass
class OperationStats:
    worker: str
    count: int = 0
    successes: int = 0
    failures: int = 0
    rejections: int = 0
    cancellations: int = 0
    last_error: Optional[str] = None
    last_run_at: float = 0.0
    latencies_ms: Deque[float] = field(default_factory=lambda: deque(maxlen=LATENCY_WINDOW))

    def to_dict(self) -> Dict[str, Any]:
        samples = list(self.latencies_ms)
        return {
            "worker": self.worker,
            "count": self.count,
            "successes": self.successes,
            "failures": self.failures,
            "rejections": self.rejections,
            "cancellations": self.cancellations,
            "lastError": self.last_error,
            "lastRunAt": self.last_run_at,
            "p50Ms": round(percentile(samples, 50), 3),
            "p95Ms": round(percentile(samples, 95), 3),
        }


class MetricsStore:
    def __init__(self) -> None:
        self.started_at = time.time()
        self._ops: Dict[str, OperationStats] = {}

    def _stats(self, operation: str, worker: str) -> OperationStats:
        stats = self._ops.get(operation)
        if stats is None:
            stats = self._ops[operation] = OperationStats(worker=worker)
        return stats

    def record_start(self, operation: str, worker: str) -> float:
        stats = self._stats(operation, worker)
        stats.count += 1
        stats.last_run_at = time.time()
        return time.perf_counter()

    def record_end(self, operation: str, worker: str, started: float, outcome: str,
                   error_code: Optional[str] = None) -> float:
        """Close a run opened by :meth:`record_start`; returns its duration in ms."""
        stats = self._stats(operation, worker)
        elapsed_ms = (time.perf_counter() - started) * 1000
        stats.latencies_ms.append(elapsed_ms)
        if outcome == "success":
            stats.successes += 1
        elif outcome == "cancelled":
            stats.cancellations += 1
        else:
            stats.failures += 1
            stats.last_error = error_code
        return elapsed_ms

    def record_rejection(self, operation: str, worker: str) -> None:
        self._stats(operation, worker).rejections += 1

    def operations(self) -> Dict[str, Dict[str, Any]]:
        return {name: stats.to_dict() for name, stats in sorted(self._ops.items())}

    def for_worker(self, worker: str) -> Dict[str, Dict[str, Any]]:
        return {name: s for name, s in self.operations().items() if s["worker"] == worker}

    def uptime_seconds(self) -> float:
        return time.time() - self.started_at
