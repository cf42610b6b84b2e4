from __future__ import annotations

import math
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Deque, Dict, Iterator

# requests that matched no route share one bucket so probing URLs cannot grow the table
UNMATCHED_ROUTE = "<unmatched>"
DEFAULT_SAMPLE_WINDOW = 200


@dataclass
class LatencySeries:
    """Running totals for one endpoint or phase plus a bounded sample tail."""

    window: int = DEFAULT_SAMPLE_WINDOW
    count: int = 0
    total_ms: float = 0.0
    samples: Deque[float] = field(default_factory=deque)

    def __post_init__(self) -> None:
        self.samples = deque(self.samples, maxlen=self.window)

    def add(self, duration_ms: float) -> None:
        self.count += 1
        self.total_ms += duration_ms
        self.samples.append(duration_ms)

    def summary(self) -> Dict[str, float]:
        return {
            "count": float(self.count),
            "avg_latency_ms": self.total_ms / self.count if self.count else 0.0,
            "p50_latency_ms": percentile(self.samples, 50),
            "p95_latency_ms": percentile(self.samples, 95),
        }


def percentile(samples, pct: float) -> float:
    """Nearest-rank percentile of ``samples``; 0.0 when there are none."""
    ordered = sorted(samples)
    if not ordered:
        return 0.0
    rank = max(math.ceil(pct * len(ordered) / 100), 1)
    return ordered[rank - 1]


class RequestMetrics:
    """Thread-safe request latencies, chat phase timings and event counters.

    Phases are stages of a chat turn (``generation``); counters name outcomes
    such as ``generation_failure::configuration_error``.
    """

    def __init__(self, sample_window: int = DEFAULT_SAMPLE_WINDOW) -> None:
        self._lock = Lock()
        self._sample_window = sample_window
        self._endpoints: Dict[str, LatencySeries] = {}
        self._phases: Dict[str, LatencySeries] = {}
        self._counters: Dict[str, float] = {}

    def _series(self, table: Dict[str, LatencySeries], key: str) -> LatencySeries:
        series = table.get(key)
        if series is None:
            series = table[key] = LatencySeries(window=self._sample_window)
        return series

    def record(self, endpoint: str, duration_ms: float) -> None:
        with self._lock:
            self._series(self._endpoints, endpoint).add(duration_ms)

    def record_phase(self, phase: str, duration_ms: float) -> None:
        with self._lock:
            self._series(self._phases, phase).add(duration_ms)

    def increment_counter(self, name: str, amount: float = 1.0) -> None:
        with self._lock:
            self._counters[name] = self._counters.get(name, 0.0) + amount

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            data: Dict[str, Any] = {path: series.summary() for path, series in self._endpoints.items()}
            if self._phases:
                data["phases"] = {name: series.summary() for name, series in self._phases.items()}
            if self._counters:
                data["counters"] = dict(self._counters)
        return data

    def reset(self) -> None:
        with self._lock:
            self._endpoints.clear()
            self._phases.clear()
            self._counters.clear()


@contextmanager
def time_phase(metrics: RequestMetrics, phase: str) -> Iterator[None]:
    start = time.perf_counter()
    try:
        yield
    finally:
        metrics.record_phase(phase, (time.perf_counter() - start) * 1000)


_METRICS = RequestMetrics()


def get_metrics() -> RequestMetrics:
    return _METRICS
