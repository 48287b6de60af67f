from __future__ import annotations

from collections import defaultdict, deque
from contextlib import contextmanager
import time
from typing import Deque, Dict, Iterator, List

MetricsSnapshot = Dict[str, Dict[str, float]]


class _LatencySeries:
    """Running total plus a bounded window of samples for percentiles."""

    def __init__(self, window: int) -> None:
        self.count = 0
        self.total_ms = 0.0
        self.samples: Deque[float] = deque(maxlen=window)

    def add(self, duration_ms: float) -> None:
        self.count += 1
        self.total_ms += duration_ms
        self.samples.append(duration_ms)

    def summary(self) -> Dict[str, float]:
        percentiles = _compute_percentiles(list(self.samples))
        return {
            "count": float(self.count),
            "avg_latency_ms": (self.total_ms / self.count) if self.count else 0.0,
            "p50_latency_ms": percentiles.get(50, 0.0),
            "p95_latency_ms": percentiles.get(95, 0.0),
        }


class RequestMetrics:
    """In-process latency and counter registry behind ``/api/metrics``.

    Endpoints are keyed by request path, phases by pipeline stage (``sync``,
    ``history``) and counters by ``<operation>::<event>``.
    """

    def __init__(self, percentile_window: int = 200) -> None:
        self._window = percentile_window
        self._endpoints: Dict[str, _LatencySeries] = {}
        self._phases: Dict[str, _LatencySeries] = {}
        self._counters: Dict[str, float] = defaultdict(float)

    def _series(self, table: Dict[str, _LatencySeries], key: str) -> _LatencySeries:
        series = table.get(key)
        if series is None:
            series = table[key] = _LatencySeries(self._window)
        return series

    def record(self, endpoint: str, duration_ms: float) -> None:
        self._series(self._endpoints, endpoint).add(duration_ms)

    def record_phase(self, phase: str, duration_ms: float) -> None:
        self._series(self._phases, phase).add(duration_ms)

    def increment_counter(self, name: str, amount: float = 1.0) -> None:
        self._counters[name] += amount

    def counter(self, name: str) -> float:
        return self._counters.get(name, 0.0)

    def snapshot(self) -> MetricsSnapshot:
        data: MetricsSnapshot = {endpoint: series.summary() for endpoint, series in self._endpoints.items()}
        if self._phases:
            data["phases"] = {phase: series.summary() for phase, series in self._phases.items()}
        if self._counters:
            data["counters"] = dict(self._counters)
        return data

    def reset(self) -> None:
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


def _compute_percentiles(samples: List[float]) -> Dict[int, float]:
    if not samples:
        return {}
    ordered = sorted(samples)
    results: Dict[int, float] = {}
    for percentile in (50, 95):
        index = int(round((percentile / 100) * (len(ordered) - 1)))
        results[percentile] = ordered[min(max(index, 0), len(ordered) - 1)]
    return results


_METRICS = RequestMetrics()


def get_metrics() -> RequestMetrics:
    return _METRICS
