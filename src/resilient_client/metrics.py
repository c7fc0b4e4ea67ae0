"""Per-client counters and latency distribution."""

from __future__ import annotations

import math
import threading
from collections import deque

from .models import Metrics


DEFAULT_RESERVOIR_SIZE = 1024


def _percentile(sorted_samples: list[float], pct: float) -> float:
    if not sorted_samples:
        return 0.0
    rank = max(1, math.ceil(pct / 100.0 * len(sorted_samples)))
    return sorted_samples[rank - 1]


class MetricsRecorder:
    """Serializes every update behind one lock.

    Percentiles are computed over the most recent ``reservoir_size``
    latencies; the average covers every sample since the last reset.
    """

    def __init__(self, reservoir_size: int = DEFAULT_RESERVOIR_SIZE) -> None:
        self._lock = threading.Lock()
        self._reservoir_size = reservoir_size
        self._reset_locked()

    def _reset_locked(self) -> None:
        self._metrics = Metrics()
        self._latencies: deque[float] = deque(maxlen=self._reservoir_size)
        self._latency_sum = 0.0

    def record_attempt(
        self,
        success: bool,
        latency_ms: float,
        *,
        status_code: int | None = None,
        endpoint: str | None = None,
    ) -> None:
        with self._lock:
            counters = self._metrics.requests
            counters.total += 1
            if success:
                counters.successful += 1
            else:
                counters.failed += 1
                errors = self._metrics.errors
                errors.total += 1
                if status_code is not None:
                    errors.by_status[status_code] = errors.by_status.get(status_code, 0) + 1
                if endpoint is not None:
                    errors.by_endpoint[endpoint] = errors.by_endpoint.get(endpoint, 0) + 1

            latency_ms = max(0.0, latency_ms)
            self._latencies.append(latency_ms)
            self._latency_sum += latency_ms
            stats = self._metrics.latency
            stats.samples += 1
            stats.average = self._latency_sum / stats.samples

    def record_retry(self) -> None:
        with self._lock:
            self._metrics.requests.retried += 1

    def record_cancellation(self) -> None:
        """Aborted calls are kept out of the failure and latency figures."""
        with self._lock:
            self._metrics.requests.cancelled += 1

    def record_admission(self, admitted: bool) -> None:
        with self._lock:
            if admitted:
                self._metrics.rate_limit.admitted += 1
            else:
                self._metrics.rate_limit.blocked += 1

    def record_cache(self, hit: bool) -> None:
        with self._lock:
            if hit:
                self._metrics.cache.hits += 1
            else:
                self._metrics.cache.misses += 1

    def set_cache_size(self, size: int) -> None:
        with self._lock:
            self._metrics.cache.size = size

    def snapshot(self) -> Metrics:
        """Deep copy of the live counters with fresh percentile estimates."""
        with self._lock:
            snapshot = self._metrics.model_copy(deep=True)
            ordered = sorted(self._latencies)
        snapshot.latency.p50 = _percentile(ordered, 50)
        snapshot.latency.p95 = _percentile(ordered, 95)
        snapshot.latency.p99 = _percentile(ordered, 99)
        return snapshot

    def reset(self) -> None:
        with self._lock:
            self._reset_locked()
