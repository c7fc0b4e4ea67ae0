"""Sliding window admission control.

Calls over quota are rejected immediately rather than queued, so callers
see backpressure directly.
"""

from __future__ import annotations

import logging
import threading
from collections import deque

from .clock import Clock, SystemClock

logger = logging.getLogger(__name__)


class SlidingWindowRateLimiter:
    """Admit at most ``max_requests`` calls in any ``window``-second interval."""

    def __init__(self, max_requests: int, window: float, *, clock: Clock | None = None) -> None:
        if max_requests <= 0:
            raise ValueError("max_requests must be greater than 0")
        if window <= 0:
            raise ValueError("window must be greater than 0")
        self.max_requests = max_requests
        self.window = window
        self._clock = clock or SystemClock()
        self._timestamps: deque[float] = deque()
        self._lock = threading.Lock()

    def _prune(self, now: float) -> None:
        cutoff = now - self.window
        while self._timestamps and self._timestamps[0] <= cutoff:
            self._timestamps.popleft()

    def admit(self, now: float | None = None) -> bool:
        """Record and allow a call, or return False when the window is full."""
        if now is None:
            now = self._clock.monotonic()
        with self._lock:
            self._prune(now)
            if len(self._timestamps) >= self.max_requests:
                logger.debug("Admission rejected: %d calls in last %.3fs", len(self._timestamps), self.window)
                return False
            self._timestamps.append(now)
            return True

    def retry_after(self, now: float | None = None) -> float:
        """Seconds until the oldest call leaves the window (0 when a slot is free)."""
        if now is None:
            now = self._clock.monotonic()
        with self._lock:
            self._prune(now)
            if len(self._timestamps) < self.max_requests:
                return 0.0
            return max(0.0, self._timestamps[0] + self.window - now)

    def in_window(self, now: float | None = None) -> int:
        if now is None:
            now = self._clock.monotonic()
        with self._lock:
            self._prune(now)
            return len(self._timestamps)

    def reset(self) -> None:
        with self._lock:
            self._timestamps.clear()
