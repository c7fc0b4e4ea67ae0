"""Retry eligibility and exponential backoff with jitter."""

from __future__ import annotations

import random
from typing import Callable

from .exceptions import ClientError


class RetryPolicy:
    """Stateless retry decisions.

    ``delay_for(attempt)`` is ``base * 2 ** (attempt - 1)`` capped at
    ``max_delay``, plus up to ``jitter`` seconds of random spread. Attempt 0
    is the original call and is never delayed.
    """

    def __init__(
        self,
        *,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        jitter: float = 1.0,
        respect_retry_after: bool = True,
        rng: Callable[[float, float], float] = random.uniform,
    ) -> None:
        if base_delay < 0 or max_delay < 0 or jitter < 0:
            raise ValueError("delays must be non-negative")
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self.respect_retry_after = respect_retry_after
        self._rng = rng

    def should_retry(self, error: ClientError, attempt: int) -> bool:
        return error.retryable

    def delay_for(self, attempt: int, error: ClientError | None = None) -> float:
        if attempt <= 0:
            return 0.0
        if self.respect_retry_after and error is not None and error.retry_after is not None:
            return min(error.retry_after, self.max_delay)
        backoff = min(self.base_delay * (2 ** min(attempt - 1, 62)), self.max_delay)
        spread = self._rng(0.0, self.jitter) if self.jitter > 0 else 0.0
        return backoff + spread
