"""Bounded response cache with TTL expiry and pluggable eviction."""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Mapping

from .clock import Clock, SystemClock
from .request import Response

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    key: str
    response: Response
    stored_at: float
    ttl: float

    @property
    def expires_at(self) -> float:
        return self.stored_at + self.ttl

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at


class EvictionStrategy(ABC):
    """Chooses which entry to drop when the store is full.

    ``entries`` is ordered oldest first; strategies may reorder it on access.
    """

    name: str = ""

    def on_access(self, entries: "OrderedDict[str, CacheEntry]", key: str) -> None:
        return None

    @abstractmethod
    def select_victim(self, entries: "OrderedDict[str, CacheEntry]", now: float) -> str | None:
        ...


class LRUEviction(EvictionStrategy):
    name = "lru"

    def on_access(self, entries: "OrderedDict[str, CacheEntry]", key: str) -> None:
        entries.move_to_end(key)

    def select_victim(self, entries: "OrderedDict[str, CacheEntry]", now: float) -> str | None:
        return next(iter(entries), None)


class FIFOEviction(EvictionStrategy):
    name = "fifo"

    def select_victim(self, entries: "OrderedDict[str, CacheEntry]", now: float) -> str | None:
        return next(iter(entries), None)


class TTLEviction(EvictionStrategy):
    """Drop an already expired entry first, else the oldest inserted one."""

    name = "ttl"

    def select_victim(self, entries: "OrderedDict[str, CacheEntry]", now: float) -> str | None:
        for key, entry in entries.items():
            if entry.is_expired(now):
                return key
        return next(iter(entries), None)


_STRATEGIES: dict[str, type[EvictionStrategy]] = {
    LRUEviction.name: LRUEviction,
    FIFOEviction.name: FIFOEviction,
    TTLEviction.name: TTLEviction,
}


def get_eviction_strategy(name: str) -> EvictionStrategy:
    try:
        return _STRATEGIES[name.lower()]()
    except KeyError:
        raise ValueError(f"Unknown eviction strategy: {name}") from None


def _string_keys(value: Any) -> Any:
    # json.dumps(sort_keys=True) cannot order mixed key types.
    if isinstance(value, Mapping):
        return {str(key): _string_keys(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_string_keys(item) for item in value]
    return value


def _canonical_body(body: Any) -> Any:
    if body is None:
        return None
    if isinstance(body, (bytes, bytearray)):
        return {"bytes": bytes(body).hex()}
    if isinstance(body, str):
        return {"text": body}
    return {"json": _string_keys(body)}


def make_cache_key(
    method: str,
    path: str,
    params: Mapping[str, Any] | None = None,
    body: Any = None,
) -> str:
    """Derive a SHA-256 key from the canonicalized request tuple.

    The body only participates for non-GET requests.
    """
    method = method.upper()
    payload = {
        "method": method,
        "path": path,
        "params": _string_keys(params) if params else None,
        "body": None if method == "GET" else _canonical_body(body),
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


class CacheStore:
    """Thread-safe key to response map bounded by ``max_size``."""

    def __init__(
        self,
        *,
        max_size: int = 100,
        default_ttl: float = 300.0,
        strategy: EvictionStrategy | str = "lru",
        clock: Clock | None = None,
    ) -> None:
        if max_size <= 0:
            raise ValueError("max_size must be greater than 0")
        self.max_size = max_size
        self.default_ttl = default_ttl
        self.strategy = get_eviction_strategy(strategy) if isinstance(strategy, str) else strategy
        self._clock = clock or SystemClock()
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries

    def get(self, key: str) -> CacheEntry | None:
        now = self._clock.monotonic()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.is_expired(now):
                del self._entries[key]
                logger.debug("Cache entry expired: %s", key[:12])
                return None
            self.strategy.on_access(self._entries, key)
            return entry

    def put(self, key: str, response: Response, ttl: float | None = None) -> CacheEntry:
        entry = CacheEntry(
            key=key,
            response=response,
            stored_at=self._clock.monotonic(),
            ttl=self.default_ttl if ttl is None else ttl,
        )
        with self._lock:
            if key in self._entries:
                del self._entries[key]
            elif len(self._entries) >= self.max_size:
                self._evict_locked(entry.stored_at)
            self._entries[key] = entry
        return entry

    def _evict_locked(self, now: float) -> str | None:
        victim = self.strategy.select_victim(self._entries, now)
        if victim is not None:
            del self._entries[victim]
            logger.debug("Evicted cache entry %s (%s)", victim[:12], self.strategy.name)
        return victim

    def evict(self) -> str | None:
        """Evict one entry chosen by the strategy and return its key."""
        with self._lock:
            return self._evict_locked(self._clock.monotonic())

    def sweep(self) -> int:
        """Remove every expired entry; returns how many were dropped."""
        now = self._clock.monotonic()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.debug("Cache sweep removed %d expired entries", len(expired))
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
