"""Typed snapshot models returned to callers."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class ClientModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class RequestCounters(ClientModel):
    total: int = 0
    successful: int = 0
    failed: int = 0
    retried: int = 0
    cancelled: int = 0


class LatencyStats(ClientModel):
    average: float = 0.0
    p50: float = 0.0
    p95: float = 0.0
    p99: float = 0.0
    samples: int = 0


class ErrorCounters(ClientModel):
    total: int = 0
    by_status: dict[int, int] = Field(default_factory=dict)
    by_endpoint: dict[str, int] = Field(default_factory=dict)


class RateLimitCounters(ClientModel):
    admitted: int = 0
    blocked: int = 0


class CacheCounters(ClientModel):
    hits: int = 0
    misses: int = 0
    size: int = 0


class Metrics(ClientModel):
    requests: RequestCounters = Field(default_factory=RequestCounters)
    latency: LatencyStats = Field(default_factory=LatencyStats)
    errors: ErrorCounters = Field(default_factory=ErrorCounters)
    rate_limit: RateLimitCounters = Field(default_factory=RateLimitCounters)
    cache: CacheCounters = Field(default_factory=CacheCounters)


class HealthStatus(ClientModel):
    service: str
    status: Literal["healthy", "unhealthy"]
    latency_ms: float
    timestamp: float
    error: str | None = None

    @property
    def healthy(self) -> bool:
        return self.status == "healthy"
