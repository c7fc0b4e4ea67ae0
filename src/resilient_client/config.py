"""Immutable per-client configuration."""

from __future__ import annotations

from typing import Any, Literal, Mapping

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .security import validate_base_url


EvictionStrategyName = Literal["lru", "fifo", "ttl"]


class _FrozenModel(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class RateLimitConfig(_FrozenModel):
    requests: int = Field(default=100, gt=0)
    window: float = Field(default=60.0, gt=0)


class CacheConfig(_FrozenModel):
    enabled: bool = True
    default_ttl: float = Field(default=300.0, gt=0)
    max_size: int = Field(default=100, gt=0)
    eviction_strategy: EvictionStrategyName = "lru"
    sweep_interval: float = Field(default=60.0, gt=0)


class RetryConfig(_FrozenModel):
    max_delay: float = Field(default=30.0, ge=0)
    jitter: float = Field(default=1.0, ge=0)
    respect_retry_after: bool = True


class ClientConfig(_FrozenModel):
    """Settings for one client instance.

    Built once by the caller; the core never consults the environment.
    Use ``derive`` to obtain an adjusted copy for a related client.
    """

    base_url: str
    service_name: str = "api"
    headers: Mapping[str, str] = Field(default_factory=dict)
    timeout: float = Field(default=30.0, gt=0)
    max_retries: int = Field(default=3, ge=0)
    retry_base_delay: float = Field(default=1.0, ge=0)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    health_path: str = "/health"
    health_timeout: float = Field(default=5.0, gt=0)
    follow_redirects: bool = True

    @field_validator("base_url")
    @classmethod
    def _check_base_url(cls, value: str) -> str:
        validate_base_url(value)
        return value.rstrip("/")

    @field_validator("headers")
    @classmethod
    def _normalize_headers(cls, value: Mapping[str, str]) -> dict[str, str]:
        return {str(k): str(v) for k, v in value.items()}

    def derive(self, **overrides: Any) -> "ClientConfig":
        """Return a validated clone with ``overrides`` applied."""
        data = self.model_dump()
        for key, value in overrides.items():
            if isinstance(value, BaseModel):
                value = value.model_dump()
            if isinstance(value, Mapping) and isinstance(data.get(key), dict) and key != "headers":
                data[key] = {**data[key], **value}
            else:
                data[key] = value
        return ClientConfig.model_validate(data)
