"""Resilient asynchronous API client core."""

from .cache import CacheEntry, CacheStore, EvictionStrategy, FIFOEviction, LRUEviction, TTLEviction, make_cache_key
from .client import AsyncResilientClient
from .clock import CancellationToken, Clock, SystemClock
from .config import CacheConfig, ClientConfig, RateLimitConfig, RetryConfig
from .exceptions import (
    ClientError,
    ClientValidationError,
    ErrorKind,
    HTTPStatusError,
    MaxRetriesExceededError,
    NetworkError,
    RateLimitedError,
    RequestCancelledError,
    RequestTimeoutError,
    UnknownError,
)
from .interceptors import InterceptorPipeline, RequestInterceptor, ResponseInterceptor
from .metrics import MetricsRecorder
from .models import HealthStatus, Metrics
from .rate_limiter import SlidingWindowRateLimiter
from .registry import ServiceRegistry
from .request import Request, Response
from .retry import RetryPolicy

__version__ = "0.1.0"

__all__ = [
    "AsyncResilientClient",
    "CacheConfig",
    "CacheEntry",
    "CacheStore",
    "CancellationToken",
    "ClientConfig",
    "ClientError",
    "ClientValidationError",
    "Clock",
    "ErrorKind",
    "EvictionStrategy",
    "FIFOEviction",
    "HTTPStatusError",
    "HealthStatus",
    "InterceptorPipeline",
    "LRUEviction",
    "MaxRetriesExceededError",
    "Metrics",
    "MetricsRecorder",
    "NetworkError",
    "RateLimitConfig",
    "RateLimitedError",
    "Request",
    "RequestCancelledError",
    "RequestInterceptor",
    "RequestTimeoutError",
    "Response",
    "ResponseInterceptor",
    "RetryConfig",
    "RetryPolicy",
    "ServiceRegistry",
    "SlidingWindowRateLimiter",
    "SystemClock",
    "TTLEviction",
    "UnknownError",
    "make_cache_key",
]
