"""Asynchronous request executor shared by every outbound integration."""

from __future__ import annotations

import asyncio
import copy
import logging
import threading
from datetime import datetime
from types import MappingProxyType
from typing import Any, Awaitable, Mapping, NoReturn, TypeVar

import httpx

from .cache import CacheStore, EvictionStrategy, make_cache_key
from .clock import CancellationToken, Clock, SystemClock
from .config import ClientConfig
from .exceptions import (
    ClientError,
    ClientValidationError,
    HTTPStatusError,
    MaxRetriesExceededError,
    RateLimitedError,
    RequestCancelledError,
    RequestTimeoutError,
    classify_exception,
)
from .interceptors import InterceptorPipeline, RequestInterceptor, ResponseInterceptor
from .metrics import MetricsRecorder
from .models import HealthStatus, Metrics
from .rate_limiter import SlidingWindowRateLimiter
from .request import Request, Response
from .retry import RetryPolicy
from .security import parse_retry_after, sanitize_headers, validate_path

logger = logging.getLogger(__name__)

T = TypeVar("T")

USER_AGENT = "resilient-client/0.1.0"


def _coerce_query_params(query: Mapping[str, Any] | None) -> dict[str, Any] | None:
    if query is None:
        return None
    normalized: dict[str, Any] = {}
    for key, value in query.items():
        if value is None:
            continue
        if isinstance(value, (list, tuple)):
            normalized[key] = ["" if v is None else v for v in value]
            continue
        if isinstance(value, datetime):
            normalized[key] = value.isoformat()
            continue
        normalized[key] = value
    return normalized or None


def _parse_body(response: httpx.Response) -> Any:
    if response.status_code == 204 or not response.content:
        return None
    content_type = response.headers.get("content-type", "").lower()
    if "application/json" in content_type:
        try:
            return response.json()
        except ValueError:
            return response.text
    if content_type.startswith("text/"):
        return response.text
    return response.content


def _status_error(response: httpx.Response, *, retry_count: int, request: Request) -> HTTPStatusError:
    body = _parse_body(response)
    message = f"HTTP {response.status_code}: {response.reason_phrase}"
    error_code = None
    if isinstance(body, Mapping):
        if isinstance(body.get("error"), str):
            message = body["error"]
        elif isinstance(body.get("message"), str):
            message = body["message"]
        if isinstance(body.get("error_code"), str):
            error_code = body["error_code"]
    return HTTPStatusError(
        message,
        status_code=response.status_code,
        code=error_code,
        retry_count=retry_count,
        body=body,
        headers=MappingProxyType(dict(response.headers)),
        retry_after=parse_retry_after(response.headers.get("Retry-After")),
        request=request,
    )


def _detached(response: Response, **changes: Any) -> Response:
    """Copy whose parsed body and headers share nothing with ``response``."""
    return response.replace(
        headers=dict(response.headers),
        body=copy.deepcopy(response.body),
        **changes,
    )


class AsyncResilientClient:
    """Rate limited, cached, retrying HTTP client for one service.

    Each instance owns its limiter, cache, metrics and transport, so one
    service's pressure never affects another's. Calls may run concurrently;
    shared state is only touched inside short locked sections and never
    across an ``await``.
    """

    def __init__(
        self,
        config: ClientConfig,
        *,
        httpx_client: httpx.AsyncClient | None = None,
        clock: Clock | None = None,
        retry_policy: RetryPolicy | None = None,
        eviction_strategy: EvictionStrategy | None = None,
    ) -> None:
        self.config = config
        self._clock = clock or SystemClock()
        self.retry_policy = retry_policy or RetryPolicy(
            base_delay=config.retry_base_delay,
            max_delay=config.retry.max_delay,
            jitter=config.retry.jitter,
            respect_retry_after=config.retry.respect_retry_after,
        )
        self.rate_limiter = SlidingWindowRateLimiter(
            config.rate_limit.requests,
            config.rate_limit.window,
            clock=self._clock,
        )
        self.cache = CacheStore(
            max_size=config.cache.max_size,
            default_ttl=config.cache.default_ttl,
            strategy=eviction_strategy or config.cache.eviction_strategy,
            clock=self._clock,
        )
        self.metrics = MetricsRecorder()
        self.interceptors = InterceptorPipeline()

        self._default_headers = {
            "Accept": "application/json",
            "User-Agent": USER_AGENT,
        }
        self._default_headers.update(config.headers)
        self._httpx = httpx_client or httpx.AsyncClient(
            base_url=config.base_url,
            timeout=config.timeout,
            follow_redirects=config.follow_redirects,
            trust_env=False,
        )
        self._active: dict[CancellationToken, str] = {}
        self._active_lock = threading.Lock()
        self._sweeper: asyncio.Task[None] | None = None
        self._closed = False
        logger.info(
            "Client %r initialized: base_url=%s max_retries=%d rate_limit=%d/%.1fs cache=%s",
            config.service_name,
            config.base_url,
            config.max_retries,
            config.rate_limit.requests,
            config.rate_limit.window,
            config.cache.eviction_strategy if config.cache.enabled else "disabled",
        )

    async def __aenter__(self) -> "AsyncResilientClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        self._closed = True
        self.cancel_all()
        if self._sweeper is not None and not self._sweeper.done():
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
        self._sweeper = None
        await self._httpx.aclose()

    # -- registration and administration ------------------------------------

    def add_request_interceptor(self, interceptor: RequestInterceptor) -> None:
        self.interceptors.add_request_interceptor(interceptor)

    def add_response_interceptor(self, interceptor: ResponseInterceptor) -> None:
        self.interceptors.add_response_interceptor(interceptor)

    def get_metrics(self) -> Metrics:
        self.metrics.set_cache_size(len(self.cache))
        return self.metrics.snapshot()

    def reset_metrics(self) -> None:
        self.metrics.reset()

    def clear_cache(self) -> None:
        self.cache.clear()
        self.metrics.set_cache_size(0)

    def cancel_request(self, request_id: str) -> int:
        """Cancel in-flight calls for ``request_id``; returns how many were signalled."""
        with self._active_lock:
            tokens = [token for token, rid in self._active.items() if rid == request_id]
        for token in tokens:
            token.cancel(f"request {request_id} cancelled")
        return len(tokens)

    def cancel_all(self) -> int:
        with self._active_lock:
            tokens = list(self._active)
        for token in tokens:
            token.cancel("all requests cancelled")
        if tokens:
            logger.info("Cancelled %d in-flight request(s) on %r", len(tokens), self.config.service_name)
        return len(tokens)

    @property
    def in_flight(self) -> int:
        with self._active_lock:
            return len(self._active)

    # -- execution -----------------------------------------------------------

    async def execute(self, request: Request, *, cancel_token: CancellationToken | None = None) -> Response:
        """Run ``request`` through interceptors, admission, cache and retries."""
        if self._closed:
            raise ClientValidationError("client is closed", request=request)
        self._ensure_sweeper()
        token = cancel_token or CancellationToken()
        with self._active_lock:
            self._active[token] = request.request_id
        try:
            return await self._execute(request, token)
        finally:
            with self._active_lock:
                self._active.pop(token, None)

    async def _execute(self, request: Request, token: CancellationToken) -> Response:
        prepared = await self.interceptors.run_request(request)
        try:
            validate_path(prepared.path)
        except ValueError as exc:
            raise ClientValidationError(str(exc), request=prepared) from None

        admitted = self.rate_limiter.admit()
        self.metrics.record_admission(admitted)
        if not admitted:
            logger.warning("Rate limit exceeded for %s %s", prepared.method, prepared.path)
            raise RateLimitedError(
                "Rate limit exceeded",
                status_code=429,
                retry_after=self.rate_limiter.retry_after(),
                request=prepared,
            )

        cache_key = None
        if self.config.cache.enabled and prepared.cache_eligible():
            cache_key = make_cache_key(prepared.method, prepared.path, prepared.params, prepared.body)
            entry = self.cache.get(cache_key)
            self.metrics.record_cache(entry is not None)
            if entry is not None:
                logger.debug("Cache hit for %s %s", prepared.method, prepared.path)
                return _detached(
                    entry.response,
                    cached=True,
                    retry_count=0,
                    latency_ms=0.0,
                    timestamp=self._clock.time(),
                    request=prepared,
                )

        max_retries = self.config.max_retries if prepared.max_retries is None else prepared.max_retries
        timeout = self.config.timeout if prepared.timeout is None else prepared.timeout
        headers = dict(self._default_headers)
        headers.update(prepared.headers)

        retries = 0
        while True:
            started = self._clock.monotonic()
            try:
                if token.cancelled:
                    raise RequestCancelledError(token.reason or "Request cancelled", retry_count=retries)
                raw = await self._race(self._send(prepared, headers, timeout), token, timeout)
                if raw.status_code >= 400:
                    raise _status_error(raw, retry_count=retries, request=prepared)
            except Exception as exc:
                error = classify_exception(exc, retry_count=retries, request=prepared)
                if error.request is None:
                    error.request = prepared
                    error.retry_count = retries
                latency_ms = (self._clock.monotonic() - started) * 1000
                if isinstance(error, RequestCancelledError):
                    self.metrics.record_cancellation()
                else:
                    self.metrics.record_attempt(
                        False, latency_ms, status_code=error.status_code, endpoint=prepared.path
                    )
                attempt = retries + 1
                eligible = not isinstance(error, RequestCancelledError) and self.retry_policy.should_retry(
                    error, attempt
                )
                if eligible and retries < max_retries:
                    delay = self.retry_policy.delay_for(attempt, error)
                    self.metrics.record_retry()
                    logger.warning(
                        "Retrying %s %s after %s (attempt %d/%d) in %.2fs",
                        prepared.method,
                        prepared.path,
                        error.code,
                        attempt,
                        max_retries,
                        delay,
                    )
                    try:
                        await self._race(self._clock.sleep(delay), token, None)
                    except RequestCancelledError as cancelled:
                        self.metrics.record_cancellation()
                        cancelled.retry_count = retries
                        cancelled.request = prepared
                        await self._surface(cancelled, exc)
                    retries += 1
                    continue
                if eligible:
                    error = MaxRetriesExceededError(
                        f"Maximum retries ({max_retries}) exceeded: {error.message}",
                        last_error=error,
                    )
                await self._surface(error, exc)

            latency_ms = (self._clock.monotonic() - started) * 1000
            self.metrics.record_attempt(True, latency_ms)
            response = Response(
                status_code=raw.status_code,
                status_text=raw.reason_phrase,
                headers=dict(raw.headers),
                body=_parse_body(raw),
                content=raw.content,
                timestamp=self._clock.time(),
                retry_count=retries,
                latency_ms=latency_ms,
                request=prepared,
            )
            logger.debug(
                "%s %s -> %d in %.1fms (retries=%d)",
                prepared.method,
                prepared.path,
                response.status_code,
                latency_ms,
                retries,
            )
            try:
                response = await self.interceptors.run_response(response)
            except Exception as exc:
                await self._surface(classify_exception(exc, retry_count=retries, request=prepared), exc)

            if cache_key is not None:
                self.cache.put(cache_key, _detached(response), prepared.cache_ttl)
                self.metrics.set_cache_size(len(self.cache))
            return response

    async def _send(self, request: Request, headers: Mapping[str, str], timeout: float) -> httpx.Response:
        kwargs: dict[str, Any] = {}
        if request.body is not None:
            if isinstance(request.body, (bytes, bytearray, str)):
                kwargs["content"] = request.body
            else:
                kwargs["json"] = request.body
        logger.debug("-> %s %s headers=%s", request.method, request.path, sanitize_headers(headers))
        return await self._httpx.request(
            request.method,
            request.path,
            headers=headers,
            params=_coerce_query_params(request.params),
            timeout=timeout,
            **kwargs,
        )

    async def _race(self, work: Awaitable[T], token: CancellationToken, timeout: float | None) -> T:
        """Await ``work`` unless the token fires or ``timeout`` elapses first."""
        work_task = asyncio.ensure_future(work)
        cancel_task = asyncio.ensure_future(token.wait())
        try:
            done, _ = await asyncio.wait(
                {work_task, cancel_task},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            pending = [task for task in (work_task, cancel_task) if not task.done()]
            for task in pending:
                task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        if work_task in done:
            return work_task.result()
        if cancel_task in done:
            raise RequestCancelledError(token.reason or "Request cancelled")
        raise RequestTimeoutError(f"Request timed out after {timeout}s")

    async def _surface(self, error: ClientError, cause: BaseException | None = None) -> NoReturn:
        surfaced = await self.interceptors.run_error(error)
        logger.error(
            "Request %s failed: %s",
            surfaced.request.path if surfaced.request is not None else "?",
            surfaced,
        )
        if cause is None or surfaced is cause:
            raise surfaced
        raise surfaced from cause

    def _ensure_sweeper(self) -> None:
        if not self.config.cache.enabled:
            return
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def _sweep_loop(self) -> None:
        interval = self.config.cache.sweep_interval
        while True:
            await asyncio.sleep(interval)
            removed = self.cache.sweep()
            self.metrics.set_cache_size(len(self.cache))
            if removed:
                logger.debug("Swept %d expired cache entries on %r", removed, self.config.service_name)

    # -- health and convenience ---------------------------------------------

    async def health_check(self) -> HealthStatus:
        """Probe ``config.health_path`` once, without retries or caching."""
        started = self._clock.monotonic()
        probe = Request(
            path=self.config.health_path,
            method="GET",
            timeout=self.config.health_timeout,
            max_retries=0,
            cache=False,
        )
        error: str | None = None
        try:
            await self.execute(probe)
        except ClientError as exc:
            error = str(exc)
        return HealthStatus(
            service=self.config.service_name,
            status="healthy" if error is None else "unhealthy",
            latency_ms=(self._clock.monotonic() - started) * 1000,
            timestamp=self._clock.time(),
            error=error,
        )

    async def request(self, method: str, path: str, **kwargs: Any) -> Response:
        cancel_token = kwargs.pop("cancel_token", None)
        return await self.execute(Request(path=path, method=method, **kwargs), cancel_token=cancel_token)

    async def get(self, path: str, **kwargs: Any) -> Response:
        return await self.request("GET", path, **kwargs)

    async def post(self, path: str, body: Any = None, **kwargs: Any) -> Response:
        return await self.request("POST", path, body=body, **kwargs)

    async def put(self, path: str, body: Any = None, **kwargs: Any) -> Response:
        return await self.request("PUT", path, body=body, **kwargs)

    async def patch(self, path: str, body: Any = None, **kwargs: Any) -> Response:
        return await self.request("PATCH", path, body=body, **kwargs)

    async def delete(self, path: str, **kwargs: Any) -> Response:
        return await self.request("DELETE", path, **kwargs)
