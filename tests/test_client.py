from __future__ import annotations

import asyncio
import json
from typing import Any, Callable

import httpx
import pytest

from resilient_client import (
    AsyncResilientClient,
    CancellationToken,
    ClientConfig,
    ClientError,
    ClientValidationError,
    HTTPStatusError,
    MaxRetriesExceededError,
    NetworkError,
    RateLimitedError,
    Request,
    RequestCancelledError,
    RequestInterceptor,
    RequestTimeoutError,
    Response,
    ResponseInterceptor,
    RetryPolicy,
)

BASE_URL = "https://api.example.com"


def _client(
    handler: Callable[[httpx.Request], Any],
    clock: Any = None,
    *,
    retry_policy: RetryPolicy | None = None,
    **config: Any,
) -> AsyncResilientClient:
    config.setdefault("retry", {"jitter": 0.0})
    settings = ClientConfig(base_url=BASE_URL, **config)
    transport = httpx.MockTransport(handler)
    return AsyncResilientClient(
        settings,
        httpx_client=httpx.AsyncClient(base_url=BASE_URL, transport=transport),
        clock=clock,
        retry_policy=retry_policy,
    )


def _sequence(*statuses: int, calls: list[httpx.Request]) -> Callable[[httpx.Request], httpx.Response]:
    remaining = list(statuses)

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        status = remaining.pop(0) if len(remaining) > 1 else remaining[0]
        return httpx.Response(status, json={"attempt": len(calls)}, request=request)

    return handler


def test_transient_503s_recover_with_retry_count(clock) -> None:
    calls: list[httpx.Request] = []

    async def run() -> tuple[Response, Any]:
        async with _client(_sequence(503, 503, 200, calls=calls), clock, max_retries=3) as client:
            response = await client.get("/items")
            return response, client.get_metrics()

    response, metrics = asyncio.run(run())

    assert response.status_code == 200
    assert response.retry_count == 2
    assert response.body == {"attempt": 3}
    assert response.cached is False
    assert len(calls) == 3
    assert clock.sleeps == [1.0, 2.0]
    assert metrics.requests.total == 3
    assert metrics.requests.successful == 1
    assert metrics.requests.failed == 2
    assert metrics.requests.retried == 2
    assert metrics.errors.by_status == {503: 2}


def test_retry_bound_is_max_retries_plus_one(clock) -> None:
    class AlwaysRetry(RetryPolicy):
        def should_retry(self, error: ClientError, attempt: int) -> bool:
            return True

    calls: list[httpx.Request] = []

    async def run() -> None:
        async with _client(
            _sequence(404, calls=calls),
            clock,
            retry_policy=AlwaysRetry(jitter=0.0),
            max_retries=4,
        ) as client:
            await client.get("/missing")

    with pytest.raises(MaxRetriesExceededError) as excinfo:
        asyncio.run(run())

    assert len(calls) == 5
    assert excinfo.value.retry_count == 4
    assert excinfo.value.last_error.status_code == 404


def test_404_is_surfaced_after_a_single_attempt(clock) -> None:
    calls: list[httpx.Request] = []

    async def run() -> None:
        async with _client(_sequence(404, calls=calls), clock, max_retries=5) as client:
            await client.get("/missing")

    with pytest.raises(HTTPStatusError) as excinfo:
        asyncio.run(run())

    assert len(calls) == 1
    assert excinfo.value.status_code == 404
    assert excinfo.value.retryable is False
    assert excinfo.value.retry_count == 0
    assert clock.sleeps == []


def test_persistent_5xx_is_wrapped_as_max_retries_exceeded(clock) -> None:
    calls: list[httpx.Request] = []

    async def run() -> None:
        async with _client(_sequence(502, calls=calls), clock, max_retries=3) as client:
            await client.get("/flaky")

    with pytest.raises(MaxRetriesExceededError) as excinfo:
        asyncio.run(run())

    error = excinfo.value
    assert len(calls) == 4
    assert error.retry_count == 3
    assert error.status_code == 502
    assert isinstance(error.last_error, HTTPStatusError)
    assert error.to_dict()["last_error"]["status_code"] == 502


def test_http_error_message_comes_from_json_body(clock) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(422, json={"error": "title is required", "error_code": "invalid"}, request=request)

    async def run() -> None:
        async with _client(handler, clock) as client:
            await client.post("/issues", {"body": "x"})

    with pytest.raises(HTTPStatusError) as excinfo:
        asyncio.run(run())

    assert excinfo.value.message == "title is required"
    assert excinfo.value.code == "invalid"
    assert excinfo.value.body == {"error": "title is required", "error_code": "invalid"}


def test_retry_after_header_drives_backoff(clock) -> None:
    attempts: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(1)
        if len(attempts) == 1:
            return httpx.Response(429, headers={"Retry-After": "2"}, request=request)
        return httpx.Response(200, json={}, request=request)

    async def run() -> Response:
        async with _client(handler, clock) as client:
            return await client.get("/quota")

    response = asyncio.run(run())
    assert response.retry_count == 1
    assert clock.sleeps == [2.0]


def test_network_errors_are_retried(clock) -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        raise httpx.ConnectError("connection refused", request=request)

    async def run() -> None:
        async with _client(handler, clock, max_retries=1) as client:
            await client.get("/down")

    with pytest.raises(MaxRetriesExceededError) as excinfo:
        asyncio.run(run())

    assert len(calls) == 2
    assert isinstance(excinfo.value.last_error, NetworkError)


def test_fourth_call_in_window_is_rate_limited(clock) -> None:
    calls: list[httpx.Request] = []

    async def run() -> list[Any]:
        outcomes: list[Any] = []
        async with _client(
            _sequence(200, calls=calls),
            clock,
            rate_limit={"requests": 3, "window": 1.0},
            cache={"enabled": False},
        ) as client:
            for _ in range(4):
                try:
                    outcomes.append(await client.get("/ping"))
                except RateLimitedError as exc:
                    outcomes.append(exc)
                clock.advance(0.010)
            outcomes.append(client.get_metrics())
        return outcomes

    *results, metrics = asyncio.run(run())

    assert [type(r) for r in results] == [Response, Response, Response, RateLimitedError]
    rejected = results[3]
    assert rejected.retryable is False
    assert rejected.status_code == 429
    assert rejected.retry_after == pytest.approx(0.97)
    assert len(calls) == 3
    assert clock.sleeps == []
    assert metrics.rate_limit.blocked == 1


def test_clients_do_not_share_limiter_or_cache(clock) -> None:
    calls: list[httpx.Request] = []

    async def run() -> Response:
        github = _client(_sequence(200, calls=calls), clock, rate_limit={"requests": 1, "window": 60.0})
        email = _client(_sequence(200, calls=calls), clock, rate_limit={"requests": 1, "window": 60.0})
        async with github, email:
            await github.get("/repos")
            with pytest.raises(RateLimitedError):
                await github.get("/repos")
            return await email.get("/repos")

    response = asyncio.run(run())
    assert response.cached is False
    assert len(calls) == 2


def test_get_responses_are_cached_until_ttl_elapses(clock) -> None:
    calls: list[httpx.Request] = []

    async def run() -> tuple[list[Response], Any]:
        async with _client(_sequence(200, calls=calls), clock, cache={"default_ttl": 0.5}) as client:
            first = await client.get("/repo", params={"page": 1})
            clock.advance(0.4)
            second = await client.get("/repo", params={"page": 1})
            clock.advance(0.2)
            third = await client.get("/repo", params={"page": 1})
            return [first, second, third], client.get_metrics()

    (first, second, third), metrics = asyncio.run(run())

    assert first.cached is False
    assert second.cached is True
    assert second.body == first.body
    assert third.cached is False
    assert len(calls) == 2
    assert metrics.cache.hits == 1
    assert metrics.cache.misses == 2
    assert metrics.cache.size == 1
    assert metrics.requests.total == 2
    assert metrics.requests.retried == 0


def test_cache_participation_flags(clock) -> None:
    calls: list[httpx.Request] = []

    async def run() -> list[Response]:
        async with _client(_sequence(200, calls=calls), clock) as client:
            return [
                await client.post("/complete", {"prompt": "hi"}),
                await client.post("/complete", {"prompt": "hi"}),
                await client.post("/complete", {"prompt": "hi"}, cache=True),
                await client.post("/complete", {"prompt": "hi"}, cache=True),
                await client.post("/complete", {"prompt": "bye"}, cache=True),
                await client.get("/fresh", cache=False),
                await client.get("/fresh", cache=False),
            ]

    responses = asyncio.run(run())
    assert [r.cached for r in responses] == [False, False, False, True, False, False, False]
    assert len(calls) == 6


def test_per_request_cache_ttl(clock) -> None:
    calls: list[httpx.Request] = []

    async def run() -> Response:
        async with _client(_sequence(200, calls=calls), clock) as client:
            await client.get("/short", cache_ttl=1.0)
            clock.advance(2.0)
            return await client.get("/short", cache_ttl=1.0)

    assert asyncio.run(run()).cached is False
    assert len(calls) == 2


def test_clear_cache(clock) -> None:
    calls: list[httpx.Request] = []

    async def run() -> None:
        async with _client(_sequence(200, calls=calls), clock) as client:
            await client.get("/a")
            client.clear_cache()
            await client.get("/a")
            assert client.get_metrics().cache.size == 1

    asyncio.run(run())
    assert len(calls) == 2


def test_interceptors_see_requests_and_responses_in_order(clock) -> None:
    seen: list[str] = []
    sent_headers: list[httpx.Headers] = []

    class Auth(RequestInterceptor, ResponseInterceptor):
        def on_request(self, request: Request) -> Request:
            seen.append("request:auth")
            return request.with_headers({"Authorization": "Bearer secret"})

        def on_response(self, response: Response) -> Response:
            seen.append("response:auth")
            return response

    class Metering(RequestInterceptor, ResponseInterceptor):
        async def on_request(self, request: Request) -> Request:
            seen.append("request:metering")
            return request.with_headers({"X-Usage": "1"})

        async def on_response(self, response: Response) -> Response:
            seen.append("response:metering")
            return response.replace(body={"normalized": response.body})

    def handler(request: httpx.Request) -> httpx.Response:
        sent_headers.append(request.headers)
        return httpx.Response(200, json={"ok": True}, request=request)

    original = Request(path="/messages", method="POST", body={"text": "hi"})

    async def run() -> Response:
        async with _client(handler, clock) as client:
            for hook in (Auth(), Metering()):
                client.add_request_interceptor(hook)
                client.add_response_interceptor(hook)
            return await client.execute(original)

    response = asyncio.run(run())

    assert seen == ["request:auth", "request:metering", "response:auth", "response:metering"]
    assert sent_headers[0]["Authorization"] == "Bearer secret"
    assert sent_headers[0]["X-Usage"] == "1"
    assert json.loads(response.content) == {"ok": True}
    assert response.body == {"normalized": {"ok": True}}
    assert "Authorization" not in original.headers


def test_error_interceptors_enrich_terminal_failures(clock) -> None:
    class Context(ResponseInterceptor):
        def on_response_error(self, error: ClientError) -> ClientError:
            return HTTPStatusError(
                f"github: {error.message}",
                status_code=error.status_code,
                retry_count=error.retry_count,
            )

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(403, json={"message": "forbidden"}, request=request)

    async def run() -> None:
        async with _client(handler, clock) as client:
            client.add_response_interceptor(Context())
            await client.get("/private")

    with pytest.raises(HTTPStatusError, match="github: forbidden"):
        asyncio.run(run())


def test_failing_response_interceptor_surfaces_error(clock) -> None:
    class Strict(ResponseInterceptor):
        def on_response(self, response: Response) -> Response:
            raise ValueError("unexpected shape")

    async def run() -> AsyncResilientClient:
        client = _client(_sequence(200, calls=[]), clock)
        client.add_response_interceptor(Strict())
        try:
            await client.get("/shape")
        finally:
            await client.aclose()
        return client

    with pytest.raises(ClientError, match="unexpected shape"):
        asyncio.run(run())


def test_transport_timeout_is_classified_and_retried(clock) -> None:
    calls: list[httpx.Request] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        await asyncio.sleep(5)
        return httpx.Response(200, request=request)

    async def run() -> None:
        async with _client(handler, clock, max_retries=1, timeout=0.05) as client:
            await client.get("/slow")

    with pytest.raises(MaxRetriesExceededError) as excinfo:
        asyncio.run(run())

    last = excinfo.value.last_error
    assert isinstance(last, RequestTimeoutError)
    assert not isinstance(last, RequestCancelledError)
    assert len(calls) == 2


def test_cancel_all_aborts_in_flight_call(clock) -> None:
    calls: list[httpx.Request] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        await asyncio.sleep(10)
        return httpx.Response(200, request=request)

    async def run() -> tuple[BaseException, int]:
        async with _client(handler, clock, max_retries=3) as client:
            task = asyncio.ensure_future(client.get("/long"))
            await asyncio.sleep(0.05)
            assert client.in_flight == 1
            cancelled = client.cancel_all()
            with pytest.raises(RequestCancelledError) as excinfo:
                await task
            assert client.in_flight == 0
            return excinfo.value, cancelled

    error, cancelled = asyncio.run(run())

    assert cancelled == 1
    assert isinstance(error, RequestTimeoutError)
    assert error.cancelled is True
    assert error.code == "CANCELLED"
    assert error.retryable is False
    assert len(calls) == 1


def test_cancellation_unblocks_backoff_sleep() -> None:
    calls: list[httpx.Request] = []

    async def run() -> None:
        token = CancellationToken()
        async with _client(_sequence(503, calls=calls), max_retries=3, retry_base_delay=30.0) as client:
            task = asyncio.ensure_future(client.execute(Request(path="/wait"), cancel_token=token))
            await asyncio.sleep(0.05)
            token.cancel()
            await asyncio.wait_for(task, timeout=2.0)

    with pytest.raises(RequestCancelledError):
        asyncio.run(run())
    assert len(calls) == 1


def test_cancel_request_by_id(clock) -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(10)
        return httpx.Response(200, request=request)

    async def run() -> None:
        async with _client(handler, clock) as client:
            request = Request(path="/one")
            task = asyncio.ensure_future(client.execute(request))
            await asyncio.sleep(0.05)
            assert client.cancel_request("unknown") == 0
            assert client.cancel_request(request.request_id) == 1
            await task

    with pytest.raises(RequestCancelledError):
        asyncio.run(run())


def test_health_check_reports_status(clock) -> None:
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        status = 200 if len(calls) == 1 else 500
        return httpx.Response(status, text="ok", request=request)

    async def run() -> list[Any]:
        async with _client(handler, clock, service_name="github", max_retries=5) as client:
            return [await client.health_check(), await client.health_check()]

    healthy, unhealthy = asyncio.run(run())

    assert healthy.status == "healthy"
    assert healthy.service == "github"
    assert healthy.error is None
    assert unhealthy.status == "unhealthy"
    assert unhealthy.healthy is False
    assert calls == ["/health", "/health"]
    assert clock.sleeps == []


def test_response_body_parsing(clock) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/text":
            return httpx.Response(200, text="plain", request=request)
        if request.url.path == "/empty":
            return httpx.Response(204, request=request)
        return httpx.Response(200, content=b"\x00\x01", headers={"content-type": "application/octet-stream"}, request=request)

    async def run() -> list[Any]:
        async with _client(handler, clock) as client:
            return [
                (await client.get("/text")).body,
                (await client.get("/empty")).body,
                (await client.get("/bin")).body,
            ]

    assert asyncio.run(run()) == ["plain", None, b"\x00\x01"]


def test_request_body_and_query_encoding(clock) -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, request=request)

    async def run() -> None:
        async with _client(handler, clock) as client:
            await client.post("/events", {"name": "signup"}, params={"batch": 1, "skip": None})
            await client.put("/raw", b"bytes-payload")
            await client.delete("/events/1")

    asyncio.run(run())

    assert json.loads(seen[0].content) == {"name": "signup"}
    assert dict(seen[0].url.params) == {"batch": "1"}
    assert seen[1].content == b"bytes-payload"
    assert seen[2].method == "DELETE"
    assert seen[2].content == b""


def test_invalid_paths_and_closed_client(clock) -> None:
    async def run() -> None:
        client = _client(_sequence(200, calls=[]), clock)
        with pytest.raises(ClientValidationError):
            await client.get("https://evil.example.com/")
        with pytest.raises(ClientValidationError):
            await client.get("relative")
        await client.aclose()
        with pytest.raises(ClientValidationError, match="closed"):
            await client.get("/after-close")

    asyncio.run(run())


def test_request_validation() -> None:
    with pytest.raises(ClientValidationError):
        Request(path="/x", method="BREW")
    with pytest.raises(ClientValidationError):
        Request(path="/x", timeout=0)
    assert Request(path="/x", method="post").method == "POST"


def test_patch_and_reset_metrics(clock) -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.method)
        return httpx.Response(200, json={"updated": True}, request=request)

    async def run() -> tuple[Response, int]:
        async with _client(handler, clock) as client:
            response = await client.patch("/issues/7", {"state": "closed"})
            client.reset_metrics()
            return response, client.get_metrics().requests.total

    response, total = asyncio.run(run())
    assert seen == ["PATCH"]
    assert response.json() == {"updated": True}
    assert total == 0


def test_cached_response_is_isolated_from_caller_edits(clock) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"items": [1, 2]}, request=request)

    async def run() -> tuple[Response, Response]:
        async with _client(handler, clock) as client:
            first = await client.get("/items")
            first.body["items"].append(99)
            first.headers["x-tampered"] = "yes"
            second = await client.get("/items")
            second.body["items"].append(100)
            third = await client.get("/items")
            return second, third

    second, third = asyncio.run(run())

    assert second.cached is True
    assert second.body == {"items": [1, 2, 100]}
    assert "x-tampered" not in second.headers
    assert third.body == {"items": [1, 2]}


def test_cache_hit_reports_no_retries_or_latency(clock) -> None:
    calls: list[httpx.Request] = []

    async def run() -> tuple[Response, Response, Any]:
        async with _client(_sequence(503, 200, calls=calls), clock) as client:
            recovered = await client.get("/items")
            hit = await client.get("/items")
            return recovered, hit, client.get_metrics()

    recovered, hit, metrics = asyncio.run(run())

    assert recovered.retry_count == 1
    assert hit.cached is True
    assert hit.retry_count == 0
    assert hit.latency_ms == 0.0
    assert hit.body == recovered.body
    assert len(calls) == 2
    assert metrics.requests.retried == 1


def test_background_sweep_drops_expired_entries(clock) -> None:
    async def run() -> None:
        client = _client(
            _sequence(200, calls=[]),
            clock,
            cache={"default_ttl": 0.5, "sweep_interval": 0.01},
        )
        await client.get("/items")
        assert len(client.cache) == 1
        sweeper = client._sweeper
        assert sweeper is not None and not sweeper.done()

        clock.advance(1.0)
        await asyncio.sleep(0.1)
        assert len(client.cache) == 0
        assert client.get_metrics().cache.size == 0

        await client.aclose()
        assert sweeper.done()
        assert client._sweeper is None

    asyncio.run(run())


def test_cache_key_tolerates_mixed_key_types(clock) -> None:
    calls: list[httpx.Request] = []

    async def run() -> list[Response]:
        async with _client(_sequence(200, calls=calls), clock) as client:
            body = {1: "a", "b": 2}
            return [
                await client.post("/mixed", body, cache=True),
                await client.post("/mixed", body, cache=True),
            ]

    first, second = asyncio.run(run())
    assert first.cached is False
    assert second.cached is True
    assert len(calls) == 1


def test_cancelled_attempts_are_not_counted_as_failures(clock) -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(10)
        return httpx.Response(200, request=request)

    async def run() -> Any:
        async with _client(handler, clock) as client:
            task = asyncio.ensure_future(client.get("/long"))
            await asyncio.sleep(0.05)
            client.cancel_all()
            with pytest.raises(RequestCancelledError):
                await task
            return client.get_metrics()

    metrics = asyncio.run(run())

    assert metrics.requests.cancelled == 1
    assert metrics.requests.failed == 0
    assert metrics.requests.total == 0
    assert metrics.errors.total == 0
    assert metrics.errors.by_endpoint == {}
    assert metrics.latency.samples == 0
