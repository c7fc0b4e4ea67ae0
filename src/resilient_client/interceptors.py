"""Ordered request/response hooks.

Interceptors are plain objects; every hook receives the full value it acts
on and may be a regular or ``async`` method. Both chains run in
registration order.
"""

from __future__ import annotations

import inspect
import logging
from typing import Any

from .exceptions import ClientError, classify_exception
from .request import Request, Response

logger = logging.getLogger(__name__)


class RequestInterceptor:
    """Base class; override the hooks you need."""

    def on_request(self, request: Request) -> Request:
        return request

    def on_request_error(self, error: ClientError) -> ClientError | None:
        return error


class ResponseInterceptor:
    """Base class; override the hooks you need."""

    def on_response(self, response: Response) -> Response:
        return response

    def on_response_error(self, error: ClientError) -> ClientError | None:
        return error


async def _call(hook: Any, value: Any) -> Any:
    result = hook(value)
    if inspect.isawaitable(result):
        result = await result
    return result


class InterceptorPipeline:
    def __init__(self) -> None:
        self._request_interceptors: list[RequestInterceptor] = []
        self._response_interceptors: list[ResponseInterceptor] = []

    @property
    def request_interceptors(self) -> tuple[RequestInterceptor, ...]:
        return tuple(self._request_interceptors)

    @property
    def response_interceptors(self) -> tuple[ResponseInterceptor, ...]:
        return tuple(self._response_interceptors)

    def add_request_interceptor(self, interceptor: RequestInterceptor) -> None:
        self._request_interceptors.append(interceptor)

    def add_response_interceptor(self, interceptor: ResponseInterceptor) -> None:
        self._response_interceptors.append(interceptor)

    async def run_request(self, request: Request) -> Request:
        """Chain ``request`` through every request hook.

        A failing hook is normalized to a ``ClientError``, offered to the
        request error hooks, and raised.
        """
        current = request
        for interceptor in tuple(self._request_interceptors):
            try:
                result = await _call(interceptor.on_request, current)
                if not isinstance(result, Request):
                    raise TypeError(f"{type(interceptor).__name__}.on_request must return a Request")
            except Exception as exc:
                error = classify_exception(exc, request=current)
                surfaced = await self._run_error_chain(
                    [i.on_request_error for i in self._request_interceptors], error
                )
                if surfaced is exc:
                    raise
                raise surfaced from exc
            current = result
        return current

    async def run_response(self, response: Response) -> Response:
        current = response
        for interceptor in tuple(self._response_interceptors):
            current = await _call(interceptor.on_response, current)
            if not isinstance(current, Response):
                raise TypeError(f"{type(interceptor).__name__}.on_response must return a Response")
        return current

    async def run_error(self, error: ClientError) -> ClientError:
        return await self._run_error_chain([i.on_response_error for i in self._response_interceptors], error)

    @staticmethod
    async def _run_error_chain(hooks: list[Any], error: ClientError) -> ClientError:
        current = error
        for hook in hooks:
            try:
                result = await _call(hook, current)
            except Exception:
                logger.exception("Error interceptor %r failed; surfacing current error", hook)
                break
            if isinstance(result, ClientError):
                current = result
        return current
