"""Client-specific exceptions."""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any, Mapping

import httpx

if TYPE_CHECKING:
    from .request import Request


RETRYABLE_STATUS_CODES = frozenset({408, 429})


class ErrorKind(str, Enum):
    NETWORK = "network"
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    HTTP_STATUS = "http_status"
    MAX_RETRIES_EXCEEDED = "max_retries_exceeded"
    UNKNOWN = "unknown"


def is_retryable_status(status_code: int | None) -> bool:
    """Return True for statuses that indicate a transient remote condition."""
    if status_code is None:
        return False
    return status_code in RETRYABLE_STATUS_CODES or status_code >= 500


class ClientError(Exception):
    """Base exception for all resilient client failures.

    ``retryable`` is decided once, here, from the error kind and status code.
    Nothing downstream recomputes it.
    """

    kind: ErrorKind = ErrorKind.UNKNOWN
    default_code = "UNKNOWN_ERROR"

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        code: str | None = None,
        retry_count: int = 0,
        body: object = None,
        headers: Mapping[str, str] | None = None,
        retry_after: float | None = None,
        request: Request | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code or self.default_code
        self.retry_count = retry_count
        self.body = body
        self.headers = dict(headers) if headers is not None else {}
        self.retry_after = retry_after
        self.request = request
        self.cause = cause
        self.retryable = self._classify_retryable()

    def _classify_retryable(self) -> bool:
        return False

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        if self.status_code is None:
            return str(self.args[0])
        return f"{self.status_code} {self.code}: {self.args[0]}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "code": self.code,
            "status_code": self.status_code,
            "retry_count": self.retry_count,
            "retryable": self.retryable,
        }


class ClientValidationError(ClientError, ValueError):
    """Raised when a request cannot be built from the supplied values."""

    default_code = "VALIDATION_ERROR"


class NetworkError(ClientError):
    """Raised for transport-level failures like DNS and TCP errors."""

    kind = ErrorKind.NETWORK
    default_code = "NETWORK_ERROR"

    def _classify_retryable(self) -> bool:
        return True


class RequestTimeoutError(ClientError):
    """Raised when a request exceeds its configured timeout."""

    kind = ErrorKind.TIMEOUT
    default_code = "TIMEOUT"
    cancelled = False

    def _classify_retryable(self) -> bool:
        return not self.cancelled


class RequestCancelledError(RequestTimeoutError):
    """Raised when the caller (or ``cancel_all``) aborts a call."""

    default_code = "CANCELLED"
    cancelled = True


class RateLimitedError(ClientError):
    """Raised when local admission control rejects a call.

    This reflects local policy, so it is never retried automatically.
    """

    kind = ErrorKind.RATE_LIMITED
    default_code = "RATE_LIMIT_EXCEEDED"


class HTTPStatusError(ClientError):
    """Raised for HTTP non-success responses."""

    kind = ErrorKind.HTTP_STATUS
    default_code = "HTTP_ERROR"

    def _classify_retryable(self) -> bool:
        return is_retryable_status(self.status_code)


class MaxRetriesExceededError(ClientError):
    """Raised after a transient failure persisted through every retry."""

    kind = ErrorKind.MAX_RETRIES_EXCEEDED
    default_code = "MAX_RETRIES_EXCEEDED"

    def __init__(self, message: str, *, last_error: ClientError, **kwargs: Any) -> None:
        kwargs.setdefault("status_code", last_error.status_code)
        kwargs.setdefault("retry_count", last_error.retry_count)
        kwargs.setdefault("request", last_error.request)
        kwargs.setdefault("cause", last_error)
        super().__init__(message, **kwargs)
        self.last_error = last_error

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["last_error"] = self.last_error.to_dict()
        return data


class UnknownError(ClientError):
    """Raised for failures that fit no other category."""


def classify_exception(
    exc: BaseException,
    *,
    retry_count: int = 0,
    request: Request | None = None,
) -> ClientError:
    """Normalize an arbitrary exception into a ``ClientError``."""
    if isinstance(exc, ClientError):
        return exc
    if isinstance(exc, httpx.TimeoutException):
        return RequestTimeoutError("Request timed out", retry_count=retry_count, request=request, cause=exc)
    if isinstance(exc, httpx.TransportError):
        return NetworkError(f"Network error: {exc}", retry_count=retry_count, request=request, cause=exc)
    return UnknownError(str(exc) or type(exc).__name__, retry_count=retry_count, request=request, cause=exc)
