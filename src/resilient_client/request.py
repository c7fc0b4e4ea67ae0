"""Request and response value objects carried through the executor."""

from __future__ import annotations

import dataclasses
import json
import uuid
from dataclasses import dataclass, field
from typing import Any, Mapping

from .exceptions import ClientValidationError


HTTP_METHODS = frozenset({"GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"})


def _new_request_id() -> str:
    return f"req_{uuid.uuid4().hex[:16]}"


@dataclass(frozen=True)
class Request:
    path: str
    method: str = "GET"
    headers: Mapping[str, str] = field(default_factory=dict)
    params: Mapping[str, Any] | None = None
    body: Any = None
    timeout: float | None = None
    max_retries: int | None = None
    cache: bool | None = None
    cache_ttl: float | None = None
    request_id: str = field(default_factory=_new_request_id)

    def __post_init__(self) -> None:
        method = self.method.upper()
        if method not in HTTP_METHODS:
            raise ClientValidationError(f"Unsupported HTTP method: {self.method}")
        object.__setattr__(self, "method", method)
        object.__setattr__(self, "headers", {str(k): str(v) for k, v in self.headers.items()})
        if self.params is not None:
            object.__setattr__(self, "params", dict(self.params))
        if self.timeout is not None and self.timeout <= 0:
            raise ClientValidationError("timeout must be greater than 0")
        if self.max_retries is not None and self.max_retries < 0:
            raise ClientValidationError("max_retries must be non-negative")
        if self.cache_ttl is not None and self.cache_ttl <= 0:
            raise ClientValidationError("cache_ttl must be greater than 0")

    def replace(self, **changes: Any) -> "Request":
        """Return a derived copy; the original is left untouched."""
        return dataclasses.replace(self, **changes)

    def with_headers(self, headers: Mapping[str, str]) -> "Request":
        merged = dict(self.headers)
        merged.update(headers)
        return self.replace(headers=merged)

    def cache_eligible(self) -> bool:
        if self.cache is None:
            return self.method == "GET"
        return self.cache


@dataclass(frozen=True)
class Response:
    status_code: int
    status_text: str = ""
    headers: Mapping[str, str] = field(default_factory=dict)
    body: Any = None
    content: bytes = b""
    timestamp: float = 0.0
    cached: bool = False
    retry_count: int = 0
    latency_ms: float = 0.0
    request: Request | None = None

    @property
    def ok(self) -> bool:
        return self.status_code < 400

    def json(self) -> Any:
        if isinstance(self.body, (dict, list)):
            return self.body
        return json.loads(self.content) if self.content else None

    def replace(self, **changes: Any) -> "Response":
        return dataclasses.replace(self, **changes)
