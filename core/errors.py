"""Closed error taxonomy shared by every layer of the gateway."""
from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

import pydantic


class ErrorKind(str, Enum):
    """Machine-readable error kinds surfaced to protocol clients."""

    VALIDATION = "ValidationError"
    UPSTREAM = "UpstreamError"
    TIMEOUT = "TimeoutError"
    POOL_EXHAUSTED = "PoolExhaustedError"
    SHUTDOWN = "ShutdownError"
    UNKNOWN_TOOL = "UnknownToolError"
    INITIALIZATION = "InitializationError"


class GatewayError(Exception):
    """Base class for every classified failure."""

    kind: ErrorKind = ErrorKind.UPSTREAM
    retryable: bool = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r})"


class ValidationError(GatewayError):
    """Invocation arguments did not match the tool's argument model."""

    kind = ErrorKind.VALIDATION


class UpstreamError(GatewayError):
    """Non-2xx response or network failure talking to the n8n API."""

    kind = ErrorKind.UPSTREAM

    def __init__(
        self,
        message: str,
        endpoint: str = "",
        status_code: Optional[int] = None,
        response_body: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        merged: Dict[str, Any] = {
            "endpoint": endpoint,
            "statusCode": status_code,
            "responseBody": response_body,
        }
        merged.update(details or {})
        super().__init__(message, merged)
        self.endpoint = endpoint
        self.status_code = status_code
        self.response_body = response_body

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        # Network failures, throttling and server faults may clear up; 4xx will not.
        if self.status_code is None:
            return not self.details.get("malformed", False)
        return self.status_code == 429 or self.status_code >= 500


class CallTimeoutError(GatewayError):
    """An operation exceeded its allotted duration."""

    kind = ErrorKind.TIMEOUT
    retryable = True


class PoolExhaustedError(GatewayError):
    """The connection pool is at capacity."""

    kind = ErrorKind.POOL_EXHAUSTED


class ShutdownError(GatewayError):
    """The server is draining and accepts no new work."""

    kind = ErrorKind.SHUTDOWN


class UnknownToolError(GatewayError):
    kind = ErrorKind.UNKNOWN_TOOL


class InitializationError(GatewayError):
    """Fatal startup failure: bad configuration or unreachable upstream."""

    kind = ErrorKind.INITIALIZATION


def validation_error_from_pydantic(
    tool_name: str, exc: pydantic.ValidationError
) -> ValidationError:
    """Translate a pydantic error into a ValidationError naming the bad fields."""
    fields: List[str] = []
    problems: List[Dict[str, Any]] = []
    for err in exc.errors():
        location = ".".join(str(part) for part in err.get("loc", ())) or "<root>"
        if location not in fields:
            fields.append(location)
        problems.append({"field": location, "message": err.get("msg", "")})
    return ValidationError(
        f"Invalid arguments for {tool_name}: {', '.join(fields)}",
        {"tool": tool_name, "fields": fields, "errors": problems},
    )


def classify_exception(exc: BaseException, context: str = "") -> GatewayError:
    """Map any exception onto the taxonomy."""
    if isinstance(exc, GatewayError):
        return exc
    if isinstance(exc, pydantic.ValidationError):
        return validation_error_from_pydantic(context or "tool", exc)
    # Handlers only see validated arguments plus upstream data, so anything
    # else is an upstream payload we could not make sense of.
    return UpstreamError(
        f"Unexpected failure{f' in {context}' if context else ''}: {exc}",
        endpoint=context,
        details={"exception": type(exc).__name__, "malformed": True},
    )
