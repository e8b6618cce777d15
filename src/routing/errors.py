"""Error taxonomy for provider routing.

Per-provider failures (ProviderError, ProviderTimeoutError) are recovered
inside FallbackExecutor and never cross the HTTP boundary. Only the two
terminal conditions propagate to callers:

- BudgetExceededError       -> HTTP 402
- AllProvidersExhaustedError -> HTTP 502 (504 if every attempt timed out)
"""

from __future__ import annotations

import asyncio
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import httpx

if TYPE_CHECKING:
    from src.routing.fallback import AttemptResult


class ErrorKind(StrEnum):
    PROVIDER_TIMEOUT = "provider_timeout"
    PROVIDER_ERROR = "provider_error"
    CIRCUIT_OPEN = "circuit_open"
    BUDGET_EXCEEDED = "budget_exceeded"
    ALL_PROVIDERS_EXHAUSTED = "all_providers_exhausted"


class ErrorCategory(StrEnum):
    """Finer-grained classification of a provider failure, for diagnostics."""

    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    AUTH = "auth"
    AVAILABILITY = "availability"
    CAPACITY = "capacity"
    NETWORK = "network"
    UNKNOWN = "unknown"


class RoutingError(Exception):
    """Base class for routing errors."""

    error_code = "routing_error"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.error_code,
            "message": self.message,
            **self.details,
        }


class ProviderError(RoutingError):
    """Non-2xx or malformed response from a provider."""

    error_code = ErrorKind.PROVIDER_ERROR.value
    kind = ErrorKind.PROVIDER_ERROR

    def __init__(
        self,
        provider_id: str,
        message: str,
        *,
        status_code: int | None = None,
    ) -> None:
        super().__init__(
            message,
            details={"provider_id": provider_id, "status_code": status_code},
        )
        self.provider_id = provider_id
        self.status_code = status_code


class ProviderTimeoutError(ProviderError):
    """A single attempt exceeded the provider's configured timeout."""

    error_code = ErrorKind.PROVIDER_TIMEOUT.value
    kind = ErrorKind.PROVIDER_TIMEOUT

    def __init__(self, provider_id: str, timeout_ms: int) -> None:
        super().__init__(provider_id, f"{provider_id} timed out after {timeout_ms}ms")
        self.timeout_ms = timeout_ms


class BudgetExceededError(RoutingError):
    """The session's budget cannot absorb the estimated cost of the next attempt."""

    error_code = ErrorKind.BUDGET_EXCEEDED.value

    def __init__(
        self,
        *,
        session_id: str,
        current_usage: float,
        limit: float,
        window: str,
    ) -> None:
        super().__init__(
            f"Budget exceeded for session {session_id} ({window} window)",
            details={"current_usage": current_usage, "limit": limit, "window": window},
        )
        self.session_id = session_id
        self.current_usage = current_usage
        self.limit = limit
        self.window = window


class AllProvidersExhaustedError(RoutingError):
    """Every provider in the fallback chain failed or was skipped."""

    error_code = ErrorKind.ALL_PROVIDERS_EXHAUSTED.value

    def __init__(self, attempts: list[AttemptResult], reasoning: str = "") -> None:
        summary = ", ".join(f"{a.provider_id}={a.error_kind}" for a in attempts) or reasoning
        super().__init__(f"All providers failed: {summary}")
        self.attempts = attempts
        self.reasoning = reasoning

    @property
    def all_timed_out(self) -> bool:
        """True if at least one provider was called and every call timed out."""
        called = [a for a in self.attempts if a.error_kind != ErrorKind.CIRCUIT_OPEN]
        return bool(called) and all(
            a.error_kind == ErrorKind.PROVIDER_TIMEOUT for a in called
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": "all_providers_failed",
            "attempts": [
                {"providerId": str(a.provider_id), "errorKind": str(a.error_kind)}
                for a in self.attempts
            ],
        }


def categorize_error(exc: BaseException) -> ErrorCategory:
    """Classify a provider failure into a diagnostic category.

    Args:
        exc: Exception raised by a provider call

    Returns:
        The matching ErrorCategory (UNKNOWN when nothing matches)
    """
    if isinstance(exc, ProviderTimeoutError | asyncio.TimeoutError | httpx.TimeoutException):
        return ErrorCategory.TIMEOUT

    status_code = getattr(exc, "status_code", None)
    if status_code is not None:
        if status_code == 429:
            return ErrorCategory.RATE_LIMIT
        if status_code in (401, 403):
            return ErrorCategory.AUTH
        if status_code in (500, 502, 503, 504):
            return ErrorCategory.AVAILABILITY
        if status_code in (413, 529):
            return ErrorCategory.CAPACITY

    if isinstance(exc, httpx.TransportError):
        return ErrorCategory.NETWORK

    message = str(exc).lower()
    if "rate limit" in message or "too many requests" in message:
        return ErrorCategory.RATE_LIMIT
    if "unauthorized" in message or "api key" in message or "forbidden" in message:
        return ErrorCategory.AUTH
    if "unavailable" in message or "service" in message:
        return ErrorCategory.AVAILABILITY
    if "capacity" in message or "overloaded" in message or "quota" in message:
        return ErrorCategory.CAPACITY
    if "network" in message or "connection" in message or "fetch" in message:
        return ErrorCategory.NETWORK
    return ErrorCategory.UNKNOWN
