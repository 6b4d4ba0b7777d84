"""Application-level exception types.

This module defines domain errors used across services/adapters, enabling
consistent error handling, logging, and API responses.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, NotRequired, TypedDict


class ErrorDetails(TypedDict, total=False):
    """Structured error context for observability and clients.

    Fields are optional to keep backward compatibility while encouraging
    consistent shapes across the codebase.
    """

    code: str
    message: str
    hint: str
    http_status: int
    limit: int
    remaining: int
    reset_time: int
    retry_after: int
    key: str
    operation: str
    backend: str
    issues: list[str]
    request_id: str
    context: NotRequired[dict[str, Any]]


@dataclass
class AppError(Exception):
    """Base error for application/domain failures.

    Attributes:
        code: Stable, machine-readable error code.
        message: Human-readable error message.
        details: Optional structured details for debugging/observability.
    """

    code: str
    message: str
    details: ErrorDetails | None = None

    def __post_init__(self) -> None:
        # Populate Exception args so str(error) is useful in logs/tracebacks.
        super().__init__(self.message)


class ValidationAppError(AppError):
    """Raised when input/config validation fails."""


class AuthenticationAppError(AppError):
    """Raised when authentication/authorization fails."""


class ConfigurationAppError(AppError):
    """Raised when a backend is selected without the settings it requires."""


class BackendConnectionError(AppError):
    """Raised when the remote store is unreachable or a round trip times out.

    Never surfaced to HTTP callers: the Redis-backed stores catch it, flip
    their connectivity flag and serve the request from the fallback store.
    """


class SerializationAppError(AppError):
    """Raised when a stored value cannot be decoded. Treated as a cache miss."""


class RateLimitExceededError(AppError):
    """Raised when a caller exhausted its request budget (HTTP 429)."""

    @property
    def retry_after(self) -> int:
        if self.details and "retry_after" in self.details:
            return int(self.details["retry_after"])
        return 0
