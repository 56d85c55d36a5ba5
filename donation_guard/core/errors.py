"""Application-level exception types.

This module defines domain errors used across the security core, enabling
consistent error handling, logging, and API responses.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, NotRequired, TypedDict


class ErrorDetails(TypedDict, total=False):
    """Structured error context for observability and clients.

    Fields are optional to keep shapes consistent without forcing every
    error to carry every key.
    """

    code: str
    message: str
    hint: str
    limit: int
    reset_at: str
    retry_after: float
    missing_fields: list[str]
    category: str
    action: str
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
    """Raised when the caller identity is missing or invalid."""


@dataclass
class RateLimitAppError(AppError):
    """Raised when a caller has exhausted its request quota.

    Attributes:
        headers: Quota headers to attach to the 429 response.
    """

    headers: dict[str, str] | None = None


class AuditWriteError(AppError):
    """Raised when an audit record could not be persisted."""
