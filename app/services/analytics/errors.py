"""
Analytics Errors — exception taxonomy shared by every analytics component.

    AnalyticsError
    ├── ValidationError        bad period / format / metric, blank tenant id
    │   └── ConfigurationError unknown period token
    ├── NotFoundError          agent filter not owned by the tenant
    ├── UpstreamError          event store unreachable or query failed
    └── AuthError              no valid tenant identity

Validation, not-found and auth errors are raised before any data query runs.
Only UpstreamError is retryable.
"""

from __future__ import annotations

from typing import Any


class AnalyticsError(Exception):
    """Base exception for the analytics service."""

    status_code: int = 500
    retryable: bool = False

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Serialize for API error responses."""
        return {
            "detail": self.message,
            "error_type": self.__class__.__name__,
            "retryable": self.retryable,
            **({"details": self.details} if self.details else {}),
        }


class ValidationError(AnalyticsError):
    """Request rejected before any query was issued."""

    status_code = 422


class ConfigurationError(ValidationError):
    """Symbolic period token has no entry in the period table."""


class NotFoundError(AnalyticsError):
    """Requested resource does not exist within the caller's tenant."""

    status_code = 404


class UpstreamError(AnalyticsError):
    """The event store failed. Safe to retry."""

    status_code = 503
    retryable = True


class AuthError(AnalyticsError):
    """Missing or invalid tenant identity. Never retried."""

    status_code = 401
