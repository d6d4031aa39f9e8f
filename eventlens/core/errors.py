from __future__ import annotations

from typing import Any


class EventLensError(Exception):
    """Base error for eventlens."""

    status_code = 500
    default_message = "Internal Server Error"

    def __init__(self, message: str | None = None, *, details: dict[str, Any] | None = None) -> None:
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(EventLensError):
    """Malformed or missing request fields."""

    status_code = 400
    default_message = "Validation error"


class Unauthenticated(EventLensError):
    """Missing, invalid, expired or inactive credential or session."""

    status_code = 401
    default_message = "Authentication required."


class NotFound(EventLensError):
    """Resource does not exist or is outside the caller's scope."""

    status_code = 404
    default_message = "Resource not found"


class RateLimited(EventLensError):
    """Request budget for the current window is exhausted."""

    status_code = 429
    default_message = "Too many requests, please try again later."

    def __init__(
        self,
        message: str | None = None,
        *,
        retry_after_ms: int = 0,
        headers: dict[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.retry_after_ms = retry_after_ms
        self.headers = headers or {}


class StorageError(EventLensError):
    """Relational store failure."""

    status_code = 500
    default_message = "Storage failure"


class CacheError(EventLensError):
    """Cache backend failure; absorbed by the cache layer."""

    status_code = 500
    default_message = "Cache failure"


class ServiceUnavailable(EventLensError):
    """A required backing service is unavailable."""

    status_code = 503
    default_message = "Service temporarily unavailable"
