"""Custom exceptions for the governor."""

from __future__ import annotations

import math
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from governor.app.rate_limit.models import RateLimitResult


class GovernorException(Exception):
    """Base class for governor exceptions with HTTP status code.

    All custom exceptions should inherit from this class and define
    their specific status_code for consistent HTTP response handling.
    """
    status_code: int = 500

    def __init__(self, message: str = "Governor error"):
        self.message = message
        super().__init__(message)


class RateLimitError(GovernorException):
    """Raised when a caller converts a denied rate limit result into an error.

    Carries the same fields as the denied result so the boundary that
    catches it can render "try again in N seconds".
    Maps to HTTP 429 Too Many Requests.
    """
    status_code = 429

    def __init__(
        self,
        message: str,
        retry_after: int,
        reset_at: int,
        endpoint_key: str | None = None,
        reason: str | None = None,
    ):
        self.retry_after = retry_after
        self.reset_at = reset_at
        self.endpoint_key = endpoint_key
        self.reason = reason
        super().__init__(message)

    @property
    def retry_after_seconds(self) -> int:
        """Whole seconds to wait, rounded up."""
        return math.ceil(self.retry_after / 1000)

    @classmethod
    def from_result(
        cls,
        result: RateLimitResult,
        endpoint_key: str | None = None,
        message: str | None = None,
    ) -> "RateLimitError":
        """Build the error from a denied result."""
        if result.allowed:
            raise ValueError("Cannot build a RateLimitError from an allowed result")
        label = endpoint_key or "request"
        return cls(
            message or f"Rate limit exceeded for {label}. Try again later.",
            retry_after=result.retry_after or 0,
            reset_at=result.reset_at,
            endpoint_key=endpoint_key,
            reason=result.reason.value if result.reason else None,
        )

    def to_response(self) -> dict:
        """Convert to API response format."""
        return {
            "error": "rate_limit_exceeded",
            "message": self.message,
            "retry_after": self.retry_after,
            "reset_at": self.reset_at,
        }


class WaitAbortedError(GovernorException):
    """Raised by ``wait()`` when its cancellation signal fires.

    This is the caller's own abort, not a quota condition, so it does not
    inherit from RateLimitError.
    Maps to HTTP 499 Client Closed Request.
    """
    status_code = 499

    def __init__(self, message: str = "Wait aborted"):
        super().__init__(message)


class StorageError(GovernorException):
    """Raised by storage backends when a read or write fails."""

    def __init__(self, key: str, message: str = "Storage operation failed"):
        self.key = key
        super().__init__(f"{message} (key={key})")


class ConfigurationError(GovernorException):
    """Raised for invalid rate limit configuration values or override keys."""
    status_code = 500
