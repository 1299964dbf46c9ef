"""Rate limiting data models.

This module contains dataclasses for limiter configuration, bucket state
and evaluation results.
"""

import math
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import Any, Mapping, Optional

from governor.app.exceptions import ConfigurationError


class Environment(str, Enum):
    """Runtime mode of the governor.

    Development keeps storage keys human-readable and logs storage failures.
    """
    DEVELOPMENT = "development"
    PRODUCTION = "production"


class DenialReason(str, Enum):
    """Which gate denied the request."""
    WINDOW = "window"
    TOKENS = "tokens"
    SPACING = "spacing"


@dataclass(frozen=True)
class RateLimitConfig:
    """Quota policy for one endpoint class.

    Attributes:
        max_requests: Hard cap on accepted requests per window
        window_ms: Sliding window length in milliseconds
        refill_rate: Tokens added per second
        max_tokens: Bucket capacity and initial token count
        min_delay_ms: Minimum spacing between accepted requests (None or 0 disables)
    """
    max_requests: int
    window_ms: int
    refill_rate: float
    max_tokens: float
    min_delay_ms: Optional[int] = None

    def __post_init__(self) -> None:
        if self.max_requests < 1:
            raise ConfigurationError("max_requests must be at least 1")
        if self.window_ms < 1:
            raise ConfigurationError("window_ms must be at least 1")
        if not self.refill_rate > 0:
            raise ConfigurationError("refill_rate must be positive")
        if not self.max_tokens >= 1:
            raise ConfigurationError("max_tokens must be at least 1")
        if self.min_delay_ms is not None and self.min_delay_ms < 0:
            raise ConfigurationError("min_delay_ms must not be negative")

    def merged(self, override: Optional[Mapping[str, Any]] = None) -> "RateLimitConfig":
        """Return a copy with the given fields replaced.

        Raises:
            ConfigurationError: If the override names an unknown field.
        """
        if not override:
            return self
        known = {f.name for f in fields(self)}
        unknown = set(override) - known
        if unknown:
            raise ConfigurationError(
                f"Unknown rate limit config field(s): {', '.join(sorted(unknown))}"
            )
        return replace(self, **override)


@dataclass
class BucketState:
    """Token bucket plus sliding window log for one storage key.

    Times are epoch milliseconds. ``last_request`` survives window pruning
    so the spacing gate still sees the last accepted request.
    """
    tokens: float
    last_refill: int
    requests: list[int] = field(default_factory=list)
    last_request: Optional[int] = None

    @classmethod
    def fresh(cls, config: RateLimitConfig, now: int) -> "BucketState":
        """Create a full bucket with an empty window."""
        return cls(tokens=float(config.max_tokens), last_refill=now)

    def to_dict(self) -> dict:
        """Convert to the persisted record shape."""
        data: dict[str, Any] = {
            "tokens": self.tokens,
            "lastRefill": self.last_refill,
            "requests": list(self.requests),
        }
        if self.last_request is not None:
            data["lastRequest"] = self.last_request
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "BucketState":
        """Create from a persisted record.

        Raises:
            ValueError: If a field is missing or has the wrong type.
        """
        if not isinstance(data, Mapping):
            raise ValueError("bucket record must be an object")

        tokens = data["tokens"]
        last_refill = data["lastRefill"]
        requests = data.get("requests", [])
        last_request = data.get("lastRequest")

        if not _is_finite(tokens):
            raise ValueError("tokens must be a finite number")
        if not _is_finite(last_refill):
            raise ValueError("lastRefill must be a finite number")
        if not isinstance(requests, list) or not all(_is_finite(t) for t in requests):
            raise ValueError("requests must be a list of finite numbers")
        if last_request is not None and not _is_finite(last_request):
            raise ValueError("lastRequest must be a finite number")

        ordered = sorted(int(t) for t in requests)
        if last_request is None and ordered:
            last_request = ordered[-1]

        return cls(
            tokens=float(tokens),
            last_refill=int(last_refill),
            requests=ordered,
            last_request=int(last_request) if last_request is not None else None,
        )


@dataclass(frozen=True)
class RateLimitResult:
    """Result of a rate limit evaluation.

    ``retry_after`` is set iff ``allowed`` is False. All times are in
    milliseconds (``reset_at`` is epoch-ms).
    """
    allowed: bool
    tokens_remaining: int
    reset_at: int
    retry_after: Optional[int] = None
    reason: Optional[DenialReason] = None


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_finite(value: Any) -> bool:
    return _is_number(value) and math.isfinite(value)
