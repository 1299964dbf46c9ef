"""Per-endpoint rate limiter combining a token bucket and a sliding window.

Every evaluation refills tokens, prunes the window and then checks three
gates in a fixed order:

1. sliding window: at most ``max_requests`` accepted per ``window_ms``
2. token bucket: at least one whole token available
3. spacing: at least ``min_delay_ms`` since the last accepted request

A denial is returned as a value and never touches tokens or the window.
Only an accepted request consumes a token, appends to the window and is
persisted.

Buckets are persisted in shared storage without cross-process locking:
two processes (or browser-tab equivalents) using the same storage key may
both accept a request from the same loaded state, and the later write
wins. The limiter is advisory and makes no stronger guarantee.
"""

import bisect
import hashlib
import math
import threading
import time
from dataclasses import replace
from typing import Any, Callable, Mapping, Optional

from governor.app.core.logging import get_log_context, get_logger
from governor.app.exceptions import RateLimitError
from governor.app.rate_limit.identity import ClientIdentityResolver
from governor.app.rate_limit.models import (
    BucketState,
    DenialReason,
    Environment,
    RateLimitConfig,
    RateLimitResult,
)
from governor.app.rate_limit.presets import get_preset
from governor.app.rate_limit.storage import BucketStore, InMemoryStorage

logger = get_logger(__name__)

STORAGE_PREFIX = "rate_limit_"

Clock = Callable[[], int]


def system_clock() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return time.time_ns() // 1_000_000


def derive_storage_key(
    endpoint_key: str,
    client_id: str,
    environment: Environment,
    prefix: str = STORAGE_PREFIX,
) -> str:
    """Build the storage key for an endpoint bucket.

    Development keys stay readable; production keys hash the endpoint key
    together with the client identifier so neither can be read back.
    """
    if environment is Environment.DEVELOPMENT:
        return f"{prefix}{endpoint_key}"
    digest = hashlib.sha256(f"{endpoint_key}{client_id}".encode()).hexdigest()[:32]
    return f"{prefix}{digest}"


class RateLimiter:
    """Rate limiter for one endpoint class and one client identity.

    Example:
        >>> limiter = RateLimiter("AUTH_LOGIN")
        >>> result = limiter.attempt()
        >>> if not result.allowed:
        ...     print(f"Try again in {result.retry_after} ms")
    """

    def __init__(
        self,
        endpoint_key: str,
        config_override: Optional[Mapping[str, Any]] = None,
        *,
        store: Optional[BucketStore] = None,
        identity: Optional[ClientIdentityResolver] = None,
        environment: Environment = Environment.PRODUCTION,
        clock: Clock = system_clock,
        prefix: str = STORAGE_PREFIX,
    ):
        """Initialize the limiter and load its persisted bucket.

        Args:
            endpoint_key: Preset name (unknown names use the QUERY preset)
            config_override: Fields replacing the preset's values
            store: Persistence adapter (defaults to a private in-memory one)
            identity: Client identity resolver (production keys only)
            environment: Selects readable or hashed storage keys
            clock: Returns the current time in epoch milliseconds
            prefix: Storage key prefix

        Raises:
            ConfigurationError: If the override is invalid.
        """
        self.endpoint_key = endpoint_key
        self.config: RateLimitConfig = get_preset(endpoint_key).merged(config_override)
        self._environment = environment
        self._clock = clock
        self._store = store if store is not None else BucketStore(InMemoryStorage(), environment)

        if environment is Environment.DEVELOPMENT:
            client_id = ""
        else:
            client_id = (identity or ClientIdentityResolver()).resolve()
        self.storage_key = derive_storage_key(endpoint_key, client_id, environment, prefix)

        self._lock = threading.Lock()
        self._bucket = self._store.load(self.storage_key, self.config, self._clock())

    def attempt(self) -> RateLimitResult:
        """Check whether a request may proceed now and consume a token if so."""
        with self._lock:
            now = self._clock()
            self._refill(now)
            self._prune(now)

            denial = self._check_gates(now)
            if denial is not None:
                logger.debug(
                    f"Rate limit denied for {self.endpoint_key} "
                    f"({denial.reason.value}), retry after {denial.retry_after}ms",
                    extra=get_log_context(
                        endpoint_key=self.endpoint_key,
                        reason=denial.reason.value,
                        retry_after=denial.retry_after,
                    ),
                )
                return denial

            bucket = self._bucket
            bucket.tokens -= 1
            bucket.requests.append(now)
            bucket.last_request = now
            self._store.save(self.storage_key, bucket)

            return RateLimitResult(
                allowed=True,
                tokens_remaining=math.floor(bucket.tokens),
                reset_at=self._full_at(now),
            )

    def attempt_or_raise(self, message: Optional[str] = None) -> RateLimitResult:
        """Like attempt(), but raise RateLimitError on denial."""
        result = self.attempt()
        if not result.allowed:
            raise RateLimitError.from_result(result, self.endpoint_key, message)
        return result

    def get_status(self) -> RateLimitResult:
        """Report what attempt() would return right now, without consuming."""
        with self._lock:
            now = self._clock()
            self._refill(now)
            self._prune(now)

            denial = self._check_gates(now)
            if denial is not None:
                return denial
            return RateLimitResult(
                allowed=True,
                tokens_remaining=math.floor(self._bucket.tokens),
                reset_at=self._full_at(now),
            )

    def reset(self) -> None:
        """Restore a full bucket with an empty window and persist it."""
        with self._lock:
            self._bucket = BucketState.fresh(self.config, self._clock())
            self._store.save(self.storage_key, self._bucket)
        logger.debug(
            f"Rate limiter reset for {self.endpoint_key}",
            extra=get_log_context(endpoint_key=self.endpoint_key),
        )

    def snapshot(self) -> BucketState:
        """Copy of the current bucket state."""
        with self._lock:
            return replace(self._bucket, requests=list(self._bucket.requests))

    def _refill(self, now: int) -> None:
        bucket = self._bucket
        elapsed_ms = max(0, now - bucket.last_refill)
        tokens = bucket.tokens + elapsed_ms / 1000 * self.config.refill_rate
        # absorb float drift from the ms/second conversion
        bucket.tokens = min(float(self.config.max_tokens), round(tokens, 9))
        bucket.last_refill = now

    def _prune(self, now: int) -> None:
        requests = self._bucket.requests
        cutoff = bisect.bisect_right(requests, now - self.config.window_ms)
        if cutoff:
            del requests[:cutoff]

    def _check_gates(self, now: int) -> Optional[RateLimitResult]:
        """Return a denial from the first failing gate, or None."""
        config = self.config
        bucket = self._bucket

        if len(bucket.requests) >= config.max_requests:
            window_end = bucket.requests[0] + config.window_ms
            return RateLimitResult(
                allowed=False,
                retry_after=max(0, window_end - now),
                tokens_remaining=math.floor(bucket.tokens),
                reset_at=window_end,
                reason=DenialReason.WINDOW,
            )

        if bucket.tokens < 1:
            retry_after = math.ceil((1 - bucket.tokens) / config.refill_rate * 1000)
            return RateLimitResult(
                allowed=False,
                retry_after=retry_after,
                tokens_remaining=0,
                reset_at=now + retry_after,
                reason=DenialReason.TOKENS,
            )

        if config.min_delay_ms and bucket.last_request is not None:
            since_last = max(0, now - bucket.last_request)
            if since_last < config.min_delay_ms:
                retry_after = config.min_delay_ms - since_last
                return RateLimitResult(
                    allowed=False,
                    retry_after=retry_after,
                    tokens_remaining=math.floor(bucket.tokens),
                    reset_at=now + retry_after,
                    reason=DenialReason.SPACING,
                )

        return None

    def _full_at(self, now: int) -> int:
        """Time at which the bucket is back to max_tokens."""
        missing = self.config.max_tokens - self._bucket.tokens
        return now + math.ceil(max(0.0, missing) / self.config.refill_rate * 1000)
