"""Retry policy with jittered exponential backoff.

This module provides a configurable retry policy and decorator for
transient failures of gated HTTP requests. Delays go through the
cancellable ``wait()`` so a user abort stops the retry loop.
"""

import asyncio
import functools
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Tuple, Type, TypeVar

import httpx

from governor.app.core.config import settings
from governor.app.core.logging import get_log_context, get_logger
from governor.app.retry.backoff import calculate_backoff
from governor.app.retry.wait import wait

logger = get_logger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


@dataclass
class RetryPolicy:
    """Configuration for retry behavior with jittered exponential backoff.

    Attributes:
        max_retries: Maximum number of retry attempts (default from settings)
        base_delay_ms: Delay for the first retry in milliseconds
        max_delay_ms: Cap on the delay before jitter, in milliseconds
        jitter_factor: Maximum relative jitter applied to each delay
        retryable_exceptions: Tuple of exception types that trigger a retry

    Example:
        >>> policy = RetryPolicy(max_retries=5, base_delay_ms=500, jitter_factor=0)
        >>> policy.calculate_delay(attempt=2)
        2000
    """

    max_retries: int = field(default_factory=lambda: settings.fetch_max_retries)
    base_delay_ms: int = field(default_factory=lambda: settings.backoff_base_delay_ms)
    max_delay_ms: int = field(default_factory=lambda: settings.backoff_max_delay_ms)
    jitter_factor: float = field(default_factory=lambda: settings.backoff_jitter_factor)
    retryable_exceptions: Tuple[Type[Exception], ...] = (
        httpx.HTTPStatusError,
        httpx.TransportError,
    )

    def calculate_delay(self, attempt: int) -> int:
        """Calculate the delay in milliseconds for a retry attempt (0-indexed)."""
        return calculate_backoff(
            attempt,
            base_delay=self.base_delay_ms,
            max_delay=self.max_delay_ms,
            jitter_factor=self.jitter_factor,
        )

    def is_retryable(self, exception: Exception) -> bool:
        """Check if an exception should trigger a retry.

        For HTTPStatusError, only 5xx status codes are considered retryable.
        """
        if isinstance(exception, httpx.HTTPStatusError):
            return exception.response.status_code >= 500

        return isinstance(exception, self.retryable_exceptions)


def with_retry(
    policy: Optional[RetryPolicy] = None,
    signal: Optional[asyncio.Event] = None,
) -> Callable[[F], F]:
    """Decorator that adds retry logic with jittered exponential backoff.

    Args:
        policy: RetryPolicy configuration. Uses defaults if not provided.
        signal: Event that aborts the retry loop while it is waiting.

    Returns:
        Decorated function with retry logic

    Example:
        >>> @with_retry(policy=RetryPolicy(max_retries=3))
        ... async def load_lessons(client):
        ...     return await client.get("/rest/v1/lessons")
    """
    retry_policy = policy or RetryPolicy()

    def decorator(func: F) -> F:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            for attempt in range(retry_policy.max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except Exception as e:
                    if not retry_policy.is_retryable(e):
                        logger.debug(
                            f"Non-retryable exception in {func.__name__}: {type(e).__name__}: {e}"
                        )
                        raise

                    if attempt >= retry_policy.max_retries:
                        logger.warning(
                            f"Max retries ({retry_policy.max_retries}) exceeded for {func.__name__}: "
                            f"{type(e).__name__}: {e}"
                        )
                        raise

                    delay = retry_policy.calculate_delay(attempt)
                    logger.warning(
                        f"Retry {attempt + 1}/{retry_policy.max_retries} for {func.__name__} "
                        f"after {type(e).__name__}: {e}. Waiting {delay}ms...",
                        extra=get_log_context(attempt=attempt + 1, retry_after=delay),
                    )

                    await wait(delay, signal)

        return wrapper  # type: ignore

    return decorator
