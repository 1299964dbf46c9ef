"""Backoff, cancellable waits and retry policy."""

from governor.app.retry.backoff import calculate_backoff, combine_delays
from governor.app.retry.policy import RetryPolicy, with_retry
from governor.app.retry.wait import wait

__all__ = [
    "calculate_backoff",
    "combine_delays",
    "RetryPolicy",
    "with_retry",
    "wait",
]
