"""Services built on the governor."""

from governor.app.services.limited_fetch import (
    create_limited_fetch,
    determine_rate_limit_key,
    get_retry_after,
    is_rate_limited,
    limited_fetch,
    limited_fetch_json,
)

__all__ = [
    "create_limited_fetch",
    "determine_rate_limit_key",
    "get_retry_after",
    "is_rate_limited",
    "limited_fetch",
    "limited_fetch_json",
]
