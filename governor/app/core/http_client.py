"""Shared HTTP client for rate-limited fetches.

The host application opens the shared client once (``async with
init_http_client(): ...``); every ``limited_fetch`` call that does not pass
its own client reuses it and its connection pool.
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

import httpx

from governor.app.core.config import settings


_shared_http_client: httpx.AsyncClient | None = None

# httpx argument name -> settings attribute holding its default
_LIMIT_OPTIONS = {
    "max_connections": "httpx_max_connections",
    "max_keepalive_connections": "httpx_max_keepalive_connections",
    "keepalive_expiry": "httpx_keepalive_expiry",
}
_TIMEOUT_OPTIONS = {
    "connect": "httpx_connect_timeout",
    "read": "httpx_read_timeout",
    "write": "httpx_write_timeout",
    "pool": "httpx_pool_timeout",
}
_PASSTHROUGH_OPTIONS = ("base_url", "headers", "transport")


def get_http_client() -> httpx.AsyncClient:
    """Return the shared client.

    Raises:
        RuntimeError: If no shared client is open.
    """
    if _shared_http_client is None:
        raise RuntimeError(
            "HTTP client not initialized. Use 'async with init_http_client()' first."
        )
    return _shared_http_client


@asynccontextmanager
async def init_http_client(**kwargs: Any) -> AsyncGenerator[httpx.AsyncClient, None]:
    """Open the shared client for the duration of the block.

    Keyword arguments are those of :func:`create_http_client`.
    """
    global _shared_http_client

    client = create_http_client(**kwargs)
    _shared_http_client = client
    try:
        yield client
    finally:
        _shared_http_client = None
        await client.aclose()


def create_http_client(**kwargs: Any) -> httpx.AsyncClient:
    """Create an ``httpx.AsyncClient`` with pool and timeout defaults from settings.

    Args:
        **kwargs: Any of
            - timeout: one value for every timeout
            - connect_timeout, read_timeout, write_timeout, pool_timeout
            - max_connections, max_keepalive_connections, keepalive_expiry
            - base_url, headers, transport (passed to httpx unchanged)

    The caller owns the returned client and must close it.
    """
    if kwargs.get("timeout") is not None:
        timeout = httpx.Timeout(kwargs["timeout"])
    else:
        timeout = httpx.Timeout(**{
            name: kwargs.get(f"{name}_timeout", getattr(settings, attr))
            for name, attr in _TIMEOUT_OPTIONS.items()
        })

    limits = httpx.Limits(**{
        name: kwargs.get(name, getattr(settings, attr))
        for name, attr in _LIMIT_OPTIONS.items()
    })

    options = {name: kwargs[name] for name in _PASSTHROUGH_OPTIONS if kwargs.get(name) is not None}
    return httpx.AsyncClient(timeout=timeout, limits=limits, **options)
