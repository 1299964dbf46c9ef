"""Rate-limited HTTP requests with backoff and retry.

Wraps ``httpx.AsyncClient.request`` so every gated call first asks the
endpoint's rate limiter, honours server-side 429 responses and retries
transport failures with jittered exponential backoff.
"""

import asyncio
import functools
from datetime import timezone
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Mapping, Optional

import httpx

from governor.app.core.http_client import get_http_client
from governor.app.core.logging import get_log_context, get_logger
from governor.app.exceptions import RateLimitError
from governor.app.rate_limit.limiter import Clock, system_clock
from governor.app.rate_limit.models import Environment
from governor.app.rate_limit.presets import (
    AUTH_LOGIN,
    AUTH_SIGNUP,
    MFA_VERIFY,
    MUTATION,
    PASSWORD_RESET,
    QUERY,
)
from governor.app.rate_limit.registry import LimiterRegistry, get_default_registry
from governor.app.retry.policy import RetryPolicy
from governor.app.retry.wait import wait

logger = get_logger(__name__)

MUTATION_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


def determine_rate_limit_key(url: str, method: str = "GET") -> str:
    """Pick the endpoint class for a request from its URL and method."""
    url_lower = url.lower()
    method_upper = method.upper()

    if "/auth/v1/token" in url_lower:
        return AUTH_LOGIN
    if "/auth/v1/signup" in url_lower:
        return AUTH_SIGNUP
    if "/auth/v1/recover" in url_lower:
        return PASSWORD_RESET
    if "/auth/v1/user" in url_lower and method_upper == "PUT":
        return PASSWORD_RESET

    if "mfa" in url_lower or "verify" in url_lower:
        return MFA_VERIFY

    if method_upper in MUTATION_METHODS:
        return MUTATION

    return QUERY


def is_rate_limited(response: httpx.Response) -> bool:
    return response.status_code == 429


def get_retry_after(response: httpx.Response, now: Optional[int] = None) -> Optional[int]:
    """Read the Retry-After header in milliseconds.

    Accepts delay-seconds or an HTTP date; returns None when the header is
    missing or unparsable.
    """
    value = response.headers.get("Retry-After")
    if not value:
        return None
    value = value.strip()

    try:
        return max(0, int(value)) * 1000
    except ValueError:
        pass

    try:
        retry_at = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=timezone.utc)
    now = system_clock() if now is None else now
    return max(0, int(retry_at.timestamp() * 1000) - now)


async def limited_fetch(
    method: str,
    url: str | httpx.URL,
    *,
    client: Optional[httpx.AsyncClient] = None,
    rate_limit_key: Optional[str] = None,
    rate_limit_config: Optional[Mapping[str, Any]] = None,
    policy: Optional[RetryPolicy] = None,
    skip_rate_limit: bool = False,
    signal: Optional[asyncio.Event] = None,
    registry: Optional[LimiterRegistry] = None,
    clock: Clock = system_clock,
    **request_kwargs: Any,
) -> httpx.Response:
    """Send a request through the endpoint's rate limiter.

    Args:
        method: HTTP method
        url: Request URL (relative URLs need a client with base_url)
        client: HTTP client (defaults to the shared client)
        rate_limit_key: Endpoint class (derived from URL and method if omitted)
        rate_limit_config: Override for the endpoint preset
        policy: Retry budget and backoff settings
        skip_rate_limit: Send the request directly, without limiting or retries
        signal: Event that aborts any pending wait
        registry: Limiter registry (defaults to the process-wide one)
        clock: Epoch-millisecond clock used for server Retry-After dates
        **request_kwargs: Passed to ``httpx.AsyncClient.request``

    Returns:
        The first response that is not a 429.

    Raises:
        RateLimitError: Local or server rate limit still exceeded on the
            last attempt.
        WaitAbortedError: The signal fired while waiting to retry.
        httpx.TransportError: The request kept failing after all retries.
    """
    http = client or get_http_client()
    if skip_rate_limit:
        return await http.request(method, url, **request_kwargs)

    policy = policy or RetryPolicy()
    registry = registry or get_default_registry()
    verbose = registry.environment is Environment.DEVELOPMENT

    limit_key = rate_limit_key or determine_rate_limit_key(str(url), method)
    limiter = registry.get(limit_key, rate_limit_config)

    last_error: Optional[Exception] = None

    for attempt in range(policy.max_retries + 1):
        limit_result = limiter.attempt()

        if not limit_result.allowed:
            if attempt >= policy.max_retries:
                raise RateLimitError.from_result(
                    limit_result,
                    limit_key,
                    f"Rate limit exceeded for {limit_key}. Try again later.",
                )

            delay = limit_result.retry_after or policy.calculate_delay(attempt)
            if verbose:
                logger.warning(
                    f"Rate limit reached for {limit_key}. Retry after {delay}ms",
                    extra=get_log_context(
                        endpoint_key=limit_key,
                        reason=limit_result.reason.value if limit_result.reason else None,
                        retry_after=delay,
                        attempt=attempt,
                    ),
                )
            await wait(delay, signal)
            continue

        try:
            response = await http.request(method, url, **request_kwargs)
        except httpx.TransportError as e:
            last_error = e
            if attempt >= policy.max_retries:
                break

            delay = policy.calculate_delay(attempt)
            if verbose:
                logger.warning(
                    f"Request failed ({type(e).__name__}: {e}). Retrying in {delay}ms...",
                    extra=get_log_context(
                        endpoint_key=limit_key, retry_after=delay, attempt=attempt
                    ),
                )
            await wait(delay, signal)
            continue

        if is_rate_limited(response):
            retry_after = get_retry_after(response, clock()) or policy.calculate_delay(attempt)

            if attempt >= policy.max_retries:
                await response.aclose()
                raise RateLimitError(
                    "Server rate limit exceeded. Try again later.",
                    retry_after=retry_after,
                    reset_at=clock() + retry_after,
                    endpoint_key=limit_key,
                    reason="server",
                )

            if verbose:
                logger.warning(
                    f"Server rate limit (429). Retrying after {retry_after}ms...",
                    extra=get_log_context(
                        endpoint_key=limit_key,
                        retry_after=retry_after,
                        attempt=attempt,
                        status_code=response.status_code,
                    ),
                )
            await response.aclose()
            await wait(retry_after, signal)
            continue

        return response

    if last_error is not None:
        raise last_error
    raise RuntimeError("Request failed after all retries")


async def limited_fetch_json(
    method: str,
    url: str | httpx.URL,
    **kwargs: Any,
) -> Any:
    """Rate-limited request returning the decoded JSON body.

    Raises:
        httpx.HTTPStatusError: The final response is not a 2xx.
    """
    headers = {"Content-Type": "application/json", **dict(kwargs.pop("headers", None) or {})}
    response = await limited_fetch(method, url, headers=headers, **kwargs)
    response.raise_for_status()
    return response.json()


def create_limited_fetch(**defaults: Any) -> Callable[..., Awaitable[httpx.Response]]:
    """Create a limited_fetch with preset options; headers are merged."""
    default_headers = dict(defaults.pop("headers", None) or {})

    @functools.wraps(limited_fetch)
    async def fetch(method: str, url: str | httpx.URL, **options: Any) -> httpx.Response:
        headers = {**default_headers, **dict(options.pop("headers", None) or {})}
        merged = {**defaults, **options}
        if headers:
            merged["headers"] = headers
        return await limited_fetch(method, url, **merged)

    return fetch
