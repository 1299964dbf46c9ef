"""Named rate limit presets, tuned by endpoint risk."""

from typing import Dict

from governor.app.rate_limit.models import RateLimitConfig

AUTH_LOGIN = "AUTH_LOGIN"
MFA_VERIFY = "MFA_VERIFY"
PASSWORD_RESET = "PASSWORD_RESET"
AUTH_SIGNUP = "AUTH_SIGNUP"
MUTATION = "MUTATION"
QUERY = "QUERY"

RATE_LIMITS: Dict[str, RateLimitConfig] = {
    # Authentication endpoints (strict)
    AUTH_LOGIN: RateLimitConfig(
        max_requests=5,
        window_ms=60 * 1000,
        refill_rate=0.1,  # 1 token per 10 seconds
        max_tokens=5,
        min_delay_ms=2000,
    ),
    # MFA verification (very strict)
    MFA_VERIFY: RateLimitConfig(
        max_requests=3,
        window_ms=60 * 1000,
        refill_rate=0.05,  # 1 token per 20 seconds
        max_tokens=3,
        min_delay_ms=3000,
    ),
    PASSWORD_RESET: RateLimitConfig(
        max_requests=3,
        window_ms=5 * 60 * 1000,
        refill_rate=0.01,  # 1 token per 100 seconds
        max_tokens=3,
        min_delay_ms=1000,
    ),
    AUTH_SIGNUP: RateLimitConfig(
        max_requests=3,
        window_ms=10 * 60 * 1000,
        refill_rate=0.005,  # 1 token per 200 seconds
        max_tokens=3,
        min_delay_ms=5000,
    ),
    # POST/PUT/PATCH/DELETE (lenient)
    MUTATION: RateLimitConfig(
        max_requests=30,
        window_ms=60 * 1000,
        refill_rate=1,
        max_tokens=30,
        min_delay_ms=100,
    ),
    # GET queries (very lenient)
    QUERY: RateLimitConfig(
        max_requests=100,
        window_ms=60 * 1000,
        refill_rate=5,
        max_tokens=100,
        min_delay_ms=0,
    ),
}

# Unknown endpoint keys degrade to the most permissive preset
DEFAULT_PRESET = QUERY


def get_preset(endpoint_key: str) -> RateLimitConfig:
    """Return the preset for an endpoint class, or the QUERY preset."""
    return RATE_LIMITS.get(endpoint_key, RATE_LIMITS[DEFAULT_PRESET])
