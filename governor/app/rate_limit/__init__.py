"""Client-side rate limiting.

Per-endpoint quotas enforced with a token bucket plus a sliding window,
persisted through pluggable key-value storage.
"""

from governor.app.rate_limit.identity import ClientIdentityResolver
from governor.app.rate_limit.limiter import (
    STORAGE_PREFIX,
    RateLimiter,
    derive_storage_key,
    system_clock,
)
from governor.app.rate_limit.models import (
    BucketState,
    DenialReason,
    Environment,
    RateLimitConfig,
    RateLimitResult,
)
from governor.app.rate_limit.presets import (
    AUTH_LOGIN,
    AUTH_SIGNUP,
    MFA_VERIFY,
    MUTATION,
    PASSWORD_RESET,
    QUERY,
    RATE_LIMITS,
    get_preset,
)
from governor.app.rate_limit.registry import (
    LimiterRegistry,
    get_default_registry,
    get_rate_limiter,
    reset_default_registry,
)
from governor.app.rate_limit.storage import (
    BucketStore,
    FileStorage,
    InMemoryStorage,
    RedisStorage,
    StorageBackend,
    create_storage,
)

__all__ = [
    # Models
    "BucketState",
    "DenialReason",
    "Environment",
    "RateLimitConfig",
    "RateLimitResult",
    # Presets
    "RATE_LIMITS",
    "AUTH_LOGIN",
    "MFA_VERIFY",
    "PASSWORD_RESET",
    "AUTH_SIGNUP",
    "MUTATION",
    "QUERY",
    "get_preset",
    # Storage
    "StorageBackend",
    "InMemoryStorage",
    "FileStorage",
    "RedisStorage",
    "BucketStore",
    "create_storage",
    # Main classes
    "ClientIdentityResolver",
    "RateLimiter",
    "LimiterRegistry",
    "STORAGE_PREFIX",
    "derive_storage_key",
    "system_clock",
    "get_rate_limiter",
    "get_default_registry",
    "reset_default_registry",
]
