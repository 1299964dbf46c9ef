"""Registry of live rate limiters.

A registry hands out one RateLimiter per (endpoint key, config override)
pair and keeps it for its own lifetime, so repeated calls from the same
call site share bucket state without re-reading storage. Registries are
plain objects: tests build isolated ones, applications usually share the
default registry built from settings.
"""

import json
import threading
from typing import Any, Dict, Mapping, Optional

from governor.app.core.config import Settings, settings
from governor.app.core.logging import get_logger
from governor.app.rate_limit.identity import ClientIdentityResolver
from governor.app.rate_limit.limiter import STORAGE_PREFIX, Clock, RateLimiter, system_clock
from governor.app.rate_limit.models import Environment
from governor.app.rate_limit.storage import (
    BucketStore,
    InMemoryStorage,
    StorageBackend,
    create_storage,
)

logger = get_logger(__name__)


class LimiterRegistry:
    """Lazily creates and memoizes RateLimiter instances."""

    def __init__(
        self,
        storage: Optional[StorageBackend] = None,
        session_storage: Optional[StorageBackend] = None,
        environment: Environment = Environment.PRODUCTION,
        clock: Clock = system_clock,
        trusted_client_id: Optional[str] = None,
        prefix: str = STORAGE_PREFIX,
    ):
        """Initialize the registry.

        Args:
            storage: Durable bucket storage (defaults to in-memory)
            session_storage: Session-scoped storage for the client identifier
            environment: Passed to every limiter
            clock: Epoch-millisecond clock passed to every limiter
            trusted_client_id: Server-verified network identifier, if any
            prefix: Storage key prefix
        """
        self.environment = environment
        self._store = BucketStore(storage if storage is not None else InMemoryStorage(), environment)
        self._identity = ClientIdentityResolver(session_storage, trusted_client_id)
        self._clock = clock
        self._prefix = prefix
        self._limiters: Dict[str, RateLimiter] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None, **kwargs: Any) -> "LimiterRegistry":
        """Build a registry from Settings; keyword arguments take priority."""
        config = config or settings
        kwargs.setdefault(
            "storage",
            create_storage(
                config.rate_limit_storage_backend,
                path=config.rate_limit_storage_path,
                redis_url=config.redis_url,
            ),
        )
        kwargs.setdefault("environment", Environment(config.environment))
        kwargs.setdefault("trusted_client_id", config.trusted_client_id or None)
        kwargs.setdefault("prefix", config.rate_limit_storage_prefix)
        return cls(**kwargs)

    @property
    def store(self) -> BucketStore:
        return self._store

    @staticmethod
    def cache_key(endpoint_key: str, config_override: Optional[Mapping[str, Any]] = None) -> str:
        return f"{endpoint_key}_{json.dumps(dict(config_override or {}), sort_keys=True)}"

    def get(
        self,
        endpoint_key: str,
        config_override: Optional[Mapping[str, Any]] = None,
    ) -> RateLimiter:
        """Return the limiter for this endpoint and override, creating it once."""
        key = self.cache_key(endpoint_key, config_override)
        with self._lock:
            limiter = self._limiters.get(key)
            if limiter is None:
                limiter = RateLimiter(
                    endpoint_key,
                    config_override,
                    store=self._store,
                    identity=self._identity,
                    environment=self.environment,
                    clock=self._clock,
                    prefix=self._prefix,
                )
                self._limiters[key] = limiter
                logger.debug(f"Created rate limiter for {key}")
            return limiter

    def clear(self) -> None:
        """Forget every limiter; persisted buckets are left untouched."""
        with self._lock:
            self._limiters.clear()

    def __len__(self) -> int:
        return len(self._limiters)

    def __contains__(self, cache_key: object) -> bool:
        return cache_key in self._limiters


# Global registry instance (singleton pattern)
_default_registry: Optional[LimiterRegistry] = None


def get_default_registry() -> LimiterRegistry:
    """Get or create the process-wide registry built from settings."""
    global _default_registry
    if _default_registry is None:
        _default_registry = LimiterRegistry.from_settings()
    return _default_registry


def reset_default_registry() -> None:
    """Drop the process-wide registry.

    This is primarily useful for testing.
    """
    global _default_registry
    _default_registry = None


def get_rate_limiter(
    endpoint_key: str,
    config_override: Optional[Mapping[str, Any]] = None,
    registry: Optional[LimiterRegistry] = None,
) -> RateLimiter:
    """Return the memoized limiter for an endpoint class.

    Example:
        >>> limiter = get_rate_limiter("AUTH_LOGIN")
        >>> limiter.attempt().allowed
        True
    """
    return (registry or get_default_registry()).get(endpoint_key, config_override)
