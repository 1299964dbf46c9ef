"""Key-value storage backends and the bucket persistence adapter.

Backends raise StorageError on I/O failure. ``BucketStore`` sits on top
of a backend and never lets a storage or parse failure reach the limiter:
a missing or corrupt record simply yields a fresh bucket.
"""

import hashlib
import json
import os
import re
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional

import redis

from governor.app.core.config import settings
from governor.app.core.logging import get_log_context, get_logger
from governor.app.exceptions import StorageError
from governor.app.rate_limit.models import BucketState, Environment, RateLimitConfig

logger = get_logger(__name__)


class StorageBackend(ABC):
    """Abstract base class for string key-value storage."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the stored value, or None if absent."""
        pass

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """Store a value, replacing any previous one."""
        pass

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove a value. Missing keys are ignored."""
        pass

    @abstractmethod
    def clear(self) -> None:
        """Remove every value owned by this backend."""
        pass


class InMemoryStorage(StorageBackend):
    """Process-local storage.

    Used as session-scoped storage for the client identifier and as the
    default bucket storage. Data is lost when the process exits.
    """

    def __init__(self) -> None:
        self._data: Dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def __len__(self) -> int:
        return len(self._data)


_UNSAFE_FILENAME = re.compile(r"[^A-Za-z0-9._-]")


class FileStorage(StorageBackend):
    """Durable storage with one JSON document per key in a directory.

    Writes go through a temporary file and ``os.replace`` so a crash never
    leaves a half-written record behind.
    """

    SUFFIX = ".json"

    def __init__(self, directory: str | os.PathLike) -> None:
        self._directory = Path(directory)

    @property
    def directory(self) -> Path:
        return self._directory

    def _path(self, key: str) -> Path:
        name = _UNSAFE_FILENAME.sub("_", key)
        if name != key:
            # keep sanitized names distinct, e.g. "a:b" and "a_b"
            name = f"{name}-{hashlib.sha256(key.encode()).hexdigest()[:8]}"
        return self._directory / f"{name}{self.SUFFIX}"

    def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageError(key, f"Failed to read {path}: {e}") from e

    def set(self, key: str, value: str) -> None:
        path = self._path(key)
        tmp_path = path.with_name(path.name + ".tmp")
        try:
            self._directory.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(value, encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as e:
            raise StorageError(key, f"Failed to write {path}: {e}") from e

    def delete(self, key: str) -> None:
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(key, f"Failed to delete: {e}") from e

    def clear(self) -> None:
        if not self._directory.exists():
            return
        for path in self._directory.glob(f"*{self.SUFFIX}"):
            try:
                path.unlink()
            except OSError as e:
                raise StorageError(path.stem, f"Failed to delete: {e}") from e


class RedisStorage(StorageBackend):
    """Redis-backed storage shared by every process using the same prefix.

    Example:
        >>> storage = RedisStorage("redis://localhost:6379/0")
        >>> storage.set("rate_limit_QUERY", "{}")
    """

    def __init__(
        self,
        redis_url: Optional[str] = None,
        client: Optional[Any] = None,
        prefix: str = "",
        socket_timeout: Optional[float] = None,
        connect_timeout: Optional[float] = None,
    ) -> None:
        """Initialize Redis storage.

        Args:
            redis_url: Redis connection URL (defaults to settings.redis_url)
            client: Optional pre-built redis client instance
            prefix: Namespace prepended to every key, also scopes clear()
            socket_timeout: Read/write timeout in seconds (defaults to settings)
            connect_timeout: Connect timeout in seconds (defaults to settings)
        """
        self._redis_url = redis_url or settings.redis_url
        self._socket_timeout = socket_timeout or settings.redis_socket_timeout
        self._connect_timeout = connect_timeout or settings.redis_connect_timeout
        self._redis = client
        self._prefix = prefix

    def _get_client(self) -> Any:
        if self._redis is None:
            self._redis = redis.Redis.from_url(
                self._redis_url,
                socket_timeout=self._socket_timeout,
                socket_connect_timeout=self._connect_timeout,
            )
        return self._redis

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def get(self, key: str) -> Optional[str]:
        try:
            value = self._get_client().get(self._key(key))
        except redis.RedisError as e:
            raise StorageError(key, f"Redis read failed: {e}") from e
        if value is None:
            return None
        return value.decode("utf-8") if isinstance(value, bytes) else str(value)

    def set(self, key: str, value: str) -> None:
        try:
            self._get_client().set(self._key(key), value)
        except redis.RedisError as e:
            raise StorageError(key, f"Redis write failed: {e}") from e

    def delete(self, key: str) -> None:
        try:
            self._get_client().delete(self._key(key))
        except redis.RedisError as e:
            raise StorageError(key, f"Redis delete failed: {e}") from e

    def clear(self) -> None:
        """Delete every key under this storage's prefix.

        Without a prefix nothing is deleted, so a shared database is never
        flushed by accident.
        """
        if not self._prefix:
            return
        client = self._get_client()
        try:
            keys = list(client.scan_iter(match=f"{self._prefix}*"))
            if keys:
                client.delete(*keys)
        except redis.RedisError as e:
            raise StorageError(self._prefix, f"Redis clear failed: {e}") from e

    def close(self) -> None:
        """Close the Redis connection."""
        if self._redis is not None:
            self._redis.close()
            self._redis = None


def create_storage(
    backend: Optional[str] = None,
    path: Optional[str] = None,
    redis_url: Optional[str] = None,
) -> StorageBackend:
    """Create the bucket storage backend selected by settings.

    Args:
        backend: 'memory', 'file' or 'redis' (defaults to settings)
        path: Directory for the file backend
        redis_url: Redis connection URL for the redis backend

    Returns:
        A StorageBackend instance.
    """
    backend = (backend or settings.rate_limit_storage_backend).lower()
    if backend == "file":
        return FileStorage(path or settings.rate_limit_storage_path)
    if backend == "redis":
        return RedisStorage(redis_url or settings.redis_url, prefix="governor:")
    if backend == "memory":
        return InMemoryStorage()
    raise ValueError(f"Unknown storage backend: {backend}")


class BucketStore:
    """Loads and saves BucketState records for the limiter.

    Load never raises: a miss, an unreadable backend, a corrupt record or an
    expired record all produce a fresh bucket. Save is best-effort: failures
    are swallowed, and logged only in development mode.
    """

    def __init__(
        self,
        storage: StorageBackend,
        environment: Environment = Environment.PRODUCTION,
    ) -> None:
        self._storage = storage
        self._environment = environment

    @property
    def storage(self) -> StorageBackend:
        return self._storage

    def _warn(self, message: str, key: str, error: Exception) -> None:
        if self._environment is Environment.DEVELOPMENT:
            logger.warning(
                f"{message}: {error}",
                extra=get_log_context(storage_key=key),
            )

    def load(self, key: str, config: RateLimitConfig, now: int) -> BucketState:
        """Load a bucket, pruning its window to ``now``."""
        try:
            raw = self._storage.get(key)
        except StorageError as e:
            self._warn("Failed to load rate limit bucket", key, e)
            return BucketState.fresh(config, now)

        if raw is None:
            return BucketState.fresh(config, now)

        try:
            state = BucketState.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError, OverflowError) as e:
            self._warn("Discarding corrupt rate limit bucket", key, e)
            return BucketState.fresh(config, now)

        # entries stamped ahead of this clock are dropped, not waited out
        cutoff = now - config.window_ms
        state.requests = [t for t in state.requests if cutoff < t <= now]
        if state.last_request is not None and state.last_request > now:
            state.last_request = state.requests[-1] if state.requests else None
        if not state.requests and state.last_refill <= cutoff and not _spacing_pending(state, config, now):
            return BucketState.fresh(config, now)

        state.tokens = min(float(config.max_tokens), max(0.0, state.tokens))
        state.last_refill = min(state.last_refill, now)
        return state

    def save(self, key: str, state: BucketState) -> None:
        try:
            self._storage.set(key, json.dumps(state.to_dict()))
        except StorageError as e:
            self._warn("Failed to save rate limit bucket", key, e)


def _spacing_pending(state: BucketState, config: RateLimitConfig, now: int) -> bool:
    """True while the last accepted request still blocks the spacing gate."""
    if not config.min_delay_ms or state.last_request is None:
        return False
    return now - state.last_request < config.min_delay_ms
