from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


_ENVIRONMENTS = ("development", "production")
_STORAGE_BACKENDS = ("memory", "file", "redis")


class Settings(BaseSettings):
    """Governor settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    """

    # development keeps storage keys readable and logs storage failures
    environment: str = "production"

    # Bucket persistence
    rate_limit_storage_backend: str = "memory"  # memory | file | redis
    rate_limit_storage_path: str = ".governor"
    rate_limit_storage_prefix: str = "rate_limit_"

    # Redis settings (only used by the redis storage backend)
    redis_url: str = "redis://localhost:6379/0"
    # Seconds; bucket reads and writes run synchronously inside attempt()
    redis_socket_timeout: float = 0.25
    redis_connect_timeout: float = 0.25

    # Network identifier already verified by a trusted reverse proxy.
    # Empty means the per-session identifier is used.
    trusted_client_id: str = ""

    # Backoff defaults (milliseconds)
    backoff_base_delay_ms: int = 1000
    backoff_max_delay_ms: int = 30000
    backoff_jitter_factor: float = 0.3

    # Rate-limited fetch
    fetch_max_retries: int = 3

    # HTTP client connection pool settings
    httpx_connect_timeout: float = 10.0
    httpx_read_timeout: float = 30.0
    httpx_write_timeout: float = 10.0
    httpx_pool_timeout: float = 5.0
    httpx_max_connections: int = 20
    httpx_max_keepalive_connections: int = 10
    httpx_keepalive_expiry: float = 30.0

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate the environment name."""
        v = v.strip().lower()
        if v not in _ENVIRONMENTS:
            raise ValueError(f"environment must be one of {_ENVIRONMENTS}")
        return v

    @field_validator("rate_limit_storage_backend")
    @classmethod
    def validate_storage_backend(cls, v: str) -> str:
        """Validate the storage backend name."""
        v = v.strip().lower()
        if v not in _STORAGE_BACKENDS:
            raise ValueError(f"rate_limit_storage_backend must be one of {_STORAGE_BACKENDS}")
        return v

    @field_validator("backoff_base_delay_ms", "backoff_max_delay_ms")
    @classmethod
    def validate_delay_positive(cls, v: int) -> int:
        """Validate backoff delays are positive."""
        if v < 1:
            raise ValueError("Backoff delays must be at least 1 ms")
        return v

    @field_validator("backoff_jitter_factor")
    @classmethod
    def validate_jitter_factor(cls, v: float) -> float:
        if not 0 <= v <= 1:
            raise ValueError("backoff_jitter_factor must be between 0 and 1")
        return v

    @field_validator("fetch_max_retries")
    @classmethod
    def validate_max_retries(cls, v: int) -> int:
        if v < 0:
            raise ValueError("fetch_max_retries must not be negative")
        return v

    @field_validator(
        "httpx_connect_timeout",
        "httpx_read_timeout",
        "httpx_write_timeout",
        "httpx_pool_timeout",
        "redis_socket_timeout",
        "redis_connect_timeout",
    )
    @classmethod
    def validate_timeout_positive(cls, v: float) -> float:
        """Validate timeout values are positive."""
        if v <= 0:
            raise ValueError("Timeout values must be positive")
        return v

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Global settings instance
settings = Settings()
