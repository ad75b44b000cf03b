"""Configuration module using Pydantic Settings."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Key/value store
    store_backend: str = "memory"  # "memory" or "redis"
    redis_url: str | None = None  # e.g. redis://localhost:6379/0
    redis_prefix: str = "usagegate:"  # Namespace for every key we write
    redis_max_connections: int = 20
    redis_socket_timeout: float = 0.5
    redis_connect_timeout: float = 2.0
    redis_reconnect_interval: float = 1.0  # Fail fast this long after a failed connect
    store_operation_timeout: float = 0.75  # Upper bound per round trip

    # Analysis cache
    cache_ttl_seconds: int = 86400  # Absolute TTL (1 day)
    cache_key_prefix: str = "analysis:"

    # Quota and rate-limit policy
    quota_config_path: str = "quota_config.json"
    rate_limit_requests: int = 100
    rate_limit_window_seconds: int = 60
    rate_limit_exempt: list[str] = []  # JSON list, e.g. ["admin-key"]

    # Logging
    log_level: str = "INFO"

    # Admin API server
    api_host: str = "0.0.0.0"
    api_port: int = 8000


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience function for quick access
settings = get_settings()
