"""
Configuration for the CampusMind API.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_prefix="CAMPUSMIND_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Environment
    env: str = "development"
    debug: bool = True

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    allowed_origins: str = "*"  # Comma-separated origins, or "*" for all

    # Redis (shared cache). Both flags must be set, otherwise in-memory only
    redis_enabled: bool = False
    redis_url: str = ""
    redis_socket_timeout: float = 5.0

    # Key store
    cache_default_ttl_seconds: int = 3600
    cache_sweep_interval_seconds: int = 60

    # Rate Limiting
    rate_limit_enabled: bool = True
    rate_limit_backend: str = "memory"  # "memory" (per-process) or "cache" (key store)
    rate_limit_default_window_ms: int = 60_000
    rate_limit_default_max: int = 100
    rate_limit_cleanup_probability: float = 0.01

    # Per-IP ceiling applied before routing
    ip_rate_limit_enabled: bool = False
    ip_rate_limit_window_ms: int = 60_000
    ip_rate_limit_max: int = 1000

    # Operations
    metrics_enabled: bool = True

    @property
    def use_redis(self) -> bool:
        return self.redis_enabled and bool(self.redis_url)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
