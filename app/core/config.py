"""Application configuration using Pydantic Settings.

Configuration is environment-aware:
- APP_ENV determines which .env file to load
- Supports: development, testing, staging, production
- Each environment has its own .env.{environment} file
"""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Determine which environment to load (default: development)
APP_ENV = os.getenv("APP_ENV", "development")

# Project root (so .env resolution doesn't depend on current working directory)
PROJECT_ROOT = Path(__file__).resolve().parents[2]

# Map environments to their respective .env files (relative to PROJECT_ROOT)
ENV_FILE_MAP = {
    "development": ".env.development",
    "testing": ".env.testing",
    "staging": ".env.staging",
    "production": ".env.production",
}

# Select the .env file for the current environment
_env_filename = ENV_FILE_MAP.get(APP_ENV, ".env.development")
_env_path = PROJECT_ROOT / _env_filename

# Only load from file if it exists (production might inject via env vars only)
_env_file = str(_env_path) if _env_path.is_file() else None


# Load .env file early to populate os.environ before creating nested settings
# This is necessary because Pydantic nested BaseSettings don't inherit env_file
if _env_file:
    from dotenv import load_dotenv
    load_dotenv(_env_file, override=True)


def _build_log_settings() -> "LogSettings":
    return LogSettings()


def _build_app_settings() -> "AppSettings":
    return AppSettings()


def _build_cache_settings() -> "CacheSettings":
    return CacheSettings()


def _build_rate_limit_settings() -> "RateLimitSettings":
    return RateLimitSettings()


def _build_redis_settings() -> "RedisSettings":
    return RedisSettings()


class LogSettings(BaseSettings):
    """Logging configuration."""

    level: str = Field("INFO", description="Root log level")
    format: str = Field("json", description="Log format: json or plain")
    output: str = Field("stdout", description="Log output: stdout or file")
    file_path: str | None = Field(None, description="Log file path when output=file")
    max_bytes: int = Field(
        10 * 1024 * 1024,
        description="Rotate log file after this many bytes (0 disables rotation)",
    )
    backup_count: int = Field(5, description="Number of rotated log files to keep")
    request_id_header: str = Field(
        "X-Request-ID",
        description="Header used to read and propagate the request correlation id",
    )

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        case_sensitive=False,
    )


class AppSettings(BaseSettings):
    """Application-wide configuration."""

    debug: bool = Field(
        False,
        description="Enable debug mode with verbose logging",
    )
    api_key_required: bool = Field(
        True,
        description="Whether API key authentication is required for admin endpoints",
    )
    api_keys: str | None = Field(
        None,
        description="Comma-separated list of valid API keys for authentication",
    )

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        case_sensitive=False,
    )


class CacheSettings(BaseSettings):
    """Response cache configuration.

    TTLs are configured in seconds and converted to milliseconds by the
    cache engine, which works in milliseconds throughout.
    """

    enabled: bool = Field(True, description="Enable response caching")
    default_ttl_seconds: int = Field(
        300,
        description="Default time-to-live for cached responses",
    )
    max_entries: int = Field(
        1000,
        description="Maximum number of entries kept by the in-memory cache",
    )
    key_prefix: str = Field(
        "cache:",
        description="Prefix shared by every cache key (scopes a full clear on Redis)",
    )
    cleanup_interval_seconds: float = Field(
        60.0,
        description="Interval of the expired-entry sweep",
    )
    warmup_interval_seconds: float = Field(
        300.0,
        description="Interval of the hot-key TTL extension task",
    )
    hot_key_markers: str = Field(
        "timezone,tz-data",
        description="Comma-separated substrings marking keys eligible for TTL warmup",
    )
    path_prefixes: str = Field(
        "/v1/",
        description="Comma-separated path prefixes the response cache applies to",
    )

    model_config = SettingsConfigDict(
        env_prefix="CACHE_",
        case_sensitive=False,
    )

    @property
    def default_ttl_ms(self) -> int:
        return self.default_ttl_seconds * 1000


class RateLimitSettings(BaseSettings):
    """Rate limiting configuration for anonymous and authenticated callers."""

    enabled: bool = Field(True, description="Enable rate limiting")
    anonymous_limit: int = Field(
        100,
        description="Requests allowed per window for anonymous (IP-scoped) callers",
    )
    authenticated_limit: int = Field(
        1000,
        description="Requests allowed per window for authenticated callers",
    )
    window_seconds: int = Field(
        60,
        description="Rate limit window size in seconds",
    )
    standard_headers: bool = Field(
        True,
        description="Emit RateLimit-Limit/Remaining/Reset headers",
    )
    legacy_headers: bool = Field(
        False,
        description="Emit X-RateLimit-* headers",
    )
    skip_successful_requests: bool = Field(
        False,
        description="Do not count requests that end with a 2xx status",
    )
    skip_failed_requests: bool = Field(
        False,
        description="Do not count requests that end with a 4xx/5xx status",
    )
    cleanup_interval_seconds: float = Field(
        60.0,
        description="Interval of the expired-counter sweep",
    )
    path_prefixes: str = Field(
        "/v1/",
        description="Comma-separated path prefixes the rate limiter applies to",
    )

    model_config = SettingsConfigDict(
        env_prefix="RATE_LIMIT_",
        case_sensitive=False,
    )

    @property
    def window_ms(self) -> int:
        return self.window_seconds * 1000


class RedisSettings(BaseSettings):
    """Redis connection configuration shared by the cache and the limiter."""

    url: str | None = Field(
        None,
        description="Redis connection URL (e.g. redis://localhost:6379/0)",
    )
    password: str | None = Field(
        None,
        description="Redis password, when not embedded in the URL",
    )
    use_redis: bool | None = Field(
        None,
        description="Explicitly select (true) or reject (false) the Redis backend",
    )
    fallback_to_memory: bool = Field(
        True,
        description="Serve from the in-memory store while Redis is unreachable",
    )
    operation_timeout_seconds: float = Field(
        0.5,
        description="Timeout applied to every Redis round trip",
    )
    max_reconnect_attempts: int = Field(
        3,
        description="Reconnect attempts scheduled after a failure before giving up",
    )
    reconnect_base_delay_seconds: float = Field(
        1.0,
        description="Base delay of the exponential reconnect backoff",
    )
    reconnect_max_delay_seconds: float = Field(
        8.0,
        description="Upper bound of the reconnect backoff delay",
    )

    model_config = SettingsConfigDict(
        env_prefix="REDIS_",
        case_sensitive=False,
    )


class Settings(BaseSettings):
    """Main application settings container.

    Automatically loads from the appropriate .env.{APP_ENV} file.

    Environments:
    - development: Local development (DEBUG=true)
    - testing: Automated tests (uses .env.testing)
    - staging: Pre-production (uses .env.staging)
    - production: Production deployment (uses .env.production)
    """

    app_env: str = APP_ENV
    log: LogSettings = Field(default_factory=_build_log_settings)
    app: AppSettings = Field(default_factory=_build_app_settings)
    cache: CacheSettings = Field(default_factory=_build_cache_settings)
    rate_limit: RateLimitSettings = Field(default_factory=_build_rate_limit_settings)
    redis: RedisSettings = Field(default_factory=_build_redis_settings)

    model_config = SettingsConfigDict(
        case_sensitive=False,
    )


def split_csv(value: str | None) -> list[str]:
    """Split a comma-separated setting into trimmed, non-empty items."""
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def get_cache_ttl_ms(endpoint: str | None, cache_settings: CacheSettings | None = None) -> int:
    """Resolve the cache TTL for an endpoint name (last path segment).

    Args:
        endpoint: Endpoint name such as ``convert`` or ``timezones``.
        cache_settings: Cache settings; defaults to the global settings.

    Returns:
        TTL in milliseconds.
    """
    cfg = cache_settings or settings.cache
    if endpoint == "batch-convert":
        return 5 * 60 * 1000
    if endpoint in ("timezone-info", "timezones"):
        return 24 * 60 * 60 * 1000
    if endpoint == "health":
        return 60 * 1000
    return cfg.default_ttl_ms


# Global settings instance - composed from domain-specific settings
# Nested settings are created via default_factory so env loading works.
settings = Settings()
