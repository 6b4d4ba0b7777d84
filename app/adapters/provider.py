"""Backend selection shared by the cache and rate limiter factories."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

from redis.asyncio import Redis

from app.core.config import RedisSettings
from app.core.logging import mask_url

logger = logging.getLogger(__name__)


class BackendKind(str, Enum):
    MEMORY = "memory"
    REDIS = "redis"
    DISABLED = "disabled"


class FactoryPhase(str, Enum):
    UNINITIALIZED = "uninitialized"
    RESOLVING = "resolving"
    ACTIVE = "active"
    ACTIVE_FALLBACK = "active_fallback"


@dataclass(frozen=True)
class FactoryState:
    """Lifecycle of a factory's memoized instance.

    ``kind`` is the resolved backend while resolving or active; in the
    ``ACTIVE_FALLBACK`` phase it is always ``MEMORY``.
    """

    phase: FactoryPhase = FactoryPhase.UNINITIALIZED
    kind: BackendKind | None = None


@dataclass(frozen=True)
class ConfigValidation:
    valid: bool
    provider: BackendKind
    issues: list[str] = field(default_factory=list)


def resolve_backend_kind(enabled: bool, redis_settings: RedisSettings) -> BackendKind:
    """Pick the backend from configuration.

    Precedence: disabled flag, then an explicit ``use_redis`` switch, then the
    presence of a Redis URL; anything else runs in memory.
    """
    if not enabled:
        return BackendKind.DISABLED
    if redis_settings.use_redis is not None:
        return BackendKind.REDIS if redis_settings.use_redis else BackendKind.MEMORY
    if redis_settings.url:
        return BackendKind.REDIS
    return BackendKind.MEMORY


def redis_issues(redis_settings: RedisSettings) -> list[str]:
    issues = []
    if redis_settings.use_redis and not redis_settings.url:
        issues.append("REDIS_USE_REDIS is set but REDIS_URL is missing")
    if redis_settings.operation_timeout_seconds <= 0:
        issues.append("REDIS_OPERATION_TIMEOUT_SECONDS must be positive")
    if redis_settings.max_reconnect_attempts < 0:
        issues.append("REDIS_MAX_RECONNECT_ATTEMPTS must not be negative")
    return issues


def redis_summary(redis_settings: RedisSettings) -> dict[str, object]:
    """Redis settings safe to expose: credentials reduced to booleans."""
    return {
        "url_configured": bool(redis_settings.url),
        "password_configured": bool(redis_settings.password),
        "use_redis": redis_settings.use_redis,
        "fallback_to_memory": redis_settings.fallback_to_memory,
        "operation_timeout_seconds": redis_settings.operation_timeout_seconds,
        "max_reconnect_attempts": redis_settings.max_reconnect_attempts,
    }


def monitor_options(redis_settings: RedisSettings) -> dict[str, float | int]:
    return {
        "operation_timeout_seconds": redis_settings.operation_timeout_seconds,
        "max_reconnect_attempts": redis_settings.max_reconnect_attempts,
        "reconnect_base_delay_seconds": redis_settings.reconnect_base_delay_seconds,
        "reconnect_max_delay_seconds": redis_settings.reconnect_max_delay_seconds,
    }


def build_redis_client(redis_settings: RedisSettings) -> Redis:
    """Create a lazily connecting async client.

    Raises:
        ValueError: If the URL is missing or malformed.
    """
    if not redis_settings.url:
        raise ValueError("REDIS_URL is not configured")
    client = Redis.from_url(
        redis_settings.url,
        password=redis_settings.password,
        decode_responses=True,
    )
    logger.info(
        "redis.client_created",
        extra={"redis_endpoint": mask_url(redis_settings.url), "password_configured": bool(redis_settings.password)},
    )
    return client
