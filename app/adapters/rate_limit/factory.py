"""Factory for rate limiter instances."""

from __future__ import annotations

import logging
import time
from typing import Any

from app.adapters.provider import (
    BackendKind,
    ConfigValidation,
    FactoryPhase,
    FactoryState,
    build_redis_client,
    monitor_options,
    redis_issues,
    redis_summary,
    resolve_backend_kind,
)
from app.adapters.rate_limit.base import AbstractRateLimiter, RateLimitRule, RateLimitType
from app.adapters.rate_limit.in_memory import InMemoryFixedWindowRateLimiter
from app.adapters.rate_limit.redis_backend import RedisSlidingWindowRateLimiter
from app.core.config import RateLimitSettings, Settings, split_csv
from app.core.errors import ConfigurationAppError

logger = logging.getLogger(__name__)

HEALTHY_LATENCY_MS = 50
DEGRADED_LATENCY_MS = 200
DEFAULT_CLEANUP_INTERVAL_SECONDS = 60.0


def anonymous_rule(cfg: RateLimitSettings) -> RateLimitRule:
    return RateLimitRule(
        identifier="anonymous",
        limit=cfg.anonymous_limit,
        window_ms=cfg.window_ms,
        type=RateLimitType.IP,
    )


def authenticated_rule(cfg: RateLimitSettings) -> RateLimitRule:
    return RateLimitRule(
        identifier="authenticated",
        limit=cfg.authenticated_limit,
        window_ms=cfg.window_ms,
        type=RateLimitType.USER,
    )


class RateLimiterFactory:
    """Builds and memoizes the rate limiter selected by configuration.

    A disabled limiter still resolves to the in-memory implementation so the
    admin routes keep working; the middleware is what skips enforcement.
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._instance: AbstractRateLimiter | None = None
        self._state = FactoryState()

    @property
    def state(self) -> FactoryState:
        return self._state

    @property
    def provider(self) -> BackendKind:
        return resolve_backend_kind(self._settings.rate_limit.enabled, self._settings.redis)

    def create(self) -> AbstractRateLimiter:
        if self._instance is not None:
            return self._instance

        kind = self.provider
        self._state = FactoryState(FactoryPhase.RESOLVING, kind)
        try:
            self._instance = self.create_specific(kind)
        except (ConfigurationAppError, ValueError) as exc:
            logger.warning(
                "rate_limit.backend_fallback",
                extra={"requested": kind.value, "error_type": type(exc).__name__, "error_message": str(exc)},
            )
            self._instance = self._build_memory(safe_defaults=True)
            self._state = FactoryState(FactoryPhase.ACTIVE_FALLBACK, BackendKind.MEMORY)
        else:
            self._state = FactoryState(FactoryPhase.ACTIVE, kind)

        logger.info(
            "rate_limit.backend_selected",
            extra={"provider": self._state.kind.value, "phase": self._state.phase.value},
        )
        return self._instance

    def create_specific(self, kind: BackendKind) -> AbstractRateLimiter:
        """Build a fresh limiter of the given kind, bypassing memoization.

        Raises:
            ConfigurationAppError: If Redis is requested without a URL.
        """
        if kind is not BackendKind.REDIS:
            return self._build_memory()

        redis_settings = self._settings.redis
        if not redis_settings.url:
            raise ConfigurationAppError(
                code="redis_url_missing",
                message="Redis rate limiter requested but REDIS_URL is not configured",
                details={"hint": "Set REDIS_URL or REDIS_USE_REDIS=false"},
            )
        return RedisSlidingWindowRateLimiter(
            build_redis_client(redis_settings),
            fallback=self._build_memory(),
            default_rule=anonymous_rule(self._settings.rate_limit),
            fallback_to_memory=redis_settings.fallback_to_memory,
            **monitor_options(redis_settings),
        )

    def validate_configuration(self) -> ConfigValidation:
        cfg = self._settings.rate_limit
        issues = []
        if not cfg.enabled:
            issues.append("Rate limiting is disabled (RATE_LIMIT_ENABLED=false)")
        if cfg.anonymous_limit < 0:
            issues.append("RATE_LIMIT_ANONYMOUS_LIMIT must not be negative")
        if cfg.authenticated_limit < 0:
            issues.append("RATE_LIMIT_AUTHENTICATED_LIMIT must not be negative")
        if cfg.window_seconds <= 0:
            issues.append("RATE_LIMIT_WINDOW_SECONDS must be positive")
        if cfg.cleanup_interval_seconds <= 0:
            issues.append("RATE_LIMIT_CLEANUP_INTERVAL_SECONDS must be positive")
        issues.extend(redis_issues(self._settings.redis))
        return ConfigValidation(valid=not issues, provider=self.provider, issues=issues)

    def get_configuration_summary(self) -> dict[str, Any]:
        cfg = self._settings.rate_limit
        return {
            "provider": self.provider.value,
            "enabled": cfg.enabled,
            "anonymous_limit": cfg.anonymous_limit,
            "authenticated_limit": cfg.authenticated_limit,
            "window_seconds": cfg.window_seconds,
            "standard_headers": cfg.standard_headers,
            "legacy_headers": cfg.legacy_headers,
            "skip_successful_requests": cfg.skip_successful_requests,
            "skip_failed_requests": cfg.skip_failed_requests,
            "path_prefixes": split_csv(cfg.path_prefixes),
            "redis": redis_summary(self._settings.redis),
        }

    def get_instance(self) -> AbstractRateLimiter | None:
        return self._instance

    def reset(self) -> None:
        self._instance = None
        self._state = FactoryState()

    def _build_memory(self, *, safe_defaults: bool = False) -> InMemoryFixedWindowRateLimiter:
        interval = self._settings.rate_limit.cleanup_interval_seconds
        if safe_defaults and interval <= 0:
            interval = DEFAULT_CLEANUP_INTERVAL_SECONDS
        return InMemoryFixedWindowRateLimiter(cleanup_interval_seconds=interval)


async def get_rate_limiter_health(limiter: AbstractRateLimiter, check_rule: RateLimitRule | None = None) -> dict[str, Any]:
    """Time a read-only ``check_limit`` and grade the latency.

    Under 50 ms is healthy, under 200 ms degraded, anything slower unhealthy.
    A backend that reports itself unhealthy stays unhealthy.
    """
    rule = check_rule or RateLimitRule(identifier="health", limit=1, window_ms=60_000)
    start = time.perf_counter()
    await limiter.check_limit("health-check", rule)
    latency_ms = (time.perf_counter() - start) * 1000

    if latency_ms < HEALTHY_LATENCY_MS:
        status = "healthy"
    elif latency_ms < DEGRADED_LATENCY_MS:
        status = "degraded"
    else:
        status = "unhealthy"

    report = await limiter.health_check()
    if report.status == "unhealthy" or (report.status == "degraded" and status == "healthy"):
        status = report.status
    return {
        "status": status,
        "provider": report.type,
        "latency_ms": round(latency_ms, 2),
        "details": report.details,
    }
