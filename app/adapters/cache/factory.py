"""Factory for cache backend instances.

The application builds one cache at startup (see ``app.core.app_factory``)
and injects it wherever it is needed; nothing here is a module-level global.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any

from app.adapters.cache.base import AbstractCacheBackend
from app.adapters.cache.in_memory import InMemoryCacheBackend
from app.adapters.cache.redis_backend import RedisCacheBackend
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
from app.core.config import Settings, split_csv
from app.core.errors import ConfigurationAppError

logger = logging.getLogger(__name__)

DEFAULT_TTL_MS = 300_000
DEFAULT_MAX_ENTRIES = 1000
DEFAULT_CLEANUP_INTERVAL_SECONDS = 60.0
DEFAULT_WARMUP_INTERVAL_SECONDS = 300.0


class CacheFactory:
    """Builds and memoizes the cache backend selected by configuration.

    Args:
        settings: Application settings (``cache`` and ``redis`` sections).
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._instance: AbstractCacheBackend | None = None
        self._state = FactoryState()

    @property
    def state(self) -> FactoryState:
        return self._state

    @property
    def provider(self) -> BackendKind:
        return resolve_backend_kind(self._settings.cache.enabled, self._settings.redis)

    def create(self) -> AbstractCacheBackend:
        """Return the memoized cache, building it on first use.

        Never raises: a backend that cannot be constructed is replaced by the
        in-memory store and a warning is logged.
        """
        if self._instance is not None:
            return self._instance

        kind = self.provider
        self._state = FactoryState(FactoryPhase.RESOLVING, kind)
        try:
            self._instance = self.create_specific(kind)
        except (ConfigurationAppError, ValueError) as exc:
            logger.warning(
                "cache.backend_fallback",
                extra={"requested": kind.value, "error_type": type(exc).__name__, "error_message": str(exc)},
            )
            self._instance = self._build_memory(safe_defaults=True)
            self._state = FactoryState(FactoryPhase.ACTIVE_FALLBACK, BackendKind.MEMORY)
        else:
            self._state = FactoryState(FactoryPhase.ACTIVE, kind)

        logger.info("cache.backend_selected", extra={"provider": self._state.kind.value, "phase": self._state.phase.value})
        return self._instance

    def create_specific(self, kind: BackendKind) -> AbstractCacheBackend:
        """Build a fresh backend of the given kind, bypassing memoization.

        Raises:
            ConfigurationAppError: If Redis is requested without a URL.
        """
        if kind is BackendKind.DISABLED:
            return InMemoryCacheBackend(
                max_entries=0,
                default_ttl_ms=self._settings.cache.default_ttl_ms,
                key_prefix=self._settings.cache.key_prefix,
            )
        if kind is BackendKind.MEMORY:
            return self._build_memory()

        redis_settings = self._settings.redis
        if not redis_settings.url:
            raise ConfigurationAppError(
                code="redis_url_missing",
                message="Redis cache requested but REDIS_URL is not configured",
                details={"hint": "Set REDIS_URL or REDIS_USE_REDIS=false"},
            )
        return RedisCacheBackend(
            build_redis_client(redis_settings),
            fallback=self._build_memory(),
            default_ttl_ms=self._settings.cache.default_ttl_ms,
            key_prefix=self._settings.cache.key_prefix,
            fallback_to_memory=redis_settings.fallback_to_memory,
            **monitor_options(redis_settings),
        )

    def validate_configuration(self) -> ConfigValidation:
        cfg = self._settings.cache
        issues = []
        if not cfg.enabled:
            issues.append("Caching is disabled (CACHE_ENABLED=false)")
        if cfg.max_entries <= 0:
            issues.append("CACHE_MAX_ENTRIES must be positive")
        if cfg.default_ttl_seconds <= 0:
            issues.append("CACHE_DEFAULT_TTL_SECONDS must be positive")
        if cfg.cleanup_interval_seconds <= 0 or cfg.warmup_interval_seconds <= 0:
            issues.append("CACHE_CLEANUP_INTERVAL_SECONDS and CACHE_WARMUP_INTERVAL_SECONDS must be positive")
        issues.extend(redis_issues(self._settings.redis))
        return ConfigValidation(valid=not issues, provider=self.provider, issues=issues)

    def get_configuration_summary(self) -> dict[str, Any]:
        cfg = self._settings.cache
        return {
            "provider": self.provider.value,
            "enabled": cfg.enabled,
            "default_ttl_seconds": cfg.default_ttl_seconds,
            "max_entries": cfg.max_entries,
            "key_prefix": cfg.key_prefix,
            "hot_key_markers": split_csv(cfg.hot_key_markers),
            "path_prefixes": split_csv(cfg.path_prefixes),
            "redis": redis_summary(self._settings.redis),
        }

    def get_instance(self) -> AbstractCacheBackend | None:
        return self._instance

    def reset(self) -> None:
        self._instance = None
        self._state = FactoryState()

    def _build_memory(self, *, safe_defaults: bool = False) -> InMemoryCacheBackend:
        """In-memory store from the cache settings.

        With ``safe_defaults`` every invalid setting is replaced by its default
        so the fallback store can always be built.
        """
        cfg = self._settings.cache
        ttl_ms = cfg.default_ttl_ms
        max_entries = cfg.max_entries
        cleanup_interval = cfg.cleanup_interval_seconds
        warmup_interval = cfg.warmup_interval_seconds
        if safe_defaults:
            ttl_ms = ttl_ms if ttl_ms > 0 else DEFAULT_TTL_MS
            max_entries = max_entries if max_entries >= 0 else DEFAULT_MAX_ENTRIES
            cleanup_interval = cleanup_interval if cleanup_interval > 0 else DEFAULT_CLEANUP_INTERVAL_SECONDS
            warmup_interval = warmup_interval if warmup_interval > 0 else DEFAULT_WARMUP_INTERVAL_SECONDS
        return InMemoryCacheBackend(
            default_ttl_ms=ttl_ms,
            max_entries=max_entries,
            key_prefix=cfg.key_prefix,
            hot_key_markers=split_csv(cfg.hot_key_markers),
            cleanup_interval_seconds=cleanup_interval,
            warmup_interval_seconds=warmup_interval,
        )


async def get_cache_health(cache: AbstractCacheBackend) -> dict[str, Any]:
    """Round-trip a sentinel key through the cache and report the outcome.

    Returns:
        Dict with ``status``, ``provider``, ``latency_ms``, ``stats`` and the
        backend's own health report.
    """
    sentinel_key = f"{cache.key_prefix}health-check:{uuid.uuid4().hex}"
    sentinel_value = {"health_check": True}
    start = time.perf_counter()
    await cache.set(sentinel_key, sentinel_value, 10_000)
    read_back = await cache.get(sentinel_key)
    await cache.delete(sentinel_key)
    latency_ms = (time.perf_counter() - start) * 1000

    report = await cache.health_check()
    stats = await cache.stats()
    status = report.status
    if status == "healthy" and read_back != sentinel_value and report.type != "disabled":
        status = "degraded"
    return {
        "status": status,
        "provider": report.type,
        "latency_ms": round(latency_ms, 2),
        "stats": {"hits": stats.hits, "misses": stats.misses, "size": stats.size},
        "details": report.details,
    }
