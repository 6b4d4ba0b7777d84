"""Redis cache backend with transparent in-memory fallback.

Values are stored as JSON strings with a millisecond TTL (``SET ... PX``).
Every operation goes through :class:`RedisConnectionMonitor`; when Redis is
unreachable the call is served by an in-process cache instance instead of
raising, and reconnect attempts run in the background.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Iterable

from redis.asyncio import Redis

from app.adapters.cache.base import AbstractCacheBackend, CacheStats, compile_key_pattern
from app.adapters.health import HealthReport
from app.adapters.cache.in_memory import InMemoryCacheBackend
from app.adapters.redis_connection import RedisConnectionMonitor
from app.core.errors import BackendConnectionError, SerializationAppError
from app.core.logging import hash_identifier

logger = logging.getLogger(__name__)

SCAN_COUNT = 100
STATS_SAMPLE_KEYS = 100


class RedisCacheBackend(AbstractCacheBackend):
    """Cache backend on Redis, degrading to an in-memory cache on failure.

    Args:
        client: Async Redis client (``decode_responses=True``).
        fallback: In-memory cache serving requests while Redis is down.
        default_ttl_ms: TTL applied when ``set`` is called without one.
        key_prefix: Namespace of every cache key; a full ``clear()`` only
            deletes keys under it.
        fallback_to_memory: When False, reads miss and writes are dropped
            while Redis is down.
        **monitor_options: Timeout and reconnect settings forwarded to
            :class:`RedisConnectionMonitor`.
    """

    def __init__(
        self,
        client: Redis,
        *,
        fallback: InMemoryCacheBackend,
        default_ttl_ms: int = 300_000,
        key_prefix: str = "cache:",
        fallback_to_memory: bool = True,
        **monitor_options: Any,
    ) -> None:
        self._redis = client
        self._fallback = fallback
        self.default_ttl_ms = default_ttl_ms
        self.key_prefix = key_prefix
        self.fallback_to_memory = fallback_to_memory
        self.monitor = RedisConnectionMonitor(client, name="redis-cache", **monitor_options)
        self._hits = 0
        self._misses = 0
        self._sets = 0
        self._deletes = 0

    @property
    def fallback(self) -> InMemoryCacheBackend:
        return self._fallback

    async def get(self, key: str) -> Any | None:
        if self.monitor.connected:
            try:
                raw = await self.monitor.call(self._redis.get(key), "get")
            except BackendConnectionError as exc:
                self.monitor.mark_failed(exc, "get")
            else:
                return self._record_lookup(key, raw)

        if self.fallback_to_memory:
            return await self._fallback.get(key)
        return None

    async def set(self, key: str, value: Any, ttl_ms: int | None = None) -> None:
        ttl = ttl_ms if ttl_ms is not None else self.default_ttl_ms
        try:
            payload = _encode(key, value)
        except SerializationAppError as exc:
            logger.warning("cache.serialization_failed", extra={"cache_key": hash_identifier(key), "error_message": exc.message})
            return

        if self.monitor.connected:
            try:
                await self.monitor.call(self._redis.set(key, payload, px=max(1, int(ttl))), "set")
            except BackendConnectionError as exc:
                self.monitor.mark_failed(exc, "set")
            else:
                self._sets += 1
                return

        if self.fallback_to_memory:
            await self._fallback.set(key, value, ttl)

    async def delete(self, key: str) -> None:
        if self.monitor.connected:
            try:
                await self.monitor.call(self._redis.delete(key), "delete")
            except BackendConnectionError as exc:
                self.monitor.mark_failed(exc, "delete")
            else:
                self._deletes += 1
                return

        if self.fallback_to_memory:
            await self._fallback.delete(key)

    async def exists(self, key: str) -> bool:
        if self.monitor.connected:
            try:
                return bool(await self.monitor.call(self._redis.exists(key), "exists"))
            except BackendConnectionError as exc:
                self.monitor.mark_failed(exc, "exists")

        if self.fallback_to_memory:
            return await self._fallback.exists(key)
        return False

    async def clear(self, pattern: str | None = None) -> None:
        """Delete keys under the prefix, optionally filtered by a regex.

        Keys are listed with ``SCAN MATCH <prefix>*`` and filtered with
        ``re.search``. The in-memory fallback is cleared with the same pattern
        so stale entries cannot resurface during the next outage.

        Raises:
            ValidationAppError: If ``pattern`` is not a valid regular expression.
        """
        regex = compile_key_pattern(pattern)
        await self._fallback.clear(pattern)

        if not self.monitor.connected:
            return

        try:
            keys = await self._scan_keys(f"{self.key_prefix}*")
            if regex is not None:
                keys = [key for key in keys if regex.search(key)]
            if keys:
                await self.monitor.call(self._redis.delete(*keys), "delete")
        except BackendConnectionError as exc:
            self.monitor.mark_failed(exc, "clear")
            return

        logger.info("cache.cleared", extra={"pattern": pattern, "removed": len(keys), "backend": "redis"})

    async def stats(self) -> CacheStats:
        if self.monitor.connected:
            try:
                size = await self.monitor.call(self._redis.dbsize(), "dbsize")
                keys = await self._scan_keys(f"{self.key_prefix}*", limit=STATS_SAMPLE_KEYS)
            except BackendConnectionError as exc:
                self.monitor.mark_failed(exc, "stats")
            else:
                return CacheStats(hits=self._hits, misses=self._misses, size=int(size), keys=keys)

        return await self._fallback.stats()

    async def health_check(self) -> HealthReport:
        if self.monitor.connected:
            try:
                pong = await self.monitor.call(self._redis.ping(), "ping")
            except BackendConnectionError as exc:
                self.monitor.mark_failed(exc, "ping")
                return HealthReport(
                    status="unhealthy",
                    type="redis",
                    details={**self.monitor.status(), "fallback_available": self.fallback_to_memory},
                )
            lookups = self._hits + self._misses
            return HealthReport(
                status="healthy",
                type="redis",
                details={
                    **self.monitor.status(),
                    "ping": pong,
                    "fallback_available": self.fallback_to_memory,
                    "hits": self._hits,
                    "misses": self._misses,
                    "sets": self._sets,
                    "deletes": self._deletes,
                    "hit_ratio": self._hits / lookups if lookups else 0.0,
                },
            )

        # A health check while disconnected doubles as a reconnect trigger
        self.monitor.schedule_reconnect()
        fallback_health = await self._fallback.health_check()
        return HealthReport(
            status="degraded",
            type="memory-fallback" if self.fallback_to_memory else "redis",
            details={
                **fallback_health.details,
                **self.monitor.status(),
                "redis_status": "disconnected",
                "fallback_active": self.fallback_to_memory,
            },
        )

    async def mget(self, keys: Iterable[str]) -> list[Any | None]:
        keys = list(keys)
        if not keys:
            return []
        if self.monitor.connected:
            try:
                raws = await self.monitor.call(self._redis.mget(keys), "mget")
            except BackendConnectionError as exc:
                self.monitor.mark_failed(exc, "mget")
            else:
                return [self._record_lookup(key, raw) for key, raw in zip(keys, raws)]
        return await super().mget(keys)

    async def mset(self, items: Iterable[tuple[str, Any, int | None]]) -> None:
        items = list(items)
        if not items:
            return
        if self.monitor.connected:
            pipe = self._redis.pipeline(transaction=False)
            stored = 0
            for key, value, ttl_ms in items:
                try:
                    payload = _encode(key, value)
                except SerializationAppError:
                    logger.warning("cache.serialization_failed", extra={"cache_key": hash_identifier(key)})
                    continue
                ttl = ttl_ms if ttl_ms is not None else self.default_ttl_ms
                pipe.set(key, payload, px=max(1, int(ttl)))
                stored += 1
            try:
                await self.monitor.call(pipe.execute(), "pipeline")
            except BackendConnectionError as exc:
                self.monitor.mark_failed(exc, "mset")
            else:
                self._sets += stored
                return
        await super().mset(items)

    async def start(self) -> None:
        await self._fallback.start()
        await self.monitor.connect()

    async def close(self) -> None:
        await self._fallback.close()
        await self.monitor.close()

    async def force_reconnect(self) -> bool:
        return await self.monitor.force_reconnect()

    def connection_status(self) -> dict[str, Any]:
        return self.monitor.status()

    def _record_lookup(self, key: str, raw: str | None) -> Any | None:
        if raw is None:
            self._misses += 1
            return None
        try:
            value = _decode(key, raw)
        except SerializationAppError:
            self._misses += 1
            logger.warning("cache.corrupt_entry", extra={"cache_key": hash_identifier(key)})
            return None
        self._hits += 1
        return value

    async def _scan_keys(self, match: str, limit: int | None = None) -> list[str]:
        keys: list[str] = []
        cursor = 0
        while True:
            cursor, batch = await self.monitor.call(
                self._redis.scan(cursor=cursor, match=match, count=SCAN_COUNT), "scan"
            )
            keys.extend(batch)
            if limit is not None and len(keys) >= limit:
                return keys[:limit]
            if int(cursor) == 0:
                return keys


def _encode(key: str, value: Any) -> str:
    try:
        return json.dumps(value)
    except (TypeError, ValueError) as exc:
        raise SerializationAppError(
            code="cache_value_not_serializable",
            message="Value cannot be stored as JSON",
            details={"key": hash_identifier(key)},
        ) from exc


def _decode(key: str, raw: str | bytes) -> Any:
    try:
        return json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise SerializationAppError(
            code="cache_value_corrupt",
            message="Stored value is not valid JSON",
            details={"key": hash_identifier(key)},
        ) from exc
