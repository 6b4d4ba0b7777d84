"""In-process TTL cache with LRU eviction.

Notes:
- Per-process only: each worker keeps its own entries.
- Thread-safe: uses a lock around shared state (TestClient and sync
  endpoints may touch the store from worker threads).
- Capacity 0 turns the store into a no-op (caching disabled).
"""

from __future__ import annotations

import heapq
import json
import logging
import threading
import time
from typing import Any, Callable, Iterable

from app.adapters.cache.base import AbstractCacheBackend, CacheEntry, CacheStats, compile_key_pattern
from app.adapters.health import HealthReport
from app.core.logging import hash_identifier
from app.utils.periodic import PeriodicTask

logger = logging.getLogger(__name__)

WARMUP_TTL_MS = 24 * 60 * 60 * 1000
EVICTION_FRACTION = 0.1


class InMemoryCacheBackend(AbstractCacheBackend):
    """Bounded in-memory cache with lazy TTL expiry and LRU eviction.

    When a new key would exceed ``max_entries``, roughly 10% of the entries
    with the oldest ``last_access`` are evicted. Keys that served at least one
    hit ("frequent" keys) are skipped unless every candidate is frequent.

    Attributes:
        default_ttl_ms: TTL applied when ``set`` is called without one.
        max_entries: Capacity (None for unlimited, 0 to disable storage).
    """

    def __init__(
        self,
        *,
        default_ttl_ms: int = 300_000,
        max_entries: int | None = 1000,
        key_prefix: str = "cache:",
        hot_key_markers: Iterable[str] = ("timezone", "tz-data"),
        cleanup_interval_seconds: float = 60.0,
        warmup_interval_seconds: float = 300.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_entries is not None and max_entries < 0:
            raise ValueError("max_entries must be >= 0")
        if default_ttl_ms <= 0:
            raise ValueError("default_ttl_ms must be > 0")

        self.default_ttl_ms = default_ttl_ms
        self.max_entries = max_entries
        self.key_prefix = key_prefix
        self._hot_key_markers = tuple(hot_key_markers)
        self._clock = clock
        self._lock = threading.RLock()
        self._store: dict[str, CacheEntry] = {}
        self._frequent_keys: set[str] = set()
        self._hits = 0
        self._misses = 0
        self._sets = 0
        self._deletes = 0
        self._evictions = 0
        self._cleanup_task = PeriodicTask(
            "cache-expiry-sweep", cleanup_interval_seconds, self.cleanup_expired
        )
        self._warmup_task = PeriodicTask(
            "cache-hot-key-warmup", warmup_interval_seconds, self.warmup_frequent_keys
        )

    def __repr__(self) -> str:  # pragma: no cover - representation only
        return (
            f"InMemoryCacheBackend(max_entries={self.max_entries}, size={len(self._store)}, "
            f"hits={self._hits}, misses={self._misses}, evictions={self._evictions})"
        )

    @property
    def enabled(self) -> bool:
        return self.max_entries != 0

    def _now_ms(self) -> float:
        return self._clock() * 1000

    async def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                self._misses += 1
                logger.debug("cache.miss", extra={"cache_key": hash_identifier(key), "reason": "not_found"})
                return None

            now = self._now_ms()
            if now > entry.expires_at_ms:
                self._drop(key)
                self._misses += 1
                logger.debug("cache.miss", extra={"cache_key": hash_identifier(key), "reason": "expired"})
                return None

            entry.last_access_ms = now
            self._frequent_keys.add(key)
            self._hits += 1
            logger.debug("cache.hit", extra={"cache_key": hash_identifier(key)})
            return entry.value

    async def set(self, key: str, value: Any, ttl_ms: int | None = None) -> None:
        if not self.enabled:
            return

        ttl = ttl_ms if ttl_ms is not None else self.default_ttl_ms
        with self._lock:
            if key not in self._store:
                self._evict_if_at_capacity_locked()
            now = self._now_ms()
            self._store[key] = CacheEntry(value=value, expires_at_ms=now + ttl, last_access_ms=now)
            self._sets += 1

        logger.debug(
            "cache.set",
            extra={"cache_key": hash_identifier(key), "size": len(self._store), "ttl_ms": ttl},
        )

    async def delete(self, key: str) -> None:
        with self._lock:
            self._drop(key)
            self._deletes += 1

    async def exists(self, key: str) -> bool:
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return False
            now = self._now_ms()
            if now > entry.expires_at_ms:
                self._drop(key)
                return False
            entry.last_access_ms = now
            return True

    async def clear(self, pattern: str | None = None) -> None:
        regex = compile_key_pattern(pattern)
        with self._lock:
            if regex is None:
                removed = len(self._store)
                self._store.clear()
                self._frequent_keys.clear()
            else:
                matched = [key for key in self._store if regex.search(key)]
                for key in matched:
                    self._drop(key)
                removed = len(matched)

        logger.info("cache.cleared", extra={"pattern": pattern, "removed": removed})

    async def stats(self) -> CacheStats:
        self.cleanup_expired()
        with self._lock:
            return CacheStats(
                hits=self._hits,
                misses=self._misses,
                size=len(self._store),
                keys=list(self._store),
            )

    async def health_check(self) -> HealthReport:
        with self._lock:
            lookups = self._hits + self._misses
            return HealthReport(
                status="healthy",
                type="memory" if self.enabled else "disabled",
                details={
                    "size": len(self._store),
                    "max_entries": self.max_entries,
                    "ttl_enabled": True,
                    "lru_enabled": True,
                    "hits": self._hits,
                    "misses": self._misses,
                    "sets": self._sets,
                    "deletes": self._deletes,
                    "evictions": self._evictions,
                    "hit_ratio": self._hits / lookups if lookups else 0.0,
                    "frequent_keys": len(self._frequent_keys),
                    "estimated_size_bytes": self._estimate_size_locked(),
                    "maintenance_running": self._cleanup_task.running,
                },
            )

    async def start(self) -> None:
        if not self.enabled:
            return
        self._cleanup_task.start()
        self._warmup_task.start()

    async def close(self) -> None:
        await self._cleanup_task.stop()
        await self._warmup_task.stop()

    def cleanup_expired(self) -> int:
        """Remove every expired entry. Returns the number removed."""
        with self._lock:
            now = self._now_ms()
            expired = [key for key, entry in self._store.items() if now > entry.expires_at_ms]
            for key in expired:
                self._drop(key)
        if expired:
            logger.debug("cache.expired_swept", extra={"removed": len(expired)})
        return len(expired)

    def warmup_frequent_keys(self) -> int:
        """Extend the TTL of frequently read hot keys to 24 hours.

        Only keys containing one of the hot markers (timezone data by default)
        are extended, and an expiry is never moved earlier.

        Returns:
            Number of entries whose expiry was extended.
        """
        extended = 0
        with self._lock:
            target = self._now_ms() + WARMUP_TTL_MS
            for key in list(self._frequent_keys):
                entry = self._store.get(key)
                if entry is None:
                    continue
                if any(marker in key for marker in self._hot_key_markers) and target > entry.expires_at_ms:
                    entry.expires_at_ms = target
                    extended += 1
        return extended

    def _drop(self, key: str) -> None:
        self._store.pop(key, None)
        self._frequent_keys.discard(key)

    def _evict_if_at_capacity_locked(self) -> None:
        if self.max_entries is None or len(self._store) < self.max_entries:
            return

        evict_count = max(1, int(self.max_entries * EVICTION_FRACTION))

        def by_recency(k: str) -> float:
            return self._store[k].last_access_ms

        regular = [k for k in self._store if k not in self._frequent_keys]
        victims = heapq.nsmallest(evict_count, regular, key=by_recency)
        if len(victims) < evict_count:
            # Working set fills the store: frequent keys become eligible too
            frequent = [k for k in self._store if k in self._frequent_keys]
            victims += heapq.nsmallest(evict_count - len(victims), frequent, key=by_recency)

        for key in victims:
            self._drop(key)
        self._evictions += len(victims)
        logger.debug("cache.evicted", extra={"evicted": len(victims), "size": len(self._store)})

    def _estimate_size_locked(self) -> int:
        size = 0
        for key, entry in self._store.items():
            size += len(key) + len(json.dumps(entry.value, default=str)) + 16
        return size
