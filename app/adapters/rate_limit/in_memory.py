"""In-memory fixed-window rate limiter.

Notes:
- Per-process only: running multiple workers multiplies the effective limit.
- Thread-safe: uses a lock around shared state.
- Counters are keyed by ``(rule type, identifier)``; a counter whose window
  rolled over is replaced on the next increment and swept periodically.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable

from app.adapters.health import HealthReport
from app.adapters.rate_limit.base import (
    AbstractRateLimiter,
    RateLimitResult,
    RateLimitRule,
    RateLimitStats,
    build_result,
    window_bounds,
)
from app.core.logging import hash_identifier
from app.utils.periodic import PeriodicTask

logger = logging.getLogger(__name__)


@dataclass
class _WindowState:
    window_start_ms: int
    reset_time_ms: int
    count: int


class InMemoryFixedWindowRateLimiter(AbstractRateLimiter):
    """Rate limiter using a fixed time window per identifier.

    It limits requests per identifier within a fixed window of time (e.g.
    100 requests per 60000 ms). The rule is supplied on every call, so one
    limiter serves anonymous and authenticated budgets alike.

    Important:
        This limiter is per-process only. If the API runs with multiple workers
        (e.g., multiple Uvicorn/Gunicorn workers), each worker will enforce its
        own independent limits.
    """

    def __init__(
        self,
        *,
        cleanup_interval_seconds: float = 60.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the in-memory rate limiter.

        Args:
            cleanup_interval_seconds: Delay between sweeps of expired counters.
            clock: Time source function returning UNIX time in seconds.
        """
        self._clock = clock
        self._lock = threading.RLock()
        self._state_by_key: dict[tuple[str, str], _WindowState] = {}
        self._stats: dict[str, RateLimitStats] = {}
        self._cleanup_task = PeriodicTask(
            "rate-limit-window-sweep", cleanup_interval_seconds, self.cleanup_expired
        )

    def _now_ms(self) -> float:
        return self._clock() * 1000

    @staticmethod
    def _key(identifier: str, rule: RateLimitRule) -> tuple[str, str]:
        return rule.type.value, identifier

    def _current_count_locked(self, key: tuple[str, str], window_start_ms: int) -> int:
        state = self._state_by_key.get(key)
        if state is None or state.window_start_ms != window_start_ms:
            return 0
        return state.count

    async def check_limit(self, identifier: str, rule: RateLimitRule) -> RateLimitResult:
        window_start, reset_at = window_bounds(self._now_ms(), rule.window_ms)
        with self._lock:
            count = self._current_count_locked(self._key(identifier, rule), window_start)
        return build_result(count, rule, reset_at, consuming=False)

    async def increment(self, identifier: str, rule: RateLimitRule) -> RateLimitResult:
        """Consume one unit of budget for the identifier.

        Raises:
            ValueError: If identifier is empty.
        """
        if not identifier:
            raise ValueError("identifier must be a non-empty string")

        window_start, reset_at = window_bounds(self._now_ms(), rule.window_ms)
        key = self._key(identifier, rule)

        with self._lock:
            state = self._state_by_key.get(key)
            if state is None or state.window_start_ms != window_start:
                state = _WindowState(window_start_ms=window_start, reset_time_ms=reset_at, count=0)
                self._state_by_key[key] = state
            state.count += 1
            self._stats[identifier] = RateLimitStats(
                identifier=identifier,
                current_count=state.count,
                limit=rule.limit,
                window_ms=rule.window_ms,
                reset_time_ms=reset_at,
            )
            count = state.count

        result = build_result(count, rule, reset_at, consuming=True)
        if not result.allowed:
            logger.debug(
                "rate_limit.window_exhausted",
                extra={"key_hash": hash_identifier(identifier), "limit": rule.limit, "count": count},
            )
        return result

    async def reset(self, identifier: str, rule: RateLimitRule) -> None:
        with self._lock:
            self._state_by_key.pop(self._key(identifier, rule), None)
            self._stats.pop(identifier, None)

    async def get_stats(self, identifier: str, rule: RateLimitRule | None = None) -> RateLimitStats:
        """Counter snapshot for an identifier.

        With a rule, the live counter for that rule's current window is read;
        without one, the snapshot left by the last ``increment`` is returned
        (or an empty snapshot when the identifier was never seen).
        """
        now = self._now_ms()
        if rule is not None:
            window_start, reset_at = window_bounds(now, rule.window_ms)
            with self._lock:
                count = self._current_count_locked(self._key(identifier, rule), window_start)
            return RateLimitStats(
                identifier=identifier,
                current_count=count,
                limit=rule.limit,
                window_ms=rule.window_ms,
                reset_time_ms=reset_at,
            )

        with self._lock:
            snapshot = self._stats.get(identifier)
        if snapshot is not None:
            return snapshot
        return RateLimitStats(identifier=identifier, current_count=0, limit=0, window_ms=0, reset_time_ms=int(now))

    async def health_check(self) -> HealthReport:
        with self._lock:
            counters = len(self._state_by_key)
            tracked = len(self._stats)
        return HealthReport(
            status="healthy",
            type="memory",
            details={
                "active_counters": counters,
                "tracked_identifiers": tracked,
                "maintenance_running": self._cleanup_task.running,
            },
        )

    async def start(self) -> None:
        self._cleanup_task.start()

    async def close(self) -> None:
        await self._cleanup_task.stop()

    def cleanup_expired(self) -> int:
        """Drop counters and snapshots whose window has ended. Returns the count removed."""
        now = self._now_ms()
        with self._lock:
            expired = [key for key, state in self._state_by_key.items() if now >= state.reset_time_ms]
            for key in expired:
                del self._state_by_key[key]
            stale = [ident for ident, snap in self._stats.items() if now >= snap.reset_time_ms]
            for ident in stale:
                del self._stats[ident]
        if expired:
            logger.debug("rate_limit.counters_swept", extra={"removed": len(expired)})
        return len(expired)
