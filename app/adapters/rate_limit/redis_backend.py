"""Redis sliding-window rate limiter with in-memory fallback.

Each ``(rule type, identifier)`` pair owns a sorted set whose members are
request timestamps. One pipelined round trip trims members older than the
window, records the current request (increment only), counts what is left and
refreshes the key expiry. When Redis is unreachable the request is counted by
an in-process fixed-window limiter instead.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any, Callable, Iterable

from redis.asyncio import Redis

from app.adapters.health import HealthReport
from app.adapters.rate_limit.base import (
    AbstractRateLimiter,
    RateLimitCheck,
    RateLimitResult,
    RateLimitRule,
    RateLimitStats,
    build_result,
)
from app.adapters.rate_limit.in_memory import InMemoryFixedWindowRateLimiter
from app.adapters.redis_connection import RedisConnectionMonitor
from app.core.errors import BackendConnectionError
from app.core.logging import hash_identifier

logger = logging.getLogger(__name__)

KEY_PREFIX = "rate_limit"


def redis_key(identifier: str, rule: RateLimitRule) -> str:
    return f"{KEY_PREFIX}:{rule.type.value}:{identifier}"


class RedisSlidingWindowRateLimiter(AbstractRateLimiter):
    """Sliding-window limiter on Redis sorted sets.

    Args:
        client: Async Redis client (``decode_responses=True``).
        fallback: In-memory limiter used while Redis is down.
        default_rule: Rule used by ``get_stats`` when the caller passes none.
        fallback_to_memory: When False, requests are let through unlimited
            while Redis is down.
        clock: Time source returning UNIX time in seconds.
        **monitor_options: Timeout and reconnect settings forwarded to
            :class:`RedisConnectionMonitor`.
    """

    def __init__(
        self,
        client: Redis,
        *,
        fallback: InMemoryFixedWindowRateLimiter,
        default_rule: RateLimitRule,
        fallback_to_memory: bool = True,
        clock: Callable[[], float] = time.time,
        **monitor_options: Any,
    ) -> None:
        self._redis = client
        self._fallback = fallback
        self.default_rule = default_rule
        self.fallback_to_memory = fallback_to_memory
        self._clock = clock
        self.monitor = RedisConnectionMonitor(client, name="redis-rate-limit", **monitor_options)

    @property
    def fallback(self) -> InMemoryFixedWindowRateLimiter:
        return self._fallback

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    async def check_limit(self, identifier: str, rule: RateLimitRule) -> RateLimitResult:
        return await self._evaluate(identifier, rule, consuming=False)

    async def increment(self, identifier: str, rule: RateLimitRule) -> RateLimitResult:
        return await self._evaluate(identifier, rule, consuming=True)

    async def check_multiple_limits(self, requests: Iterable[RateLimitCheck]) -> list[RateLimitResult]:
        """Check every pair in a single pipelined round trip."""
        requests = list(requests)
        if not requests:
            return []

        if self.monitor.connected:
            now = self._now_ms()
            pipe = self._redis.pipeline(transaction=False)
            for req in requests:
                self._queue_window(pipe, redis_key(req.identifier, req.rule), req.rule, now, member=None)
            try:
                replies = await self.monitor.call(pipe.execute(), "pipeline")
            except BackendConnectionError as exc:
                self.monitor.mark_failed(exc, "check_multiple_limits")
            else:
                step = len(replies) // len(requests)
                results = []
                for index, req in enumerate(requests):
                    chunk = replies[index * step:(index + 1) * step]
                    count, oldest = chunk[1], chunk[2]
                    results.append(build_result(int(count), req.rule, _reset_time(oldest, req.rule, now), consuming=False))
                return results

        return [await self._fallback_result(req.identifier, req.rule, consuming=False) for req in requests]

    async def reset(self, identifier: str, rule: RateLimitRule) -> None:
        await self._fallback.reset(identifier, rule)
        if not self.monitor.connected:
            return
        try:
            await self.monitor.call(self._redis.delete(redis_key(identifier, rule)), "delete")
        except BackendConnectionError as exc:
            self.monitor.mark_failed(exc, "reset")

    async def get_stats(self, identifier: str, rule: RateLimitRule | None = None) -> RateLimitStats:
        rule = rule or self.default_rule
        if self.monitor.connected:
            now = self._now_ms()
            key = redis_key(identifier, rule)
            pipe = self._redis.pipeline(transaction=True)
            pipe.zremrangebyscore(key, 0, now - rule.window_ms)
            pipe.zcard(key)
            pipe.zrange(key, 0, 0, withscores=True)
            try:
                _, count, oldest = await self.monitor.call(pipe.execute(), "pipeline")
            except BackendConnectionError as exc:
                self.monitor.mark_failed(exc, "get_stats")
            else:
                return RateLimitStats(
                    identifier=identifier,
                    current_count=int(count),
                    limit=rule.limit,
                    window_ms=rule.window_ms,
                    reset_time_ms=_reset_time(oldest, rule, now),
                )
        return await self._fallback.get_stats(identifier, rule)

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
            return HealthReport(
                status="healthy",
                type="redis",
                details={**self.monitor.status(), "ping": pong, "fallback_available": self.fallback_to_memory},
            )

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

    async def _evaluate(self, identifier: str, rule: RateLimitRule, *, consuming: bool) -> RateLimitResult:
        if self.monitor.connected:
            now = self._now_ms()
            member = f"{now}-{uuid.uuid4().hex}" if consuming else None
            pipe = self._redis.pipeline(transaction=True)
            self._queue_window(pipe, redis_key(identifier, rule), rule, now, member=member)
            op_name = "increment" if consuming else "check_limit"
            try:
                replies = await self.monitor.call(pipe.execute(), "pipeline")
            except BackendConnectionError as exc:
                self.monitor.mark_failed(exc, op_name)
            else:
                # Replies: [zremrangebyscore, (zadd), zcard, zrange, pexpire]
                count, oldest = replies[-3], replies[-2]
                result = build_result(int(count), rule, _reset_time(oldest, rule, now), consuming=consuming)
                if consuming and not result.allowed:
                    logger.debug(
                        "rate_limit.window_exhausted",
                        extra={"key_hash": hash_identifier(identifier), "limit": rule.limit, "count": int(count)},
                    )
                return result

        return await self._fallback_result(identifier, rule, consuming=consuming)

    @staticmethod
    def _queue_window(pipe: Any, key: str, rule: RateLimitRule, now: int, *, member: str | None) -> None:
        pipe.zremrangebyscore(key, 0, now - rule.window_ms)
        if member is not None:
            pipe.zadd(key, {member: now})
        pipe.zcard(key)
        pipe.zrange(key, 0, 0, withscores=True)
        pipe.pexpire(key, rule.window_ms)

    async def _fallback_result(self, identifier: str, rule: RateLimitRule, *, consuming: bool) -> RateLimitResult:
        if self.fallback_to_memory:
            if consuming:
                return await self._fallback.increment(identifier, rule)
            return await self._fallback.check_limit(identifier, rule)
        return RateLimitResult(
            allowed=True,
            remaining=rule.limit,
            reset_time_ms=self._now_ms() + rule.window_ms,
            total_limit=rule.limit,
        )


def _reset_time(oldest: list[tuple[str, float]], rule: RateLimitRule, now: int) -> int:
    """The window frees a slot when its oldest member ages out."""
    if oldest:
        return int(oldest[0][1]) + rule.window_ms
    return now + rule.window_ms
