"""Rate limiter interfaces.

The API depends on this abstraction (not the concrete implementation) so the
in-process fixed-window limiter and the Redis sliding-window limiter are
interchangeable behind the factory.
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Iterable

from app.adapters.health import HealthReport


class RateLimitType(str, Enum):
    """Scope of a rule: per client IP or per authenticated caller."""

    IP = "ip"
    USER = "user"


@dataclass(frozen=True)
class RateLimitRule:
    """Request budget supplied by the caller for one request.

    Attributes:
        identifier: Rule name (``anonymous``, ``authenticated``...).
        limit: Requests allowed per window (0 blocks everything).
        window_ms: Window length in milliseconds.
        type: Whether counters are scoped per IP or per user.
    """

    identifier: str
    limit: int
    window_ms: int
    type: RateLimitType = RateLimitType.IP

    def __post_init__(self) -> None:
        if self.limit < 0:
            raise ValueError("limit must be >= 0")
        if self.window_ms <= 0:
            raise ValueError("window_ms must be > 0")


@dataclass(frozen=True)
class RateLimitResult:
    """Result of a rate limit check/increment operation.

    Attributes:
        allowed: Whether the request is allowed to proceed.
        remaining: Remaining requests in the current window (0 when blocked).
        reset_time_ms: Epoch milliseconds when the budget frees up.
        total_limit: Max requests per window.
    """

    allowed: bool
    remaining: int
    reset_time_ms: int
    total_limit: int

    def retry_after_seconds(self, now_ms: float) -> int:
        """Seconds until ``reset_time_ms``, rounded up (never negative)."""
        return max(0, int(math.ceil((self.reset_time_ms - now_ms) / 1000)))


@dataclass(frozen=True)
class RateLimitStats:
    identifier: str
    current_count: int
    limit: int
    window_ms: int
    reset_time_ms: int


@dataclass(frozen=True)
class RateLimitCheck:
    """One ``(identifier, rule)`` pair for batched checks."""

    identifier: str
    rule: RateLimitRule


def window_bounds(now_ms: float, window_ms: int) -> tuple[int, int]:
    """Fixed-window boundaries for a timestamp.

    Returns:
        Tuple of (window_start_ms, reset_time_ms).
    """
    window_start = int(now_ms // window_ms) * window_ms
    return window_start, window_start + window_ms


def build_result(count: int, rule: RateLimitRule, reset_time_ms: int, *, consuming: bool) -> RateLimitResult:
    """Turn a request count into a result.

    ``increment`` counts the current request, so ``count == limit`` is still
    allowed; ``check_limit`` asks whether one more request fits.
    """
    allowed = count <= rule.limit if consuming else count < rule.limit
    if rule.limit == 0:
        allowed = False
    return RateLimitResult(
        allowed=allowed,
        remaining=max(0, rule.limit - count),
        reset_time_ms=int(reset_time_ms),
        total_limit=rule.limit,
    )


class AbstractRateLimiter(ABC):
    """Interface for rate limiters."""

    @abstractmethod
    async def check_limit(self, identifier: str, rule: RateLimitRule) -> RateLimitResult:
        """Report the current budget without consuming it."""
        raise NotImplementedError

    @abstractmethod
    async def increment(self, identifier: str, rule: RateLimitRule) -> RateLimitResult:
        """Consume one unit of budget for ``identifier`` under ``rule``.

        Args:
            identifier: Caller key (e.g. ``ip:10.0.0.1``, ``user:ab12...``).
            rule: Budget to enforce.

        Returns:
            RateLimitResult describing whether the request is allowed.
        """
        raise NotImplementedError

    @abstractmethod
    async def reset(self, identifier: str, rule: RateLimitRule) -> None:
        raise NotImplementedError

    @abstractmethod
    async def get_stats(self, identifier: str, rule: RateLimitRule | None = None) -> RateLimitStats:
        raise NotImplementedError

    @abstractmethod
    async def health_check(self) -> HealthReport:
        raise NotImplementedError

    async def check_multiple_limits(self, requests: Iterable[RateLimitCheck]) -> list[RateLimitResult]:
        """Check several pairs; backends with pipelining override this."""
        return [await self.check_limit(req.identifier, req.rule) for req in requests]

    async def start(self) -> None:
        """Start background maintenance. No-op by default."""

    async def close(self) -> None:
        """Stop background maintenance and release connections. No-op by default."""
