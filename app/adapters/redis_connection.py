"""Connectivity tracking for Redis-backed stores.

Both Redis stores (cache and rate limiter) wrap every round trip with
:class:`RedisConnectionMonitor`. The monitor:

- races each operation against a timeout and turns timeouts and transport
  errors into :class:`BackendConnectionError`;
- keeps a ``connected`` flag the stores consult before touching Redis;
- after a failure, pings Redis using exponential backoff and
  flips the flag back once a ping succeeds.

Stores never let these errors escape: they catch them and serve the request
from their in-memory fallback.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Awaitable, TypeVar

from redis.asyncio import Redis
from redis.exceptions import RedisError

from app.core.errors import BackendConnectionError

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSPORT_ERRORS: tuple[type[BaseException], ...] = (RedisError, OSError, asyncio.TimeoutError)


class RedisConnectionMonitor:
    """Connectivity flag plus reconnect schedule for one Redis client.

    Attributes:
        name: Label of the owning store, used in logs.
        connected: Whether operations should be sent to Redis.
        attempts: Failed pings in the current outage.
    """

    def __init__(
        self,
        client: Redis,
        *,
        name: str,
        operation_timeout_seconds: float = 0.5,
        max_reconnect_attempts: int = 3,
        reconnect_base_delay_seconds: float = 1.0,
        reconnect_max_delay_seconds: float = 8.0,
    ) -> None:
        self.client = client
        self.name = name
        self.operation_timeout_seconds = operation_timeout_seconds
        self.max_reconnect_attempts = max_reconnect_attempts
        self.reconnect_base_delay_seconds = reconnect_base_delay_seconds
        self.reconnect_max_delay_seconds = reconnect_max_delay_seconds
        self.connected = False
        self.attempts = 0
        self._reconnect_task: asyncio.Task[None] | None = None

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    def next_delay(self) -> float:
        """Backoff delay after ``attempts`` failed pings (2s, 4s, 8s with defaults)."""
        return min(
            self.reconnect_base_delay_seconds * (2 ** self.attempts),
            self.reconnect_max_delay_seconds,
        )

    async def call(self, operation: Awaitable[T], op_name: str) -> T:
        """Await a Redis operation under the configured timeout.

        Args:
            operation: Awaitable issuing the Redis command(s).
            op_name: Short operation label for logs (``get``, ``pipeline``...).

        Returns:
            The operation result.

        Raises:
            BackendConnectionError: On timeout or any transport error.
        """
        try:
            return await asyncio.wait_for(operation, timeout=self.operation_timeout_seconds)
        except TRANSPORT_ERRORS as exc:
            raise BackendConnectionError(
                code="redis_unavailable",
                message=f"Redis {op_name} failed",
                details={"operation": op_name, "backend": self.name},
            ) from exc

    def mark_failed(self, exc: BaseException, op_name: str) -> None:
        """Flip to disconnected and schedule reconnect attempts."""
        cause = exc.__cause__ or exc
        if self.connected:
            logger.warning(
                "redis.disconnected",
                extra={
                    "backend": self.name,
                    "operation": op_name,
                    "error_type": type(cause).__name__,
                },
            )
        self.connected = False
        self.schedule_reconnect()

    def schedule_reconnect(self) -> None:
        """Start a reconnect loop unless one is already pending."""
        if self.reconnect_pending:
            return
        self.attempts = 0
        self._reconnect_task = asyncio.get_running_loop().create_task(
            self._reconnect_loop(), name=f"{self.name}-reconnect"
        )

    async def ping(self) -> bool:
        """Send one ``PING``; update the flag and attempt counter."""
        try:
            await asyncio.wait_for(self.client.ping(), timeout=self.operation_timeout_seconds)
        except TRANSPORT_ERRORS as exc:
            self.attempts += 1
            self.connected = False
            logger.warning(
                "redis.ping_failed",
                extra={
                    "backend": self.name,
                    "attempt": self.attempts,
                    "error_type": type(exc).__name__,
                },
            )
            return False

        if not self.connected:
            logger.info("redis.connected", extra={"backend": self.name, "attempts": self.attempts})
        self.connected = True
        self.attempts = 0
        return True

    async def connect(self) -> bool:
        """Initial ping at startup; schedules retries when Redis is down."""
        if await self.ping():
            return True
        if not self.reconnect_pending:
            self._reconnect_task = asyncio.get_running_loop().create_task(
                self._reconnect_loop(ping_first=False), name=f"{self.name}-reconnect"
            )
        return False

    async def force_reconnect(self) -> bool:
        """Cancel any pending schedule and ping immediately."""
        await self._cancel_reconnect()
        self.attempts = 0
        return await self.ping()

    def status(self) -> dict[str, Any]:
        return {
            "connected": self.connected,
            "attempts": self.attempts,
            "reconnect_pending": self.reconnect_pending,
        }

    async def close(self) -> None:
        await self._cancel_reconnect()
        with contextlib.suppress(*TRANSPORT_ERRORS):
            await self.client.aclose()

    async def _cancel_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _reconnect_loop(self, ping_first: bool = True) -> None:
        if ping_first and await self.ping():
            return
        while self.attempts < self.max_reconnect_attempts:
            await asyncio.sleep(self.next_delay())
            if await self.ping():
                return
        logger.warning(
            "redis.reconnect_gave_up",
            extra={"backend": self.name, "attempts": self.attempts},
        )
