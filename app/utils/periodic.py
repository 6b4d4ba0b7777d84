"""Cancellable periodic background task bound to the running event loop."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Run a callback every ``interval_seconds`` until stopped.

    The callback may be a plain function or a coroutine function. Errors raised
    by the callback are logged and the loop keeps running.

    Attributes:
        name: Task name, used in logs and as the asyncio task name.
        interval_seconds: Delay between two runs.
    """

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        callback: Callable[[], None | Awaitable[None]],
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        self.name = name
        self.interval_seconds = interval_seconds
        self._callback = callback
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Schedule the loop on the running event loop (idempotent)."""
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name=self.name)

    async def stop(self) -> None:
        """Cancel the loop and wait for it to finish."""
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                result = self._callback()
                if asyncio.iscoroutine(result):
                    await result
            except Exception as exc:
                logger.warning(
                    "periodic_task.failed",
                    extra={"task": self.name, "error_type": type(exc).__name__},
                )
