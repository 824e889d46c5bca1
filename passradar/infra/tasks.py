"""Cancellable background loops owned by the component that starts them."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Run ``func`` every ``interval`` seconds until stopped.

    The first run happens immediately when ``run_immediately`` is set. A
    failing iteration is logged and the loop continues; ``StopPeriodic``
    raised from ``func`` ends the loop cleanly.
    """

    def __init__(
        self,
        name: str,
        func: Callable[[], Awaitable[None]],
        *,
        interval: float | Callable[[], float],
        run_immediately: bool = True,
    ) -> None:
        self.name = name
        self._func = func
        self._interval = interval
        self._run_immediately = run_immediately
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name=self.name)

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        if task is asyncio.current_task():
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task

    def _next_interval(self) -> float:
        value = self._interval() if callable(self._interval) else self._interval
        return max(0.01, float(value))

    async def _loop(self) -> None:
        if not self._run_immediately:
            await asyncio.sleep(self._next_interval())
        while True:
            try:
                await self._func()
            except StopPeriodic:
                logger.debug("periodic task %s stopped itself", self.name)
                return
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("periodic task %s iteration failed", self.name)
            await asyncio.sleep(self._next_interval())


class StopPeriodic(Exception):
    """Raised by a periodic callable to end its own loop."""


async def cancel_task(task: Optional[asyncio.Task]) -> None:
    """Cancel ``task`` and wait for it, ignoring the resulting CancelledError."""
    if task is None or task.done() or task is asyncio.current_task():
        return
    task.cancel()
    with suppress(asyncio.CancelledError):
        await task


__all__ = ["PeriodicTask", "StopPeriodic", "cancel_task"]
