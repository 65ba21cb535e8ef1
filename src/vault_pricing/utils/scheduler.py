from __future__ import annotations

import asyncio
import inspect
from typing import Awaitable, Callable, Optional, Protocol, Union

from loguru import logger


Callback = Callable[[], Union[Awaitable[None], None]]


class ScheduleHandle(Protocol):
    def cancel(self) -> None: ...

    @property
    def cancelled(self) -> bool: ...


class Scheduler(Protocol):
    def schedule(self, interval: float, callback: Callback) -> ScheduleHandle: ...


class TaskHandle:
    """Cancellation handle for a repeating asyncio task."""

    def __init__(self, task: asyncio.Task[None]) -> None:
        self._task = task
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True
        if not self._task.done():
            self._task.cancel()

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class AsyncioScheduler:
    """Runs callbacks every ``interval`` seconds on the running event loop.

    The first call happens one interval after scheduling. A callback that
    raises is logged and the timer keeps going.
    """

    def schedule(self, interval: float, callback: Callback, *, name: Optional[str] = None) -> TaskHandle:
        if interval <= 0:
            raise ValueError("interval must be positive")
        task = asyncio.create_task(self._run(interval, callback), name=name)
        return TaskHandle(task)

    async def _run(self, interval: float, callback: Callback) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                result = callback()
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                logger.exception("Scheduled callback failed: {}", exc)
