"""Cancellable periodic background tasks."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Runs ``func`` every ``interval`` seconds on the running event loop until stopped.

    ``func`` may be a plain callable or a coroutine function. Errors raised by a
    run are logged and the loop continues with the next tick.
    """

    def __init__(self, name: str, interval: float, func: Callable[[], Any | Awaitable[Any]]):
        self.name = name
        self.interval = interval
        self.func = func
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        """Start the task; returns False when no event loop is running."""
        if self.running:
            return True
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return False
        self._task = loop.create_task(self._loop(), name=self.name)
        return True

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                result = self.func()
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"{self.name} error: {e}")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
