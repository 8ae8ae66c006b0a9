"""Background expiry sweep for the L1 tier."""

from __future__ import annotations

import logging
import time

from .l1_cache import L1Cache
from .scheduling import PeriodicTask

logger = logging.getLogger(__name__)


class EvictionManager:
    """Runs ``L1Cache.sweep_expired`` on a fixed interval.

    LRU eviction is not scheduled here; L1 performs it synchronously on
    insert-over-capacity.
    """

    def __init__(self, l1_cache: L1Cache, sweep_interval: float = 60.0):
        self.l1_cache = l1_cache
        self.sweep_interval = sweep_interval
        self.total_swept = 0
        self.last_sweep_at: float | None = None
        self._task = PeriodicTask("cache-l1-sweep", sweep_interval, self.sweep)

    def sweep(self) -> int:
        removed = self.l1_cache.sweep_expired()
        self.total_swept += removed
        self.last_sweep_at = time.time()
        if removed:
            logger.debug(f"L1 sweep removed {removed} expired entries")
        return removed

    @property
    def running(self) -> bool:
        return self._task.running

    def start(self) -> bool:
        return self._task.start()

    async def stop(self) -> None:
        await self._task.stop()
