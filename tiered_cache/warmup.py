"""Batched cache warmup."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .scheduling import PeriodicTask
from .tag_index import tag_set

if TYPE_CHECKING:
    from .cache_coordinator import CacheCoordinator

logger = logging.getLogger(__name__)

Loader = Callable[[str], Any | Awaitable[Any]]


@dataclass
class WarmupReport:
    loaded: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)


async def call_loader(loader: Callable[..., Any], *args: Any) -> Any:
    """Await coroutine loaders; run plain callables in a worker thread."""
    if inspect.iscoroutinefunction(loader):
        return await loader(*args)
    result = await asyncio.to_thread(loader, *args)
    if inspect.isawaitable(result):
        result = await result
    return result


class WarmupScheduler:
    """Preloads keys in fixed-size batches, skipping keys that are already cached."""

    def __init__(self, coordinator: CacheCoordinator, batch_size: int = 10):
        self.coordinator = coordinator
        self.batch_size = batch_size
        self._scheduled: list[PeriodicTask] = []

    async def warmup(
        self,
        keys: Sequence[str],
        loader: Loader,
        batch_size: int | None = None,
        ttl: int | None = None,
        tags: Iterable[str] | str | None = None,
    ) -> WarmupReport:
        """Load ``keys`` through ``loader``; a batch finishes before the next one starts."""
        size = batch_size or self.batch_size
        if size < 1:
            raise ValueError(f"batch_size must be >= 1, got {size}")

        report = WarmupReport()
        tag_list = sorted(tag_set(tags))
        unique_keys = list(dict.fromkeys(keys))

        for start in range(0, len(unique_keys), size):
            batch = unique_keys[start : start + size]
            await asyncio.gather(*(self._warm_key(key, loader, ttl, tag_list, report) for key in batch))

        logger.info(
            f"Cache warmup finished - loaded: {len(report.loaded)}, skipped: {len(report.skipped)}, "
            f"failed: {len(report.failed)}"
        )
        return report

    async def _warm_key(self, key: str, loader: Loader, ttl: int | None, tags: list[str], report: WarmupReport) -> None:
        if await self.coordinator.get(key) is not None:
            report.skipped.append(key)
            return

        try:
            value = await call_loader(loader, key)
        except Exception as e:
            logger.warning(f"Warmup loader failed for key {key}: {e}")
            report.failed[key] = str(e)
            return

        if value is None:
            report.skipped.append(key)
            return

        await self.coordinator.set(key, value, ttl, tags)
        report.loaded.append(key)

    def schedule(
        self,
        keys: Sequence[str] | Callable[[], Sequence[str]],
        loader: Loader,
        interval_seconds: float,
        batch_size: int | None = None,
    ) -> PeriodicTask:
        """Re-run warmup every ``interval_seconds`` until the coordinator closes.

        ``keys`` may be a callable so the key set can change between runs.
        """

        async def run() -> None:
            current = keys() if callable(keys) else keys
            await self.warmup(current, loader, batch_size)

        task = PeriodicTask("cache-warmup", interval_seconds, run)
        if not task.start():
            raise RuntimeError("Periodic warmup requires a running event loop")
        self._scheduled.append(task)
        return task

    async def stop(self) -> None:
        tasks, self._scheduled = self._scheduled, []
        for task in tasks:
            await task.stop()
