"""Invalidation by key or tag across both cache tiers."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .errors import CacheError, PartialInvalidationFailure
from .l1_cache import L1Cache
from .l2_cache import L2Cache
from .logging_utils import get_logger
from .tag_index import tag_set

if TYPE_CHECKING:
    from .cache_metrics import MetricsCollector

logger = logging.getLogger(__name__)
_audit = get_logger("tiered_cache.invalidation")


@dataclass
class InvalidationResult:
    """Outcome of one invalidation request.

    ``failed_keys`` could not be removed from L2 and may be retried with
    ``invalidate``. ``failed_tags`` had an unreadable L2 index, so their L2
    members are unknown.
    """

    invalidated: set[str] = field(default_factory=set)
    failed_keys: set[str] = field(default_factory=set)
    failed_tags: set[str] = field(default_factory=set)

    @property
    def ok(self) -> bool:
        return not self.failed_keys and not self.failed_tags

    def merge(self, other: InvalidationResult) -> None:
        self.invalidated |= other.invalidated
        self.failed_keys |= other.failed_keys
        self.failed_tags |= other.failed_tags

    def raise_for_failures(self) -> None:
        if not self.ok:
            raise PartialInvalidationFailure(self.failed_keys, self.failed_tags)


@dataclass
class _Request:
    keys: frozenset[str] = frozenset()
    tags: frozenset[str] = frozenset()


class InvalidationBroker:
    """Applies invalidation requests to L1 and L2.

    Best-effort: an L2 failure on one key never stops the remaining keys.
    The broker does not subscribe to any event source; transports call
    ``handle`` (or ``submit`` for queued processing).
    """

    def __init__(
        self,
        l1_cache: L1Cache | None,
        l2_cache: L2Cache | None,
        metrics: MetricsCollector | None = None,
        batch_size: int = 100,
        batch_timeout: float = 1.0,
    ):
        self.l1_cache = l1_cache
        self.l2_cache = l2_cache
        self._metrics = metrics
        self.batch_size = batch_size
        self.batch_timeout = batch_timeout

        self._queue: asyncio.Queue[_Request] = asyncio.Queue()
        self._worker: asyncio.Task | None = None
        self.last_queued_result: InvalidationResult | None = None

    async def invalidate(self, key: str) -> InvalidationResult:
        """Invalidate a single key in both tiers."""
        return await self._delete_keys({key})

    async def invalidate_by_tags(self, tags: Iterable[str] | str) -> InvalidationResult:
        """Invalidate every key carrying any of ``tags``, using each tier's tag index."""
        tags_to_clear = set(tag_set(tags))
        result = InvalidationResult()
        keys_to_tags: dict[str, set[str]] = {}

        for tag in tags_to_clear:
            members = set(self.l1_cache.keys_with_tag(tag)) if self.l1_cache else set()
            if self.l2_cache is not None:
                try:
                    members |= await self.l2_cache.keys_with_tag(tag)
                except CacheError as e:
                    logger.warning(f"L2 tag index unavailable for tag {tag}: {e}")
                    result.failed_tags.add(tag)
                    if self._metrics:
                        self._metrics.record_error("l2")
            for key in members:
                keys_to_tags.setdefault(key, set()).add(tag)

        result.merge(await self._delete_keys(set(keys_to_tags), keys_to_tags))
        _audit.info(
            "invalidate_by_tags",
            tags=sorted(tags_to_clear),
            invalidated=len(result.invalidated),
            failed_keys=sorted(result.failed_keys),
            failed_tags=sorted(result.failed_tags),
        )
        return result

    async def handle(self, tags: Iterable[str] | str) -> InvalidationResult:
        """Event-handler entry point for any transport (queue, bus, direct call)."""
        return await self.invalidate_by_tags(tags)

    async def _delete_keys(
        self, keys: set[str], keys_to_tags: dict[str, set[str]] | None = None
    ) -> InvalidationResult:
        result = InvalidationResult()
        if not keys:
            return result

        if self.l1_cache:
            for key in keys:
                self.l1_cache.delete(key)

        if self.l2_cache is None:
            result.invalidated |= keys
            return result

        ordered = sorted(keys)
        outcomes = await asyncio.gather(
            *(self.l2_cache.delete(key, (keys_to_tags or {}).get(key, ())) for key in ordered),
            return_exceptions=True,
        )
        for key, outcome in zip(ordered, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, CacheError):
                    raise outcome
                logger.warning(f"L2 invalidation failed for key {key}: {outcome}")
                result.failed_keys.add(key)
                if self._metrics:
                    self._metrics.record_error("l2")
            else:
                result.invalidated.add(key)

        # Drops copies backfilled by reads that overlapped the L2 deletes
        if self.l1_cache:
            for key in result.invalidated:
                self.l1_cache.delete(key)
        return result

    # -- queued mode -------------------------------------------------------

    async def submit(self, keys: Iterable[str] = (), tags: Iterable[str] | str = ()) -> None:
        """Queue an invalidation for the background worker."""
        await self._queue.put(_Request(keys=frozenset(keys), tags=tag_set(tags)))

    async def drain(self) -> None:
        """Wait until every queued request has been processed."""
        await self._queue.join()

    def start(self) -> bool:
        if self._worker is not None and not self._worker.done():
            return True
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return False
        self._worker = loop.create_task(self._invalidation_worker(), name="cache-invalidation")
        return True

    async def stop(self) -> None:
        worker, self._worker = self._worker, None
        if worker is None or worker.done():
            return
        worker.cancel()
        try:
            await worker
        except asyncio.CancelledError:
            pass

    async def _invalidation_worker(self) -> None:
        """Collect queued requests into batches and apply them."""
        while True:
            try:
                first = await asyncio.wait_for(self._queue.get(), timeout=self.batch_timeout)
            except asyncio.TimeoutError:
                continue

            batch = [first]
            while len(batch) < self.batch_size:
                try:
                    batch.append(self._queue.get_nowait())
                except asyncio.QueueEmpty:
                    break

            try:
                await self._process_batch(batch)
            except Exception as e:
                logger.error(f"Cache invalidation worker error: {e}")
            finally:
                for _ in batch:
                    self._queue.task_done()

    async def _process_batch(self, batch: list[_Request]) -> None:
        keys = set().union(*(request.keys for request in batch))
        tags = set().union(*(request.tags for request in batch))

        result = InvalidationResult()
        if tags:
            result.merge(await self.invalidate_by_tags(tags))
        if keys - result.invalidated:
            result.merge(await self._delete_keys(keys - result.invalidated))

        self.last_queued_result = result
        logger.debug(f"Processed invalidation batch of {len(batch)} requests")
        if not result.ok:
            logger.warning(f"Queued invalidation left {len(result.failed_keys)} key(s) in L2: {sorted(result.failed_keys)}")
