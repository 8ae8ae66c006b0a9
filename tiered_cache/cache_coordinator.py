"""Two-tier cache coordinator: read-through L1 -> L2, write-through L1 + L2."""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import Callable, Iterable, Mapping, Sequence
from typing import Any

from .cache_config import CacheConfig
from .cache_metrics import MetricsCollector
from .errors import CacheError, StoreUnavailable
from .eviction import EvictionManager
from .invalidation import InvalidationBroker, InvalidationResult
from .l1_cache import L1Cache
from .l2_cache import L2Cache, NoOpL2Cache, RedisL2Cache
from .tag_index import tag_set
from .warmup import Loader, WarmupReport, WarmupScheduler, call_loader

logger = logging.getLogger(__name__)


class CacheCoordinator:
    """The cache's public entry point.

    Construct one per process at startup and pass it to the code that needs
    it. Store errors never reach callers: an unavailable L2 degrades reads to
    misses and writes to L1-only.
    """

    def __init__(
        self,
        config: CacheConfig | None = None,
        l2_cache: L2Cache | None = None,
        metrics: MetricsCollector | None = None,
    ):
        self.config = config or CacheConfig.from_environment()

        self.metrics = metrics
        if self.metrics is None and self.config.metrics_enabled:
            self.metrics = MetricsCollector(
                collect_interval=self.config.metrics_collect_interval,
                window_seconds=self.config.metrics_window_seconds,
                l1_hit_rate_min=self.config.alert_l1_hit_rate_min,
                avg_response_ms_max=self.config.alert_avg_response_ms_max,
            )

        self.l1_cache = (
            L1Cache(max_size=self.config.l1_max_size, default_ttl=self.config.l1_default_ttl, metrics=self.metrics)
            if self.config.l1_enabled
            else None
        )
        self.l2_cache = l2_cache or self._create_l2_cache()

        self.eviction = EvictionManager(self.l1_cache, self.config.l1_sweep_interval) if self.l1_cache else None
        self.invalidation = InvalidationBroker(
            self.l1_cache,
            self.l2_cache if self.config.l2_enabled else None,
            metrics=self.metrics,
            batch_size=self.config.invalidation_batch_size,
            batch_timeout=self.config.invalidation_timeout,
        )
        self.warmer = WarmupScheduler(self, batch_size=self.config.warmup_batch_size)

        self._inflight: dict[str, asyncio.Future] = {}
        self._started = False
        self._closed = False

        # Background tasks start now when a loop is running, otherwise on start()
        self._start_background_tasks()

        logger.info(f"Cache coordinator initialized - L1: {self.config.l1_enabled}, L2: {self.config.l2_enabled}")

    def _create_l2_cache(self) -> L2Cache:
        """Create L2 cache instance based on configuration."""
        if not self.config.l2_enabled:
            return NoOpL2Cache()

        return RedisL2Cache(
            redis_url=self.config.redis_url,
            key_prefix=self.config.l2_key_prefix,
            tag_prefix=self.config.l2_tag_prefix,
            default_ttl=self.config.l2_default_ttl,
            max_retries=self.config.l2_max_retries,
            retry_delay=self.config.l2_retry_delay,
            operation_timeout=self.config.l2_operation_timeout,
            max_connections=self.config.redis_max_connections,
            socket_timeout=self.config.redis_socket_timeout,
            socket_connect_timeout=self.config.redis_socket_connect_timeout,
        )

    def _start_background_tasks(self) -> bool:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return False

        if self.eviction:
            self.eviction.start()
        if self.metrics:
            self.metrics.start()
        if self.config.invalidation_queue_enabled:
            self.invalidation.start()
        self._started = True
        return True

    async def start(self) -> CacheCoordinator:
        """Start background tasks if construction happened outside an event loop."""
        if self._closed:
            raise RuntimeError("Cache coordinator is closed")
        if not self._started:
            self._start_background_tasks()
        return self

    async def __aenter__(self) -> CacheCoordinator:
        return await self.start()

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # -- reads -------------------------------------------------------------

    async def get(self, key: str) -> Any | None:
        """Get value from cache (L1 first, then L2). Never invokes a loader."""
        start_time = time.perf_counter()

        try:
            if self.l1_cache:
                value, found = self.l1_cache.get(key)
                if found:
                    self._record("hit", "l1")
                    logger.debug(f"L1 hit: {key}")
                    return value
                self._record("miss", "l1")

            if not self.config.l2_enabled:
                return None

            # Any write or delete of key during the L2 read voids the backfill
            token = self.l1_cache.begin_fill(key) if self.l1_cache else 0
            try:
                try:
                    entry = await self.l2_cache.get(key)
                except CacheError as e:
                    logger.warning(f"L2 get failed for key {key}, treating as miss: {e}")
                    self._record("error", "l2")
                    self._record("miss", "l2")
                    return None

                if entry is None or entry.is_expired():
                    self._record("miss", "l2")
                    logger.debug(f"Cache miss: {key}")
                    return None

                self._record("hit", "l2")
                logger.debug(f"L2 hit: {key}")
                if self.l1_cache and not self.l1_cache.fill(
                    key, token, entry.data, self._backfill_ttl(entry.remaining_ttl()), entry.tags
                ):
                    logger.debug(f"Skipped L1 backfill of {key}: key changed during L2 read")
                return entry.data
            finally:
                if self.l1_cache:
                    self.l1_cache.end_fill(key)

        finally:
            if self.metrics:
                self.metrics.record_response_time(time.perf_counter() - start_time, "get")

    def _backfill_ttl(self, l2_remaining: float) -> int:
        # L1 copy never outlives the L2 copy it came from
        return max(1, min(self.config.l1_default_ttl, math.ceil(l2_remaining)))

    async def exists(self, key: str) -> bool:
        """Check if key exists in cache."""
        if self.l1_cache and self.l1_cache.exists(key):
            return True
        if not self.config.l2_enabled:
            return False
        try:
            return await self.l2_cache.exists(key)
        except CacheError as e:
            logger.warning(f"L2 exists failed for key {key}: {e}")
            self._record("error", "l2")
            return False

    async def mget(self, keys: Sequence[str]) -> dict[str, Any]:
        """Get several keys; missing keys are omitted from the result."""
        values = await asyncio.gather(*(self.get(key) for key in keys))
        return {key: value for key, value in zip(keys, values) if value is not None}

    # -- writes ------------------------------------------------------------

    async def set(
        self, key: str, value: Any, ttl: int | None = None, tags: Iterable[str] | str | None = None
    ) -> bool:
        """Write-through: L1 first, then L2.

        Returns False when L2 rejected the write; the L1 copy is kept either way.

        L2 stores values as JSON, so a value read back after an L1 miss has
        JSON types: tuples come back as lists and non-string dict keys as
        strings. Values that JSON cannot encode are kept in L1 only.
        """
        start_time = time.perf_counter()
        if ttl is not None and ttl <= 0:
            raise ValueError(f"ttl must be > 0, got {ttl}")

        try:
            if value is None and not self.config.cache_null_values:
                await self.delete(key)
                return True

            tags_to_write = tag_set(tags)
            if self.l1_cache:
                l1_ttl = min(ttl, self.config.l1_default_ttl) if ttl else self.config.l1_default_ttl
                self.l1_cache.set(key, value, l1_ttl, tags_to_write)

            if not self.config.l2_enabled:
                return True

            try:
                await self.l2_cache.set_with_ttl(key, value, ttl or self.config.l2_default_ttl, tags_to_write)
            except CacheError as e:
                logger.warning(f"L2 set failed for key {key}, keeping L1 copy: {e}")
                self._record("error", "l2")
                return False
            return True

        finally:
            if self.metrics:
                self.metrics.record_response_time(time.perf_counter() - start_time, "set")

    async def mset(
        self, items: Mapping[str, Any], ttl: int | None = None, tags: Iterable[str] | str | None = None
    ) -> bool:
        """Set several keys with the same TTL and tags."""
        tags_to_write = tag_set(tags)
        results = await asyncio.gather(*(self.set(key, value, ttl, tags_to_write) for key, value in items.items()))
        return all(results)

    async def delete(self, key: str) -> bool:
        """Delete key from both tiers; returns False if L2 could not be reached."""
        if self.l1_cache:
            self.l1_cache.delete(key)

        if not self.config.l2_enabled:
            return True
        try:
            await self.l2_cache.delete(key)
        except CacheError as e:
            logger.warning(f"L2 delete failed for key {key}: {e}")
            self._record("error", "l2")
            return False

        # A read overlapping the L2 delete may have backfilled the old value
        if self.l1_cache:
            self.l1_cache.delete(key)
        return True

    async def clear(self) -> None:
        """Clear L1. L2 entries are shared with other processes and left to their TTL."""
        if self.l1_cache:
            self.l1_cache.clear()

    # -- loaders -----------------------------------------------------------

    async def refresh(
        self, key: str, loader: Callable[[], Any], ttl: int | None = None, tags: Iterable[str] | str | None = None
    ) -> Any | None:
        """Reload ``key`` from ``loader`` unconditionally and store the result."""
        try:
            value = await call_loader(loader)
        except Exception as e:
            logger.warning(f"Refresh loader failed for key {key}: {e}")
            return None

        await self.set(key, value, ttl, tags)
        return value

    async def get_or_set(
        self, key: str, loader: Callable[[], Any], ttl: int | None = None, tags: Iterable[str] | str | None = None
    ) -> Any | None:
        """Return the cached value or load it once.

        Concurrent callers missing the same key in this process share a single
        loader call. Loader errors propagate to every waiting caller; if the
        loading caller is cancelled, the waiters get ``StoreUnavailable``.
        """
        value = await self.get(key)
        if value is not None:
            return value

        pending = self._inflight.get(key)
        if pending is not None:
            return await asyncio.shield(pending)

        future = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            value = await call_loader(loader)
            await self.set(key, value, ttl, tags)
            future.set_result(value)
            return value
        except Exception as e:
            future.set_exception(e)
            # Mark retrieved so an unawaited future does not log a warning
            future.exception()
            raise
        except asyncio.CancelledError:
            # Waiters were not cancelled themselves, so they get an ordinary error
            future.set_exception(StoreUnavailable(f"Shared load of key {key} was cancelled"))
            future.exception()
            raise
        finally:
            if not future.done():
                future.cancel()
            del self._inflight[key]

    # -- invalidation and warmup -------------------------------------------

    async def invalidate(self, key: str) -> InvalidationResult:
        return await self.invalidation.invalidate(key)

    async def invalidate_by_tags(self, tags: Iterable[str] | str) -> InvalidationResult:
        return await self.invalidation.invalidate_by_tags(tags)

    async def warmup(
        self,
        keys: Sequence[str],
        loader: Loader,
        batch_size: int | None = None,
        ttl: int | None = None,
        tags: Iterable[str] | str | None = None,
    ) -> WarmupReport:
        return await self.warmer.warmup(keys, loader, batch_size, ttl, tags)

    # -- observability -----------------------------------------------------

    def _record(self, kind: str, tier: str) -> None:
        if not self.metrics:
            return
        if kind == "hit":
            self.metrics.record_hit(tier)
        elif kind == "miss":
            self.metrics.record_miss(tier)
        else:
            self.metrics.record_error(tier)

    async def health_check(self) -> dict[str, Any]:
        """Perform health check on cache components."""
        health: dict[str, Any] = {"l1_cache": True, "l2_cache": True, "overall": True}

        # A probe write could evict live data, so L1 is checked against its size bound
        if self.l1_cache:
            health["l1_cache"] = self.l1_cache.size() <= self.l1_cache.max_size

        if self.config.l2_enabled:
            health["l2_cache"] = await self.l2_cache.health_check()

        health["overall"] = health["l1_cache"] and health["l2_cache"]
        return health

    def get_statistics(self) -> dict[str, Any]:
        """Get comprehensive cache statistics."""
        stats: dict[str, Any] = {
            "config": {
                "l1_enabled": self.config.l1_enabled,
                "l2_enabled": self.config.l2_enabled,
                "l1_max_size": self.config.l1_max_size,
            }
        }
        if self.l1_cache:
            stats["l1_cache"] = self.l1_cache.get_statistics()
        if self.eviction:
            stats["eviction"] = {"total_swept": self.eviction.total_swept, "last_sweep_at": self.eviction.last_sweep_at}
        if self.metrics:
            stats["metrics"] = self.metrics.get_statistics()
        return stats

    # -- lifecycle ---------------------------------------------------------

    async def close(self) -> None:
        """Stop every background task and release L2 connections."""
        if self._closed:
            return
        self._closed = True

        if self.eviction:
            await self.eviction.stop()
        if self.metrics:
            await self.metrics.stop()
        await self.invalidation.stop()
        await self.warmer.stop()
        await self.l2_cache.close()

        logger.info("Cache coordinator closed")
