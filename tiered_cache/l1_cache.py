"""L1 (in-memory) cache implementation with TTL, LRU eviction and a tag index."""

from __future__ import annotations

import builtins
import sys
import threading
import time
from collections import OrderedDict
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .tag_index import TagIndex, tag_set

if TYPE_CHECKING:
    from .cache_metrics import MetricsCollector


@dataclass
class CacheEntry:
    """Cache entry with TTL, tags and access tracking."""

    data: Any
    ttl_seconds: int
    tags: frozenset[str] = field(default_factory=frozenset)
    created_at: float = field(default_factory=time.time)
    accessed_at: float = 0.0
    access_count: int = 0

    def __post_init__(self):
        if self.ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be > 0, got {self.ttl_seconds}")
        self.tags = frozenset(self.tags)
        if not self.accessed_at:
            self.accessed_at = self.created_at

    @property
    def expires_at(self) -> float:
        return self.created_at + self.ttl_seconds

    def is_expired(self, now: float | None = None) -> bool:
        """Check if the entry has expired."""
        return (time.time() if now is None else now) > self.expires_at

    def remaining_ttl(self, now: float | None = None) -> float:
        return max(0.0, self.expires_at - (time.time() if now is None else now))

    def touch(self) -> None:
        """Update access tracking."""
        self.access_count += 1
        self.accessed_at = time.time()


class L1Cache:
    """Thread-safe L1 cache with TTL, LRU eviction and tag lookup.

    The OrderedDict keeps entries in recency order: new and re-accessed
    entries move to the end, so the front is always the least recently
    accessed entry, with never-read entries ordered by insertion.

    Backfills from a slower tier go through ``begin_fill``/``fill``/``end_fill``:
    any ``set``, ``delete`` or ``clear`` of the key in between makes ``fill``
    a no-op, so a stale read cannot resurrect an invalidated entry.
    """

    def __init__(self, max_size: int = 1000, default_ttl: int = 300, metrics: MetricsCollector | None = None):
        self.max_size = max_size
        self.default_ttl = default_ttl

        self._cache: OrderedDict[str, CacheEntry] = OrderedDict()
        self._tags = TagIndex()
        self._lock = threading.RLock()

        # key -> [pending fills, write generation]; only keys with a fill in flight
        self._fills: dict[str, list[int]] = {}

        self._metrics = metrics
        self._estimated_memory = 0

    def _update_memory_estimate(self, entry: CacheEntry, removed: bool = False) -> None:
        """Update estimated memory usage."""
        try:
            entry_size = sys.getsizeof(entry.data) + sys.getsizeof(entry) + 100  # overhead
        except TypeError:
            entry_size = 1024
        if removed:
            self._estimated_memory = max(0, self._estimated_memory - entry_size)
        else:
            self._estimated_memory += entry_size

    def _remove_locked(self, key: str) -> CacheEntry | None:
        entry = self._cache.pop(key, None)
        if entry is not None:
            self._tags.remove(key, entry.tags)
            self._update_memory_estimate(entry, removed=True)
        return entry

    def _bump_locked(self, key: str) -> None:
        state = self._fills.get(key)
        if state is not None:
            state[1] += 1

    def _report_expired(self, count: int) -> None:
        if count and self._metrics:
            self._metrics.record_expiration("l1", count)

    def get_entry(self, key: str) -> CacheEntry | None:
        """Return the live entry for ``key``, dropping it if expired."""
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                return None

            expired = entry.is_expired()
            if expired:
                self._remove_locked(key)
            else:
                entry.touch()
                self._cache.move_to_end(key)

        if expired:
            self._report_expired(1)
            return None
        return entry

    def get(self, key: str) -> tuple[Any, bool]:
        """Get ``(value, found)`` for ``key``."""
        entry = self.get_entry(key)
        if entry is None:
            return None, False
        return entry.data, True

    def set(self, key: str, value: Any, ttl: int | None = None, tags: Iterable[str] | str | None = None) -> None:
        """Set value in cache, evicting the LRU entry first when a new key would exceed capacity."""
        entry = CacheEntry(data=value, ttl_seconds=ttl or self.default_ttl, tags=tag_set(tags))
        with self._lock:
            self._bump_locked(key)
            self._store_locked(key, entry)

    def _store_locked(self, key: str, entry: CacheEntry) -> None:
        replaced = self._remove_locked(key)

        if replaced is None and len(self._cache) >= self.max_size:
            self.evict_one_lru()

        self._cache[key] = entry
        self._tags.add(key, entry.tags)
        self._update_memory_estimate(entry)

    def begin_fill(self, key: str) -> int:
        """Register a pending backfill of ``key``; returns the token to pass to ``fill``."""
        with self._lock:
            state = self._fills.setdefault(key, [0, 0])
            state[0] += 1
            return state[1]

    def fill(
        self, key: str, token: int, value: Any, ttl: int | None = None, tags: Iterable[str] | str | None = None
    ) -> bool:
        """Store ``value`` only if ``key`` was not written or deleted since ``begin_fill``."""
        entry = CacheEntry(data=value, ttl_seconds=ttl or self.default_ttl, tags=tag_set(tags))
        with self._lock:
            state = self._fills.get(key)
            if state is None or state[1] != token:
                return False
            self._store_locked(key, entry)
            return True

    def end_fill(self, key: str) -> None:
        with self._lock:
            state = self._fills.get(key)
            if state is None:
                return
            state[0] -= 1
            if state[0] <= 0:
                del self._fills[key]

    def delete(self, key: str) -> bool:
        """Delete key from cache."""
        with self._lock:
            self._bump_locked(key)
            return self._remove_locked(key) is not None

    def evict_one_lru(self) -> str | None:
        """Evict the least recently accessed entry and return its key."""
        with self._lock:
            if not self._cache:
                return None

            key = next(iter(self._cache))
            self._remove_locked(key)

        if self._metrics:
            self._metrics.record_eviction("l1")
        return key

    def sweep_expired(self) -> int:
        """Remove all expired entries regardless of access pattern; returns count removed."""
        now = time.time()
        with self._lock:
            expired_keys = [key for key, entry in self._cache.items() if entry.is_expired(now)]
            for key in expired_keys:
                self._remove_locked(key)

        self._report_expired(len(expired_keys))
        return len(expired_keys)

    def keys_with_tag(self, tag: str) -> builtins.set[str]:
        """Live keys carrying ``tag``."""
        now = time.time()
        with self._lock:
            return {key for key in self._tags.keys_with_tag(tag) if not self._cache[key].is_expired(now)}

    def exists(self, key: str) -> bool:
        """Check if key exists and is not expired, without touching recency."""
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                return False
            if not entry.is_expired():
                return True
            self._remove_locked(key)

        self._report_expired(1)
        return False

    def keys(self) -> builtins.set[str]:
        """Get all non-expired keys."""
        now = time.time()
        with self._lock:
            return {key for key, entry in self._cache.items() if not entry.is_expired(now)}

    def clear(self) -> None:
        """Clear all entries from cache."""
        with self._lock:
            for key in self._fills:
                self._bump_locked(key)
            self._cache.clear()
            self._tags.clear()
            self._estimated_memory = 0

    def size(self) -> int:
        with self._lock:
            return len(self._cache)

    def memory_usage(self) -> int:
        """Get estimated memory usage in bytes."""
        return self._estimated_memory

    def get_statistics(self) -> dict[str, Any]:
        """Get cache statistics."""
        now = time.time()
        with self._lock:
            total_entries = len(self._cache)
            expired_count = sum(1 for entry in self._cache.values() if entry.is_expired(now))
            total_access_count = sum(entry.access_count for entry in self._cache.values())

            return {
                "total_entries": total_entries,
                "expired_entries": expired_count,
                "valid_entries": total_entries - expired_count,
                "tags": len(self._tags),
                "memory_usage_bytes": self._estimated_memory,
                "max_size": self.max_size,
                "total_access_count": total_access_count,
                "avg_access_count": total_access_count / max(1, total_entries),
            }
