"""L2 (Redis) cache implementation with a tag index stored beside the data."""

from __future__ import annotations

import asyncio
import builtins
import json
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Iterable
from typing import Any, TypeVar

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from .error_handling import call_with_retry
from .errors import SerializationError, StoreUnavailable
from .l1_cache import CacheEntry
from .tag_index import tag_set

logger = logging.getLogger(__name__)

T = TypeVar("T")

_RETRYABLE = (RedisConnectionError, RedisTimeoutError, asyncio.TimeoutError, ConnectionError, OSError)


class L2Cache(ABC):
    """Abstract base class for L2 cache implementations.

    Implementations raise ``StoreUnavailable`` or ``SerializationError``;
    deciding how to degrade is left to the caller.
    """

    @abstractmethod
    async def get(self, key: str) -> CacheEntry | None:
        """Get the stored entry, or None when absent or expired."""

    @abstractmethod
    async def set_with_ttl(self, key: str, value: Any, ttl_seconds: int, tags: Iterable[str] = ()) -> None:
        """Store value for ``ttl_seconds`` and add ``key`` to each tag's index set."""

    @abstractmethod
    async def delete(self, key: str, tags: Iterable[str] = ()) -> bool:
        """Delete key and drop it from its tag index sets (plus ``tags``)."""

    @abstractmethod
    async def keys_with_tag(self, tag: str) -> builtins.set[str]:
        """Keys recorded under ``tag`` in the index."""

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Check if key exists in L2 cache."""

    @abstractmethod
    async def health_check(self) -> bool:
        """Check if L2 cache is healthy."""

    async def close(self) -> None:
        """Release connections."""


class RedisL2Cache(L2Cache):
    """Redis-backed L2 tier.

    Data lives under ``key_prefix + key`` as a JSON envelope carrying the
    value, its tags, TTL and creation time. Each tag is a Redis set under
    ``tag_prefix + tag`` whose expiry is only ever extended, so it outlives
    every member written with it. Index updates are additive (SADD/SREM),
    which keeps concurrent writers from other processes safe.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        key_prefix: str = "cache:",
        tag_prefix: str = "cache-tags:",
        default_ttl: int = 1800,
        max_retries: int = 3,
        retry_delay: float = 0.1,
        operation_timeout: float = 2.0,
        max_connections: int = 20,
        socket_timeout: float = 5.0,
        socket_connect_timeout: float = 5.0,
        client: Any | None = None,
    ):
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.tag_prefix = tag_prefix
        self.default_ttl = default_ttl
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.operation_timeout = operation_timeout
        self.max_connections = max_connections
        self.socket_timeout = socket_timeout
        self.socket_connect_timeout = socket_connect_timeout

        # Redis client (initialized lazily unless injected)
        self._redis = client
        self._redis_pool = None
        self._owns_client = client is None
        self._initialized = client is not None

        # Health tracking
        self._last_health_check = 0.0
        self._health_status = True
        self._health_check_interval = 30.0

    async def _ensure_initialized(self) -> None:
        """Ensure Redis client is initialized."""
        if self._initialized:
            return

        self._redis_pool = redis.ConnectionPool.from_url(
            self.redis_url,
            max_connections=self.max_connections,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_connect_timeout,
            decode_responses=True,
        )
        self._redis = redis.Redis(connection_pool=self._redis_pool)

        # Test connection
        await self._redis.ping()

        self._initialized = True
        logger.info("Redis L2 cache initialized successfully")

    async def _call(self, name: str, operation: Callable[[], Awaitable[T]]) -> T:
        """Run a backend operation with timeout and retries, mapping failures to StoreUnavailable."""

        async def run() -> T:
            await self._ensure_initialized()
            return await operation()

        try:
            return await call_with_retry(
                run,
                name=f"l2_{name}",
                timeout=self.operation_timeout,
                max_retries=self.max_retries,
                retry_delay=self.retry_delay,
                retry_on=_RETRYABLE,
            )
        except RedisError as e:
            raise StoreUnavailable(f"Redis {name} failed: {e}") from e

    def _make_key(self, key: str) -> str:
        """Create prefixed cache key."""
        return f"{self.key_prefix}{key}"

    def _make_tag_key(self, tag: str) -> str:
        return f"{self.tag_prefix}{tag}"

    def _serialize(self, value: Any, ttl_seconds: int, tags: builtins.set[str]) -> str:
        envelope = {"v": value, "t": sorted(tags), "ttl": ttl_seconds, "c": time.time()}
        try:
            return json.dumps(envelope, separators=(",", ":"))
        except (TypeError, ValueError) as e:
            raise SerializationError(f"Cannot encode value for L2: {e}") from e

    def _deserialize(self, key: str, data: str) -> CacheEntry:
        try:
            envelope = json.loads(data)
            return CacheEntry(
                data=envelope["v"],
                ttl_seconds=int(envelope["ttl"]),
                tags=frozenset(envelope.get("t", ())),
                created_at=float(envelope["c"]),
            )
        except (json.JSONDecodeError, TypeError, KeyError, ValueError) as e:
            raise SerializationError(f"Cannot decode L2 value for key {key}: {e}") from e

    async def get(self, key: str) -> CacheEntry | None:
        """Get entry from Redis cache."""
        data = await self._call("get", lambda: self._redis.get(self._make_key(key)))
        if data is None:
            return None
        return self._deserialize(key, data)

    async def set_with_ttl(
        self, key: str, value: Any, ttl_seconds: int | None = None, tags: Iterable[str] | str = ()
    ) -> None:
        """Write value and its tag index entries in one MULTI/EXEC block."""
        ttl = ttl_seconds or self.default_ttl
        tags_to_write = set(tag_set(tags))
        payload = self._serialize(value, ttl, tags_to_write)

        async def write() -> list[Any]:
            pipe = self._redis.pipeline(transaction=True)
            pipe.set(self._make_key(key), payload, ex=ttl)
            for tag in tags_to_write:
                tag_key = self._make_tag_key(tag)
                pipe.sadd(tag_key, key)
                # NX covers a fresh set, GT only ever extends an existing expiry
                pipe.expire(tag_key, ttl, nx=True)
                pipe.expire(tag_key, ttl, gt=True)
            return await pipe.execute()

        await self._call("set", write)

    async def delete(self, key: str, tags: Iterable[str] = ()) -> bool:
        """Delete key from Redis along with its tag index memberships."""
        extra_tags = set(tag_set(tags))

        async def remove() -> bool:
            data_key = self._make_key(key)
            index_tags = set(extra_tags)
            raw = await self._redis.get(data_key)
            if raw is not None:
                try:
                    index_tags.update(self._deserialize(key, raw).tags)
                except SerializationError as e:
                    logger.warning(f"Deleting undecodable L2 entry {key}: {e}")

            pipe = self._redis.pipeline(transaction=True)
            pipe.delete(data_key)
            for tag in index_tags:
                pipe.srem(self._make_tag_key(tag), key)
            results = await pipe.execute()
            return bool(results[0])

        return await self._call("delete", remove)

    async def keys_with_tag(self, tag: str) -> builtins.set[str]:
        members = await self._call("keys_with_tag", lambda: self._redis.smembers(self._make_tag_key(tag)))
        return set(members or ())

    async def exists(self, key: str) -> bool:
        """Check if key exists in Redis cache."""
        result = await self._call("exists", lambda: self._redis.exists(self._make_key(key)))
        return result > 0

    async def health_check(self) -> bool:
        """Check Redis health, caching the result for ``_health_check_interval`` seconds."""
        current_time = time.time()
        if current_time - self._last_health_check < self._health_check_interval:
            return self._health_status

        try:
            self._health_status = bool(await self._call("ping", lambda: self._redis.ping()))
        except StoreUnavailable as e:
            logger.warning(f"Redis health check failed: {e}")
            self._health_status = False

        self._last_health_check = current_time
        return self._health_status

    async def get_info(self) -> dict[str, Any]:
        """Get Redis server information."""
        try:
            info = await self._call("info", lambda: self._redis.info())
        except StoreUnavailable as e:
            logger.error(f"Failed to get Redis info: {e}")
            return {"error": str(e)}

        return {
            "redis_version": info.get("redis_version", "unknown"),
            "used_memory": info.get("used_memory", 0),
            "used_memory_human": info.get("used_memory_human", "0B"),
            "connected_clients": info.get("connected_clients", 0),
            "keyspace_hits": info.get("keyspace_hits", 0),
            "keyspace_misses": info.get("keyspace_misses", 0),
        }

    async def close(self) -> None:
        """Close Redis connections owned by this cache."""
        if not self._owns_client:
            return
        try:
            if self._redis is not None:
                await self._redis.aclose()
            if self._redis_pool is not None:
                await self._redis_pool.disconnect()
            logger.info("Redis L2 cache connections closed")
        except RedisError as e:
            logger.error(f"Error closing Redis connections: {e}")
        finally:
            self._redis = None
            self._redis_pool = None
            self._initialized = False


class NoOpL2Cache(L2Cache):
    """No-op L2 cache implementation for when Redis is disabled."""

    async def get(self, key: str) -> CacheEntry | None:
        return None

    async def set_with_ttl(self, key: str, value: Any, ttl_seconds: int, tags: Iterable[str] = ()) -> None:
        pass

    async def delete(self, key: str, tags: Iterable[str] = ()) -> bool:
        return False

    async def keys_with_tag(self, tag: str) -> builtins.set[str]:
        return set()

    async def exists(self, key: str) -> bool:
        return False

    async def health_check(self) -> bool:
        return True
