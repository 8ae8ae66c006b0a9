"""Pytest configuration and shared fixtures for the cache test-suite."""

# Ensure project root on sys.path for imports
import asyncio
import os
import sys
import time

import pytest

root = os.path.dirname(os.path.abspath(__file__))
proj = os.path.abspath(os.path.join(root, ".."))
if proj not in sys.path:
    sys.path.insert(0, proj)

from redis.exceptions import ConnectionError as RedisConnectionError  # noqa: E402

from tiered_cache import CacheConfig, RedisL2Cache  # noqa: E402


class FakeRedis:
    """In-memory stand-in for the subset of ``redis.asyncio.Redis`` the L2 tier uses.

    Honors key expiry, so TTL behaviour can be asserted end to end. Setting
    ``fail`` makes every command raise a connection error; ``fail_keys``
    does the same only for commands touching those (prefixed) keys.
    """

    def __init__(self, delay: float = 0.0):
        self.data: dict[str, object] = {}
        self.expiry: dict[str, float] = {}
        self.delay = delay
        self.fail = False
        self.fail_keys: set[str] = set()
        self.calls: list[str] = []

    # -- helpers -----------------------------------------------------------

    def _purge(self, key: str) -> None:
        expires_at = self.expiry.get(key)
        if expires_at is not None and time.time() >= expires_at:
            self.data.pop(key, None)
            self.expiry.pop(key, None)

    def _check(self, command: str, *keys: str) -> None:
        self.calls.append(command)
        if self.fail or any(key in self.fail_keys for key in keys):
            raise RedisConnectionError(f"fake redis unavailable for {command}")
        for key in keys:
            self._purge(key)

    async def _pause(self) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)

    def ttl_of(self, key: str) -> float | None:
        expires_at = self.expiry.get(key)
        return None if expires_at is None else expires_at - time.time()

    # -- synchronous implementations shared with the pipeline -------------

    def _get(self, key):
        self._check("get", key)
        value = self.data.get(key)
        return value if isinstance(value, str) else None

    def _set(self, key, value, ex=None):
        self._check("set", key)
        self.data[key] = value
        if ex:
            self.expiry[key] = time.time() + ex
        else:
            self.expiry.pop(key, None)
        return True

    def _delete(self, *keys):
        self._check("delete", *keys)
        removed = 0
        for key in keys:
            if key in self.data:
                removed += 1
                self.data.pop(key)
                self.expiry.pop(key, None)
        return removed

    def _sadd(self, key, *members):
        self._check("sadd", key)
        members_set = self.data.setdefault(key, set())
        before = len(members_set)
        members_set.update(members)
        return len(members_set) - before

    def _srem(self, key, *members):
        self._check("srem", key)
        members_set = self.data.get(key)
        if not isinstance(members_set, set):
            return 0
        before = len(members_set)
        members_set.difference_update(members)
        if not members_set:
            self.data.pop(key)
            self.expiry.pop(key, None)
        return before - len(members_set)

    def _expire(self, key, seconds, nx=False, gt=False):
        self._check("expire", key)
        if key not in self.data:
            return False
        current = self.expiry.get(key)
        new = time.time() + seconds
        if nx and current is not None:
            return False
        if gt and (current is None or new <= current):
            return False
        self.expiry[key] = new
        return True

    # -- async client API --------------------------------------------------

    async def get(self, key):
        await self._pause()
        return self._get(key)

    async def set(self, key, value, ex=None):
        await self._pause()
        return self._set(key, value, ex=ex)

    async def delete(self, *keys):
        await self._pause()
        return self._delete(*keys)

    async def sadd(self, key, *members):
        return self._sadd(key, *members)

    async def srem(self, key, *members):
        return self._srem(key, *members)

    async def smembers(self, key):
        await self._pause()
        self._check("smembers", key)
        members = self.data.get(key)
        return set(members) if isinstance(members, set) else set()

    async def expire(self, key, seconds, nx=False, gt=False):
        return self._expire(key, seconds, nx=nx, gt=gt)

    async def exists(self, *keys):
        await self._pause()
        self._check("exists", *keys)
        return sum(1 for key in keys if key in self.data)

    async def ping(self):
        await self._pause()
        self._check("ping")
        return True

    async def info(self):
        self._check("info")
        return {"redis_version": "7.2.0", "used_memory": 1024}

    async def aclose(self):
        self.calls.append("aclose")

    def pipeline(self, transaction=True):
        return FakePipeline(self)


class FakePipeline:
    """Buffers commands and applies them on ``execute``."""

    def __init__(self, client: FakeRedis):
        self.client = client
        self.commands: list[tuple[str, tuple, dict]] = []

    def __getattr__(self, name):
        if name not in {"get", "set", "delete", "sadd", "srem", "expire"}:
            raise AttributeError(name)

        def buffer(*args, **kwargs):
            self.commands.append((name, args, kwargs))
            return self

        return buffer

    async def execute(self):
        await self.client._pause()
        return [getattr(self.client, f"_{name}")(*args, **kwargs) for name, args, kwargs in self.commands]


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def l2_cache(fake_redis):
    return RedisL2Cache(client=fake_redis, max_retries=0, retry_delay=0.0, operation_timeout=1.0)


@pytest.fixture
def config():
    return CacheConfig(
        l1_max_size=100,
        l1_default_ttl=60,
        l2_default_ttl=600,
        l2_max_retries=1,
        l2_retry_delay_ms=0,
        l2_operation_timeout=0.5,
        metrics_enabled=True,
    )
