"""Tests for the two-tier cache coordinator."""

import asyncio
from dataclasses import replace
from unittest.mock import AsyncMock

import pytest

from conftest import FakeRedis
from tiered_cache import CacheConfig, CacheCoordinator, RedisL2Cache, StoreUnavailable


def make_coordinator(config, fake_redis):
    l2 = RedisL2Cache(
        client=fake_redis,
        key_prefix=config.l2_key_prefix,
        tag_prefix=config.l2_tag_prefix,
        max_retries=config.l2_max_retries,
        retry_delay=config.l2_retry_delay,
        operation_timeout=config.l2_operation_timeout,
    )
    return CacheCoordinator(config, l2_cache=l2)


@pytest.mark.asyncio
async def test_round_trip(config, fake_redis):
    async with make_coordinator(config, fake_redis) as cache:
        for key, value, ttl in [("str", "v", 30), ("dict", {"a": [1, 2]}, 5), ("int", 42, 1000)]:
            await cache.set(key, value, ttl)
            assert await cache.get(key) == value


@pytest.mark.asyncio
async def test_set_then_get_from_l2_after_l1_loss(config, fake_redis):
    async with make_coordinator(config, fake_redis) as cache:
        await cache.set("key1", "value1", 300, ["group"])
        cache.l1_cache.delete("key1")

        assert await cache.get("key1") == "value1"
        # Backfilled with its tags
        assert cache.l1_cache.get("key1") == ("value1", True)
        assert cache.l1_cache.keys_with_tag("group") == {"key1"}


@pytest.mark.asyncio
async def test_expiry_in_both_tiers(config, fake_redis):
    async with make_coordinator(config, fake_redis) as cache:
        await cache.set("k", "v", 1)

        await asyncio.sleep(2)

        assert await cache.get("k") is None
        assert cache.l1_cache.get("k") == (None, False)
        assert await cache.l2_cache.get("k") is None


@pytest.mark.asyncio
async def test_ttl_split_between_tiers(config, fake_redis):
    async with make_coordinator(config, fake_redis) as cache:
        await cache.set("long", "v", 3600)
        await cache.set("default", "v")

        assert cache.l1_cache.get_entry("long").ttl_seconds == config.l1_default_ttl
        assert fake_redis.ttl_of("cache:long") > 3599
        assert fake_redis.ttl_of("cache:default") > config.l2_default_ttl - 1


@pytest.mark.asyncio
async def test_backfill_ttl_never_exceeds_l2_remaining(config, fake_redis):
    async with make_coordinator(config, fake_redis) as cache:
        await cache.l2_cache.set_with_ttl("k", "v", 5)

        assert await cache.get("k") == "v"
        assert cache.l1_cache.get_entry("k").ttl_seconds <= 5


@pytest.mark.asyncio
async def test_lru_bound_through_coordinator(config, fake_redis):
    async with make_coordinator(replace(config, l1_max_size=2), fake_redis) as cache:
        for key in ("a", "b", "c"):
            await cache.set(key, key)
            await cache.get(key)

        assert cache.l1_cache.keys() == {"b", "c"}


@pytest.mark.asyncio
async def test_tag_invalidation(config, fake_redis):
    async with make_coordinator(config, fake_redis) as cache:
        await cache.set("p:1", "X", 300, ["product-list"])
        await cache.set("p:2", "Y", 300, ["product-list"])
        await cache.set("other", "Z", 300, ["unrelated"])

        result = await cache.invalidate_by_tags(["product-list"])

        assert result.ok
        assert result.invalidated == {"p:1", "p:2"}
        assert await cache.get("p:1") is None
        assert await cache.get("p:2") is None
        assert await cache.get("other") == "Z"



class ReplyDelayedRedis(FakeRedis):
    """Reads a value immediately but only returns it after ``reply_delay`` seconds."""

    def __init__(self, reply_delay: float):
        super().__init__()
        self.reply_delay = reply_delay

    async def get(self, key):
        value = self._get(key)
        await asyncio.sleep(self.reply_delay)
        return value


@pytest.mark.asyncio
async def test_invalidation_during_l2_read_is_not_undone_by_backfill(config):
    async with make_coordinator(config, ReplyDelayedRedis(0.05)) as cache:
        await cache.set("p:1", "old", 300, ["product-list"])
        cache.l1_cache.delete("p:1")

        read = asyncio.create_task(cache.get("p:1"))
        await asyncio.sleep(0.01)
        result = await cache.invalidate_by_tags(["product-list"])

        assert result.ok
        assert await read == "old"
        assert cache.l1_cache.get("p:1") == (None, False)
        assert await cache.get("p:1") is None


@pytest.mark.asyncio
async def test_delete_during_l2_read_is_not_undone_by_backfill(config):
    async with make_coordinator(config, ReplyDelayedRedis(0.05)) as cache:
        await cache.set("k", "old")
        cache.l1_cache.delete("k")

        read = asyncio.create_task(cache.get("k"))
        await asyncio.sleep(0.01)
        assert await cache.delete("k") is True

        await read
        assert await cache.get("k") is None


@pytest.mark.asyncio
async def test_write_during_l2_read_wins_over_backfill(config):
    async with make_coordinator(config, ReplyDelayedRedis(0.05)) as cache:
        await cache.set("k", "old")
        cache.l1_cache.delete("k")

        read = asyncio.create_task(cache.get("k"))
        await asyncio.sleep(0.01)
        await cache.set("k", "new")

        await read
        assert await cache.get("k") == "new"


@pytest.mark.asyncio
async def test_bare_string_tags(config, fake_redis):
    async with make_coordinator(config, fake_redis) as cache:
        await cache.set("p:1", "X", 300, "product-list")
        await cache.set("p", "Y", 300, ["p"])

        result = await cache.invalidate_by_tags("product-list")

        assert result.invalidated == {"p:1"}
        assert await cache.get("p:1") is None
        assert await cache.get("p") == "Y"
        assert fake_redis.data[f"{config.l2_tag_prefix}p"] == {"p"}


@pytest.mark.asyncio
async def test_l2_values_come_back_as_json_types(config, fake_redis):
    async with make_coordinator(config, fake_redis) as cache:
        await cache.set("k", {"pair": (1, 2), "by_id": {7: "x"}})
        assert await cache.get("k") == {"pair": (1, 2), "by_id": {7: "x"}}

        cache.l1_cache.clear()

        assert await cache.get("k") == {"pair": [1, 2], "by_id": {"7": "x"}}


@pytest.mark.asyncio
async def test_warmup_idempotence(config, fake_redis):
    calls = []

    def loader(key):
        calls.append(key)
        return f"loaded-{key}"

    async with make_coordinator(config, fake_redis) as cache:
        await cache.warmup(["k1"], loader)
        await cache.warmup(["k1"], loader)

        assert calls == ["k1"]
        assert await cache.get("k1") == "loaded-k1"


@pytest.mark.asyncio
async def test_degraded_l2(config):
    fake = FakeRedis()
    fake.fail = True

    async with make_coordinator(config, fake) as cache:
        assert await cache.get("missing") is None

        assert await cache.set("k", "v") is False
        assert await cache.get("k") == "v"
        assert await cache.delete("k") is False
        assert await cache.get("k") is None

        stats = cache.metrics.snapshot()
        assert stats.tiers["l2"].errors >= 2


@pytest.mark.asyncio
async def test_l2_failure_on_get_is_a_miss():
    config = CacheConfig(metrics_enabled=False)
    mock_l2 = AsyncMock()
    mock_l2.get.side_effect = StoreUnavailable("timeout")

    async with CacheCoordinator(config, l2_cache=mock_l2) as cache:
        assert await cache.get("key1") is None
        mock_l2.get.assert_awaited_once_with("key1")


@pytest.mark.asyncio
async def test_write_through_order(config):
    mock_l2 = AsyncMock()

    async with CacheCoordinator(replace(config, metrics_enabled=False), l2_cache=mock_l2) as cache:

        async def check_l1_first(key, value, ttl, tags):
            assert cache.l1_cache.get(key) == (value, True)

        mock_l2.set_with_ttl.side_effect = check_l1_first

        assert await cache.set("key1", "value1", 120, ["t"]) is True
        mock_l2.set_with_ttl.assert_awaited_once_with("key1", "value1", 120, frozenset({"t"}))

        # Served from L1, no L2 read
        assert await cache.get("key1") == "value1"
        mock_l2.get.assert_not_called()


@pytest.mark.asyncio
async def test_none_value_deletes_key(config, fake_redis):
    async with make_coordinator(config, fake_redis) as cache:
        await cache.set("k", "v")
        await cache.set("k", None)

        assert await cache.get("k") is None
        assert "cache:k" not in fake_redis.data


@pytest.mark.asyncio
async def test_set_rejects_non_positive_ttl(config, fake_redis):
    async with make_coordinator(config, fake_redis) as cache:
        with pytest.raises(ValueError):
            await cache.set("k", "v", 0)


@pytest.mark.asyncio
async def test_refresh_invokes_loader_unconditionally(config, fake_redis):
    calls = []

    async def loader():
        calls.append(1)
        return len(calls)

    async with make_coordinator(config, fake_redis) as cache:
        assert await cache.refresh("counter", loader) == 1
        assert await cache.refresh("counter", loader) == 2
        assert await cache.get("counter") == 2


@pytest.mark.asyncio
async def test_refresh_loader_failure_returns_none(config, fake_redis):
    def loader():
        raise RuntimeError("origin down")

    async with make_coordinator(config, fake_redis) as cache:
        await cache.set("k", "old")

        assert await cache.refresh("k", loader) is None
        assert await cache.get("k") == "old"


@pytest.mark.asyncio
async def test_get_or_set_coalesces_concurrent_loaders(config, fake_redis):
    calls = []

    async def loader():
        calls.append(1)
        await asyncio.sleep(0.05)
        return "value"

    async with make_coordinator(config, fake_redis) as cache:
        results = await asyncio.gather(*(cache.get_or_set("hot", loader) for _ in range(10)))

        assert results == ["value"] * 10
        assert len(calls) == 1
        assert await cache.get_or_set("hot", loader) == "value"
        assert len(calls) == 1


@pytest.mark.asyncio
async def test_get_or_set_propagates_loader_error(config, fake_redis):
    async def loader():
        raise RuntimeError("boom")

    async with make_coordinator(config, fake_redis) as cache:
        with pytest.raises(RuntimeError):
            await cache.get_or_set("k", loader)
        assert cache._inflight == {}



@pytest.mark.asyncio
async def test_cancelled_loader_fails_waiters_with_store_unavailable(config, fake_redis):
    started = asyncio.Event()

    async def loader():
        started.set()
        await asyncio.sleep(10)

    async with make_coordinator(config, fake_redis) as cache:
        leader = asyncio.create_task(cache.get_or_set("k", loader))
        await started.wait()
        waiter = asyncio.create_task(cache.get_or_set("k", loader))
        await asyncio.sleep(0.01)

        leader.cancel()

        with pytest.raises(asyncio.CancelledError):
            await leader
        with pytest.raises(StoreUnavailable):
            await waiter
        assert cache._inflight == {}


@pytest.mark.asyncio
async def test_mset_and_mget(config, fake_redis):
    async with make_coordinator(config, fake_redis) as cache:
        assert await cache.mset({"a": 1, "b": 2}, ttl=60, tags=["batch"]) is True

        assert await cache.mget(["a", "b", "c"]) == {"a": 1, "b": 2}
        assert await cache.l2_cache.keys_with_tag("batch") == {"a", "b"}


@pytest.mark.asyncio
async def test_exists(config, fake_redis):
    async with make_coordinator(config, fake_redis) as cache:
        await cache.set("k", "v")
        assert await cache.exists("k") is True

        cache.l1_cache.delete("k")
        assert await cache.exists("k") is True
        assert await cache.exists("nope") is False


@pytest.mark.asyncio
async def test_l1_only_configuration():
    config = CacheConfig(l2_enabled=False, metrics_enabled=False)

    async with CacheCoordinator(config) as cache:
        assert await cache.set("key1", "value1") is True
        assert await cache.get("key1") == "value1"
        assert await cache.delete("key1") is True
        assert await cache.get("key1") is None

        health = await cache.health_check()
        assert health == {"l1_cache": True, "l2_cache": True, "overall": True}


@pytest.mark.asyncio
async def test_hit_and_miss_metrics_per_tier(config, fake_redis):
    async with make_coordinator(config, fake_redis) as cache:
        await cache.set("k", "v")
        await cache.get("k")  # L1 hit
        cache.l1_cache.delete("k")
        await cache.get("k")  # L1 miss, L2 hit
        await cache.get("absent")  # L1 miss, L2 miss

        tiers = cache.metrics.snapshot().tiers
        assert (tiers["l1"].hits, tiers["l1"].misses) == (1, 2)
        assert (tiers["l2"].hits, tiers["l2"].misses) == (1, 1)


@pytest.mark.asyncio
async def test_background_tasks_lifecycle(config, fake_redis):
    cache = make_coordinator(config, fake_redis)

    assert cache.eviction.running
    assert cache.metrics._task.running

    await cache.close()

    assert not cache.eviction.running
    assert not cache.metrics._task.running
    # Closing twice is a no-op
    await cache.close()


def test_construction_outside_event_loop_defers_tasks(config, fake_redis):
    cache = make_coordinator(config, fake_redis)
    assert not cache.eviction.running

    async def run():
        await cache.start()
        assert cache.eviction.running
        await cache.close()
        with pytest.raises(RuntimeError):
            await cache.start()

    asyncio.run(run())


@pytest.mark.asyncio
async def test_statistics(config, fake_redis):
    async with make_coordinator(config, fake_redis) as cache:
        await cache.set("key1", "value1")
        await cache.get("key1")
        await cache.get("nonexistent")

        stats = cache.get_statistics()

        assert stats["config"]["l1_enabled"] is True
        assert stats["l1_cache"]["total_entries"] == 1
        assert stats["metrics"]["current"]["tiers"]["l1"]["hits"] == 1
