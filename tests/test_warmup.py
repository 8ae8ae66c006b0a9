"""Tests for batched cache warmup."""

import asyncio

import pytest

from tiered_cache import CacheConfig, CacheCoordinator


@pytest.fixture
def l1_only_config():
    return CacheConfig(l2_enabled=False, metrics_enabled=False, warmup_batch_size=3)


@pytest.mark.asyncio
async def test_warmup_loads_and_skips_warm_keys(l1_only_config):
    async with CacheCoordinator(l1_only_config) as cache:
        await cache.set("k2", "already")

        report = await cache.warmup(["k1", "k2", "k3"], lambda key: key.upper())

        assert sorted(report.loaded) == ["k1", "k3"]
        assert report.skipped == ["k2"]
        assert await cache.get("k1") == "K1"
        assert await cache.get("k2") == "already"


@pytest.mark.asyncio
async def test_warmup_idempotence_counts_loader_calls(l1_only_config):
    counter = {"calls": 0}

    async def loader(key):
        counter["calls"] += 1
        return {"key": key}

    async with CacheCoordinator(l1_only_config) as cache:
        await cache.warmup(["k1"], loader)
        await cache.warmup(["k1"], loader)

    assert counter["calls"] == 1


@pytest.mark.asyncio
async def test_batches_run_concurrently_and_sequentially(l1_only_config):
    active = 0
    peak = 0
    finished: list[str] = []
    batches_seen: list[int] = []

    async def loader(key):
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        batches_seen.append(len(finished))
        await asyncio.sleep(0.02)
        active -= 1
        finished.append(key)
        return key

    keys = [f"k{i}" for i in range(7)]
    async with CacheCoordinator(l1_only_config) as cache:
        report = await cache.warmup(keys, loader, batch_size=3)

    assert len(report.loaded) == 7
    assert peak == 3
    # Every loader of a batch starts after all loaders of the previous batch finished
    assert batches_seen == [0, 0, 0, 3, 3, 3, 6]


@pytest.mark.asyncio
async def test_loader_failures_are_isolated(l1_only_config):
    def loader(key):
        if key == "bad":
            raise RuntimeError("origin error")
        return key

    async with CacheCoordinator(l1_only_config) as cache:
        report = await cache.warmup(["good1", "bad", "good2", "good3"], loader, batch_size=2)

        assert sorted(report.loaded) == ["good1", "good2", "good3"]
        assert report.failed == {"bad": "origin error"}
        assert await cache.get("bad") is None


@pytest.mark.asyncio
async def test_warmup_applies_ttl_and_tags(l1_only_config):
    async with CacheCoordinator(l1_only_config) as cache:
        await cache.warmup(["a", "b"], lambda key: key, ttl=30, tags=["warm"])

        assert cache.l1_cache.keys_with_tag("warm") == {"a", "b"}
        assert cache.l1_cache.get_entry("a").ttl_seconds == 30


@pytest.mark.asyncio
async def test_invalid_batch_size(l1_only_config):
    async with CacheCoordinator(l1_only_config) as cache:
        with pytest.raises(ValueError):
            await cache.warmer.warmup(["a"], lambda key: key, batch_size=-1)


@pytest.mark.asyncio
async def test_scheduled_warmup_runs_until_close(l1_only_config):
    calls = []

    def loader(key):
        calls.append(key)
        return key

    cache = CacheCoordinator(l1_only_config)
    task = cache.warmer.schedule(lambda: [f"k{len(calls)}"], loader, interval_seconds=0.02)
    await asyncio.sleep(0.15)
    await cache.close()

    assert len(calls) >= 2
    assert not task.running
    seen = len(calls)
    await asyncio.sleep(0.05)
    assert len(calls) == seen
