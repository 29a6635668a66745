"""
Test the multi-tier cache and key invalidation.
"""

import time

import fakeredis
import pytest

from mining_engine.cache.cache_keys import CacheKeyBuilder
from mining_engine.cache.cache_service import (
    CacheEntry,
    CacheService,
    CacheTier,
    MemoryCacheTier,
    RedisCacheTier,
)
from mining_engine.cache.invalidation import CacheInvalidator, InvalidationTrigger
from mining_engine.cache.redis_client import RedisClient


class ManualTime:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class BrokenTier(CacheTier):
    name = "broken"

    async def get(self, key):
        raise ConnectionError("tier down")

    async def set(self, key, entry):
        raise ConnectionError("tier down")

    async def delete(self, *keys):
        raise ConnectionError("tier down")

    async def delete_pattern(self, pattern):
        raise ConnectionError("tier down")

    async def clear(self):
        raise ConnectionError("tier down")


@pytest.fixture
def keys():
    return CacheKeyBuilder(prefix="mining_engine", environment="test")


@pytest.fixture
async def redis_client():
    client = RedisClient(client=fakeredis.FakeAsyncRedis(decode_responses=True))
    await client.connect()
    yield client
    await client.disconnect()


def test_keys_are_namespaced(keys):
    assert keys.owner_snapshot_key("alice") == "mining_engine:test:owner:alice"
    assert keys.slot_snapshot_key(7) == "mining_engine:test:slot:7"
    assert keys.global_stats_key() == "mining_engine:test:global_stats"
    assert keys.namespace_pattern() == "mining_engine:test:*"


async def test_fallback_runs_once_then_hits(keys):
    cache = CacheService([MemoryCacheTier()], key_builder=keys)
    calls = []

    async def load():
        calls.append(1)
        return {"balance": "1.5"}

    first = await cache.get("k", load, ttl=30)
    second = await cache.get("k", load, ttl=30)

    assert first == second == {"balance": "1.5"}
    assert len(calls) == 1
    stats = cache.get_cache_stats()
    assert stats["misses"] == 1
    assert stats["hits"] == {"memory": 1}


async def test_entries_expire(keys):
    time_source = ManualTime()
    cache = CacheService([MemoryCacheTier(clock=time_source)], key_builder=keys, clock=time_source)

    await cache.set("k", "v", ttl=15)
    time_source.now += 16

    assert await cache.get("k") is None


async def test_fallback_errors_propagate(keys):
    cache = CacheService([MemoryCacheTier()], key_builder=keys)

    async def load():
        raise LookupError("source down")

    with pytest.raises(LookupError):
        await cache.get("k", load)


async def test_memory_tier_evicts_least_recently_used():
    tier = MemoryCacheTier(max_entries=2)
    entry = CacheEntry(value=1, created_at=0, expires_at=10**12)

    await tier.set("a", entry)
    await tier.set("b", entry)
    await tier.get("a")
    await tier.set("c", entry)

    assert await tier.get("a") is not None
    assert await tier.get("b") is None
    assert len(tier) == 2


async def test_memory_tier_expires_each_entry_on_its_own_ttl():
    time_source = ManualTime(now=100.0)
    tier = MemoryCacheTier(clock=time_source)
    await tier.set("short", CacheEntry(value=1, created_at=100.0, expires_at=110.0))
    await tier.set("long", CacheEntry(value=2, created_at=100.0, expires_at=200.0))

    time_source.now = 110.0

    assert await tier.get("short") is None
    assert (await tier.get("long")).value == 2
    assert len(tier) == 1


async def test_redis_tier_stores_json_with_ttl(redis_client, keys):
    tier = RedisCacheTier(redis_client, key_builder=keys, clock=lambda: 100.0)

    await tier.set("mining_engine:test:owner:alice", CacheEntry(value={"a": "1"}, created_at=100.0, expires_at=130.0))

    ttl = await redis_client.client.ttl("mining_engine:test:owner:alice")
    assert 0 < ttl <= 30
    entry = await tier.get("mining_engine:test:owner:alice")
    assert entry.value == {"a": "1"}


async def test_lower_tier_hit_is_promoted(redis_client, keys):
    memory = MemoryCacheTier()
    cache = CacheService([memory, RedisCacheTier(redis_client, key_builder=keys)], key_builder=keys)
    expires_at = time.time() + 3600
    await RedisCacheTier(redis_client, key_builder=keys).set(
        "shared", CacheEntry(value="from-redis", created_at=0, expires_at=expires_at)
    )

    assert await cache.get("shared") == "from-redis"
    promoted = await memory.get("shared")
    assert promoted.value == "from-redis"
    assert promoted.expires_at == expires_at


async def test_failing_tier_is_skipped(keys):
    memory = MemoryCacheTier()
    cache = CacheService([BrokenTier(), memory], key_builder=keys)

    async def load():
        return "fresh"

    assert await cache.get("k", load) == "fresh"
    assert (await memory.get("k")).value == "fresh"
    assert await cache.delete("k") == 1
    assert cache.get_cache_stats()["tier_errors"] >= 3


async def test_delete_pattern_and_clear(redis_client, keys):
    memory = MemoryCacheTier()
    cache = CacheService([memory, RedisCacheTier(redis_client, key_builder=keys)], key_builder=keys)
    await cache.set(keys.owner_snapshot_key("alice"), 1)
    await cache.set(keys.slot_snapshot_key(7), 2)
    await cache.set(keys.owner_snapshot_key("bob"), 3)

    deleted = await cache.delete_pattern(keys.owner_pattern("alice"))

    assert deleted == 1
    assert await cache.get(keys.slot_snapshot_key(7)) == 2
    assert await cache.get(keys.owner_snapshot_key("bob")) == 3

    await cache.clear()
    assert len(memory) == 0
    assert await redis_client.keys_matching(keys.namespace_pattern()) == []


@pytest.mark.parametrize("trigger", list(InvalidationTrigger))
def test_every_trigger_drops_owner_slot_and_stats_keys(keys, trigger):
    invalidator = CacheInvalidator(CacheService([MemoryCacheTier()], key_builder=keys))

    stale = invalidator.keys_for(trigger, "alice", [3])

    assert stale == [keys.owner_snapshot_key("alice"), keys.slot_snapshot_key(3), keys.global_stats_key()]


async def test_invalidate_removes_cached_views(keys):
    cache = CacheService([MemoryCacheTier()], key_builder=keys)
    invalidator = CacheInvalidator(cache)
    await cache.set(keys.owner_snapshot_key("alice"), {"balance": "1"})
    await cache.set(keys.global_stats_key(), {"slots": 1})
    await cache.set(keys.owner_snapshot_key("bob"), {"balance": "2"})

    await invalidator.invalidate(InvalidationTrigger.SLOT_EXPIRED, "alice", [1])

    assert await cache.get(keys.owner_snapshot_key("alice")) is None
    assert await cache.get(keys.global_stats_key()) is None
    assert await cache.get(keys.owner_snapshot_key("bob")) == {"balance": "2"}
    assert invalidator.get_invalidation_metrics()["total_invalidations"] == 1
