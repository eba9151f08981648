import asyncio
import json

import pytest

from feed_service.cache import ExpiringCache, MemoryCacheStore, RedisCacheStore
from feed_service.exceptions import FetchError
from feed_service.schemas import CachePayload, WardrobeItem

from conftest import NOW, MutableClock


class FakeRedis:
    """Subset of redis.asyncio.Redis used by RedisCacheStore"""

    def __init__(self):
        self.data = {}

    async def get(self, key):
        return self.data.get(key)

    async def set(self, key, value):
        self.data[key] = value

    async def delete(self, key):
        self.data.pop(key, None)


class RemoteFetch:
    def __init__(self, result=None, error=None):
        self.result = result or []
        self.error = error
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.error:
            raise self.error
        return self.result


@pytest.fixture
def cache(clock):
    return ExpiringCache(namespace="test", clock=clock)


async def test_set_then_get_round_trips(cache):
    items = [{"id": 1}, {"id": 2}]
    await cache.set("u1", items)

    entry = await cache.get("u1")
    assert entry.items == items
    assert entry.scope_key == "u1"
    assert entry.last_write_at == NOW
    assert await cache.is_stale("u1", 0.5) is False


async def test_missing_entry_is_stale(cache):
    assert await cache.get("nobody") is None
    assert await cache.is_stale("nobody", 60) is True


async def test_entry_goes_stale_after_ttl(cache, clock):
    await cache.set("u1", ["a"])

    clock.advance(minutes=30)
    assert await cache.is_stale("u1", 30) is False

    clock.advance(seconds=1)
    assert await cache.is_stale("u1", 30) is True
    assert (await cache.get("u1")).items == ["a"]


async def test_set_overwrites_and_clear_removes(cache, clock):
    await cache.set("u1", ["old"])
    clock.advance(minutes=5)
    await cache.set("u1", ["new"])

    entry = await cache.get("u1")
    assert entry.items == ["new"]
    assert entry.last_write_at == clock.now

    await cache.clear("u1")
    assert await cache.get("u1") is None
    assert await cache.is_stale("u1", 60) is True


async def test_scope_keys_are_independent(cache):
    await cache.set("u1", ["a"])
    await cache.clear("u2")
    assert (await cache.get("u1")).items == ["a"]


async def test_fresh_entry_skips_remote_fetch(cache):
    await cache.set("u1", ["cached"])
    remote = RemoteFetch(["remote"])

    assert await cache.fetch_with_cache("u1", 5, remote, force_refresh=False) == ["cached"]
    assert remote.calls == 0


async def test_miss_fetches_and_writes_through(cache):
    remote = RemoteFetch(["remote"])

    result = await cache.lookup("u1", 5, remote)

    assert result.items == ["remote"]
    assert result.from_cache is False
    assert (await cache.get("u1")).items == ["remote"]


async def test_force_refresh_bypasses_fresh_entry(cache):
    await cache.set("u1", ["cached"])
    remote = RemoteFetch(["remote"])

    assert await cache.fetch_with_cache("u1", 5, remote, force_refresh=True) == ["remote"]
    assert remote.calls == 1


async def test_stale_entry_is_served_when_remote_fails(cache, clock):
    await cache.set("u1", ["cached"])
    clock.advance(minutes=10)
    remote = RemoteFetch(error=FetchError("offline"))

    result = await cache.lookup("u1", 5, remote)

    assert result.items == ["cached"]
    assert result.from_cache is True
    assert result.is_stale is True
    assert await cache.fetch_with_cache("u1", 5, remote, False) == ["cached"]


async def test_remote_failure_without_entry_reraises(cache):
    error = FetchError("offline")

    with pytest.raises(FetchError) as excinfo:
        await cache.fetch_with_cache("u1", 5, RemoteFetch(error=error), False)

    assert excinfo.value is error


async def test_non_fetch_errors_are_not_masked(cache, clock):
    await cache.set("u1", ["cached"])
    clock.advance(minutes=10)

    with pytest.raises(ValueError):
        await cache.fetch_with_cache("u1", 5, RemoteFetch(error=ValueError("bug")), False)


async def test_concurrent_fetches_share_one_remote_call(cache):
    release = asyncio.Event()
    calls = 0

    async def slow_fetch():
        nonlocal calls
        calls += 1
        await release.wait()
        return ["remote"]

    first = asyncio.create_task(cache.fetch_with_cache("u1", 5, slow_fetch))
    second = asyncio.create_task(cache.fetch_with_cache("u1", 5, slow_fetch))
    await asyncio.sleep(0)
    release.set()

    assert await first == ["remote"]
    assert await second == ["remote"]
    assert calls == 1


async def test_stats_reports_entry_and_counters(clock):
    cache = ExpiringCache(namespace="test", clock=clock, default_ttl_minutes=30)
    await cache.set("u1", ["a", "b"])
    await cache.fetch_with_cache("u1", 5, RemoteFetch())
    clock.advance(minutes=10)
    await cache.fetch_with_cache("u1", 5, RemoteFetch(error=FetchError("offline")))

    stats = await cache.stats("u1")

    assert stats.total_items == 2
    assert stats.last_updated == NOW
    assert stats.is_stale is False
    assert (stats.hits, stats.misses, stats.fallbacks) == (1, 1, 1)


async def test_stats_for_missing_entry(cache):
    stats = await cache.stats("nobody")
    assert stats.total_items == 0
    assert stats.last_updated is None
    assert stats.is_stale is True


async def test_memory_store_keeps_item_objects():
    store = MemoryCacheStore()
    cache = ExpiringCache(store=store, namespace="test")
    items = [object()]
    await cache.set("u1", items)

    assert (await cache.get("u1")).items[0] is items[0]


async def test_redis_store_restores_item_model():
    store = RedisCacheStore()
    store.client = FakeRedis()
    clock = MutableClock()
    cache = ExpiringCache(store=store, namespace="wardrobe", item_model=WardrobeItem, clock=clock)
    item = WardrobeItem(
        id="w1", user_id="u1", name="Jacket", category="outerwear", color="black", created_at=NOW
    )

    await cache.set("u1", [item])

    key = next(iter(store.client.data))
    assert key.endswith(":wardrobe:u1")
    assert json.loads(store.client.data[key])["items"][0]["name"] == "Jacket"

    entry = await cache.get("u1")
    assert entry.items == [item]
    assert isinstance(entry.items[0], WardrobeItem)
    assert entry.last_write_at == NOW
    assert entry.meta == {}


async def test_redis_store_without_connection_behaves_as_empty():
    cache = ExpiringCache(store=RedisCacheStore(), namespace="test")
    await cache.set("u1", ["a"])

    assert await cache.get("u1") is None
    assert await cache.is_stale("u1", 5) is True


def held_fetch(items):
    release = asyncio.Event()

    async def fetch():
        await release.wait()
        return items

    return release, fetch


async def test_clear_during_fetch_keeps_entry_cleared(cache):
    release, fetch = held_fetch(["old"])
    pending = asyncio.create_task(cache.fetch_with_cache("u1", 5, fetch))
    await asyncio.sleep(0)

    await cache.clear("u1")
    release.set()

    assert await pending == ["old"]
    assert await cache.get("u1") is None


async def test_lookup_after_clear_does_not_join_older_fetch(cache):
    release, fetch = held_fetch(["old"])
    pending = asyncio.create_task(cache.fetch_with_cache("u1", 5, fetch))
    await asyncio.sleep(0)
    await cache.clear("u1")

    assert await cache.fetch_with_cache("u1", 5, RemoteFetch(["new"])) == ["new"]
    release.set()
    await pending

    assert (await cache.get("u1")).items == ["new"]


async def test_forced_refresh_supersedes_running_fetch(cache):
    release, fetch = held_fetch(["old"])
    pending = asyncio.create_task(cache.fetch_with_cache("u1", 5, fetch))
    await asyncio.sleep(0)

    fresh = await cache.fetch_with_cache("u1", 5, RemoteFetch(["new"]), force_refresh=True)
    release.set()

    assert fresh == ["new"]
    assert await pending == ["old"]
    assert (await cache.get("u1")).items == ["new"]


async def test_meta_stored_with_items_and_served_on_hit(cache, clock):
    async def fetch():
        return CachePayload(items=["a", "b"], meta={"raw_count": 7})

    fetched = await cache.lookup("u1", 5, fetch)
    hit = await cache.lookup("u1", 5, RemoteFetch(["unused"]))
    clock.advance(minutes=10)
    fallback = await cache.lookup("u1", 5, RemoteFetch(error=FetchError("offline")))

    assert fetched.items == ["a", "b"]
    assert fetched.meta == hit.meta == fallback.meta == {"raw_count": 7}
    assert (await cache.get("u1")).meta == {"raw_count": 7}
