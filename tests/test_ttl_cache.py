"""Tests for the expiring single-flight cache."""
import asyncio
import pytest
from bitbucket_discovery.infrastructure.ttl_cache import TTLCache


@pytest.mark.asyncio
async def test_value_served_until_expiry(clock):
    """Test a value is reused before its TTL and reloaded at the TTL."""
    cache = TTLCache(60, clock=clock)
    loads = []

    async def loader():
        loads.append(clock.now)
        return f"value-{len(loads)}"

    assert await cache.get("acme", loader) == "value-1"
    clock.advance(59)
    assert await cache.get("acme", loader) == "value-1"
    clock.advance(1)
    assert await cache.get("acme", loader) == "value-2"
    assert len(loads) == 2

    stats = cache.stats()
    assert stats.hits == 1
    assert stats.misses == 2
    assert stats.evictions == 1


@pytest.mark.asyncio
async def test_concurrent_misses_share_one_load(clock):
    """Test concurrent callers of a missing key trigger a single loader call."""
    cache = TTLCache(60, clock=clock)
    release = asyncio.Event()
    calls = 0

    async def loader():
        nonlocal calls
        calls += 1
        await release.wait()
        return {"name": "acme"}

    tasks = [asyncio.ensure_future(cache.get("acme", loader)) for _ in range(5)]
    await asyncio.sleep(0)
    release.set()
    results = await asyncio.gather(*tasks)

    assert calls == 1
    assert all(result is results[0] for result in results)


@pytest.mark.asyncio
async def test_failed_load_is_not_cached(clock):
    """Test a loader failure propagates and the next call loads again."""
    cache = TTLCache(60, clock=clock)
    attempts = 0

    async def loader():
        nonlocal attempts
        attempts += 1
        if attempts == 1:
            raise RuntimeError("boom")
        return "ok"

    with pytest.raises(RuntimeError):
        await cache.get("acme", loader)
    assert len(cache) == 0

    assert await cache.get("acme", loader) == "ok"
    assert attempts == 2
    assert cache.stats().load_failures == 1


@pytest.mark.asyncio
async def test_none_is_a_cacheable_value(clock):
    """Test an absent value is cached like any other."""
    cache = TTLCache(60, clock=clock)
    calls = 0

    async def loader():
        nonlocal calls
        calls += 1
        return None

    assert await cache.get("no-default-branch", loader) is None
    assert await cache.get("no-default-branch", loader) is None
    assert calls == 1


@pytest.mark.asyncio
async def test_evict_all_and_ttl_change_drop_entries(clock):
    """Test eviction and reconfiguration clear cached values."""
    cache = TTLCache(60, clock=clock)

    async def loader():
        return "v"

    await cache.get("a", loader)
    await cache.get("b", loader)
    cache.evict_all()
    assert len(cache) == 0
    assert cache.stats().evictions == 2

    await cache.get("a", loader)
    cache.set_ttl(120)
    assert cache.ttl_seconds == 120
    assert len(cache) == 0


@pytest.mark.asyncio
async def test_load_in_flight_during_eviction_is_not_kept(clock):
    """Test a value loaded across an eviction is returned but not cached."""
    cache = TTLCache(60, clock=clock)
    release = asyncio.Event()
    loads = 0

    async def loader():
        nonlocal loads
        loads += 1
        await release.wait()
        return f"value-{loads}"

    pending = asyncio.ensure_future(cache.get("acme", loader))
    await asyncio.sleep(0)
    cache.set_ttl(120)
    release.set()

    assert await pending == "value-1"
    assert len(cache) == 0
    assert await cache.get("acme", loader) == "value-2"
    assert len(cache) == 1
