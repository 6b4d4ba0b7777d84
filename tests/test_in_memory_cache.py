"""Unit tests for the in-memory TTL/LRU cache backend."""

import pytest

from app.adapters.cache.in_memory import InMemoryCacheBackend
from app.core.errors import ValidationAppError


@pytest.mark.asyncio
async def test_value_expires_after_ttl(fake_time) -> None:
    cache = InMemoryCacheBackend(clock=fake_time)

    await cache.set("k", "v", 50)

    fake_time.advance_ms(10)
    assert await cache.get("k") == "v"

    fake_time.advance_ms(50)
    assert await cache.get("k") is None


@pytest.mark.asyncio
async def test_default_ttl_applies_when_omitted(fake_time) -> None:
    cache = InMemoryCacheBackend(default_ttl_ms=1_000, clock=fake_time)

    await cache.set("k", {"a": 1})
    fake_time.advance_ms(999)
    assert await cache.get("k") == {"a": 1}

    fake_time.advance_ms(2)
    assert await cache.get("k") is None


@pytest.mark.asyncio
async def test_hit_and_miss_counters(fake_time) -> None:
    cache = InMemoryCacheBackend(clock=fake_time)

    await cache.set("k", 1)
    await cache.get("k")
    await cache.get("missing")

    stats = await cache.stats()
    assert stats.hits == 1
    assert stats.misses == 1
    assert stats.size == 1
    assert stats.keys == ["k"]


@pytest.mark.asyncio
async def test_lru_evicts_least_recently_accessed(fake_time) -> None:
    cache = InMemoryCacheBackend(max_entries=10, clock=fake_time)

    for i in range(10):
        await cache.set(f"k{i}", i)
        fake_time.advance_ms(1)

    # k0 is the oldest insert but was read since
    assert await cache.get("k0") == 0
    fake_time.advance_ms(1)

    await cache.set("k10", 10)

    assert await cache.exists("k0") is True
    assert await cache.exists("k1") is False
    assert await cache.exists("k10") is True
    assert (await cache.stats()).size == 10


@pytest.mark.asyncio
async def test_eviction_falls_back_to_frequent_keys_when_all_are_frequent(fake_time) -> None:
    cache = InMemoryCacheBackend(max_entries=3, clock=fake_time)

    for key in ("a", "b", "c"):
        await cache.set(key, key)
        fake_time.advance_ms(1)
    for key in ("a", "b", "c"):
        await cache.get(key)
        fake_time.advance_ms(1)

    await cache.set("d", "d")

    assert await cache.exists("a") is False
    assert await cache.exists("b") is True
    assert await cache.exists("d") is True


@pytest.mark.asyncio
async def test_overwrite_at_capacity_does_not_evict(fake_time) -> None:
    cache = InMemoryCacheBackend(max_entries=2, clock=fake_time)

    await cache.set("a", 1)
    await cache.set("b", 2)
    await cache.set("a", 3)

    assert await cache.get("a") == 3
    assert await cache.get("b") == 2


@pytest.mark.asyncio
async def test_zero_capacity_disables_storage() -> None:
    cache = InMemoryCacheBackend(max_entries=0)

    await cache.set("k", "v")

    assert await cache.get("k") is None
    report = await cache.health_check()
    assert report.type == "disabled"
    assert report.status == "healthy"


@pytest.mark.asyncio
async def test_clear_with_pattern_removes_only_matching_keys() -> None:
    cache = InMemoryCacheBackend()
    await cache.set("cache:GET:/v1/convert:anonymous:timestamp:1", 1)
    await cache.set("cache:GET:/v1/convert:anonymous:timestamp:2", 2)
    await cache.set("cache:GET:/v1/timezones:anonymous:", 3)

    await cache.clear(r"/v1/convert")

    assert (await cache.stats()).keys == ["cache:GET:/v1/timezones:anonymous:"]

    await cache.clear()
    assert (await cache.stats()).size == 0


@pytest.mark.asyncio
async def test_clear_with_invalid_regex_raises_validation_error() -> None:
    cache = InMemoryCacheBackend()
    await cache.set("cache:GET:/v1/now:anonymous:", 1)

    with pytest.raises(ValidationAppError) as exc_info:
        await cache.clear("(")

    assert exc_info.value.code == "invalid_pattern"
    assert (await cache.stats()).size == 1


@pytest.mark.asyncio
async def test_delete_and_exists(fake_time) -> None:
    cache = InMemoryCacheBackend(clock=fake_time)
    await cache.set("k", "v", 100)

    assert await cache.exists("k") is True
    await cache.delete("k")
    assert await cache.exists("k") is False

    await cache.set("k", "v", 100)
    fake_time.advance_ms(101)
    assert await cache.exists("k") is False


@pytest.mark.asyncio
async def test_cleanup_expired_sweeps_only_expired_entries(fake_time) -> None:
    cache = InMemoryCacheBackend(clock=fake_time)
    await cache.set("short", 1, 10)
    await cache.set("long", 2, 10_000)
    fake_time.advance_ms(20)

    assert cache.cleanup_expired() == 1
    assert (await cache.stats()).keys == ["long"]


@pytest.mark.asyncio
async def test_warmup_extends_frequent_hot_keys_only(fake_time) -> None:
    cache = InMemoryCacheBackend(clock=fake_time, hot_key_markers=("timezone",))
    await cache.set("cache:GET:/v1/timezones:anonymous:", "zones", 1_000)
    await cache.set("cache:GET:/v1/convert:anonymous:", "conv", 1_000)
    await cache.set("cache:timezone-cold", "cold", 1_000)

    await cache.get("cache:GET:/v1/timezones:anonymous:")
    await cache.get("cache:GET:/v1/convert:anonymous:")

    assert cache.warmup_frequent_keys() == 1

    fake_time.advance_ms(60 * 60 * 1000)
    assert await cache.get("cache:GET:/v1/timezones:anonymous:") == "zones"
    assert await cache.get("cache:GET:/v1/convert:anonymous:") is None
    assert await cache.get("cache:timezone-cold") is None


@pytest.mark.asyncio
async def test_mget_and_mset_use_per_key_semantics() -> None:
    cache = InMemoryCacheBackend()

    await cache.mset([("a", 1, None), ("b", 2, 5_000)])

    assert await cache.mget(["a", "b", "c"]) == [1, 2, None]


@pytest.mark.asyncio
async def test_health_reports_size_and_ratio() -> None:
    cache = InMemoryCacheBackend(max_entries=5)
    await cache.set("k", "v")
    await cache.get("k")
    await cache.get("nope")

    report = await cache.health_check()

    assert report.status == "healthy"
    assert report.type == "memory"
    assert report.details["size"] == 1
    assert report.details["max_entries"] == 5
    assert report.details["hit_ratio"] == pytest.approx(0.5)
    assert report.details["frequent_keys"] == 1
    assert report.details["estimated_size_bytes"] > 0


@pytest.mark.asyncio
async def test_start_and_close_manage_maintenance_tasks() -> None:
    cache = InMemoryCacheBackend(cleanup_interval_seconds=3600, warmup_interval_seconds=3600)

    await cache.start()
    assert (await cache.health_check()).details["maintenance_running"] is True

    await cache.close()
    assert (await cache.health_check()).details["maintenance_running"] is False


@pytest.mark.parametrize(
    "kwargs",
    [
        {"max_entries": -1},
        {"default_ttl_ms": 0},
    ],
)
def test_invalid_constructor_args(kwargs: dict) -> None:
    with pytest.raises(ValueError):
        InMemoryCacheBackend(**kwargs)
