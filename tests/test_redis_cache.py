"""Tests for the Redis cache backend.

Happy paths run against fakeredis (in-memory Redis emulation); failure paths
use AsyncMock clients raising RedisError to exercise the in-memory fallback.
"""

import asyncio
import json
from unittest.mock import AsyncMock

import fakeredis.aioredis
import pytest
import pytest_asyncio
from redis.exceptions import RedisError

from app.adapters.cache.in_memory import InMemoryCacheBackend
from app.adapters.cache.redis_backend import RedisCacheBackend
from app.core.errors import ValidationAppError


@pytest_asyncio.fixture
async def redis_client():
    client = fakeredis.aioredis.FakeRedis(decode_responses=True)
    await client.flushall()
    return client


@pytest_asyncio.fixture
async def backend(redis_client):
    cache = RedisCacheBackend(redis_client, fallback=InMemoryCacheBackend())
    await cache.start()
    yield cache
    await cache.close()


def _failing_client() -> AsyncMock:
    client = AsyncMock()
    for name in ("get", "set", "delete", "exists", "mget", "ping", "scan", "dbsize"):
        getattr(client, name).side_effect = RedisError("connection refused")
    return client


@pytest.mark.asyncio
async def test_set_and_get_round_trip_json(backend, redis_client) -> None:
    await backend.set("cache:k", {"status_code": 200, "body": "{}"}, 5_000)

    assert await backend.get("cache:k") == {"status_code": 200, "body": "{}"}
    assert json.loads(await redis_client.get("cache:k")) == {"status_code": 200, "body": "{}"}
    ttl = await redis_client.pttl("cache:k")
    assert 0 < ttl <= 5_000


@pytest.mark.asyncio
async def test_missing_key_counts_a_miss(backend) -> None:
    assert await backend.get("cache:nope") is None

    stats = await backend.stats()
    assert stats.misses == 1
    assert stats.hits == 0


@pytest.mark.asyncio
async def test_corrupt_value_is_a_miss(backend, redis_client) -> None:
    await redis_client.set("cache:bad", "{not json")

    assert await backend.get("cache:bad") is None


@pytest.mark.asyncio
async def test_unserializable_value_is_not_stored(backend, redis_client) -> None:
    await backend.set("cache:obj", object())

    assert await redis_client.exists("cache:obj") == 0


@pytest.mark.asyncio
async def test_delete_and_exists(backend) -> None:
    await backend.set("cache:k", 1)
    assert await backend.exists("cache:k") is True

    await backend.delete("cache:k")
    assert await backend.exists("cache:k") is False


@pytest.mark.asyncio
async def test_clear_only_touches_prefixed_keys(backend, redis_client) -> None:
    await redis_client.set("other:keep", "1")
    await backend.set("cache:GET:/v1/convert:anonymous:", 1)
    await backend.set("cache:GET:/v1/timezones:anonymous:", 2)

    await backend.clear("convert")
    assert await redis_client.exists("cache:GET:/v1/convert:anonymous:") == 0
    assert await redis_client.exists("cache:GET:/v1/timezones:anonymous:") == 1

    await backend.clear()
    assert await redis_client.exists("cache:GET:/v1/timezones:anonymous:") == 0
    assert await redis_client.get("other:keep") == "1"


@pytest.mark.asyncio
async def test_clear_rejects_invalid_regex_without_deleting(backend, redis_client) -> None:
    await backend.set("cache:GET:/v1/convert:anonymous:", 1)

    with pytest.raises(ValidationAppError) as exc_info:
        await backend.clear("*")

    assert exc_info.value.code == "invalid_pattern"
    assert await redis_client.exists("cache:GET:/v1/convert:anonymous:") == 1


@pytest.mark.asyncio
async def test_clear_pattern_is_a_regex_searched_in_keys(backend, redis_client) -> None:
    await backend.set("cache:GET:/v1/convert:anonymous:timestamp:0", 1)
    await backend.set("cache:GET:/v1/convert:alice:timestamp:0", 2)

    await backend.clear(r":anonymous:")

    assert await redis_client.exists("cache:GET:/v1/convert:anonymous:timestamp:0") == 0
    assert await redis_client.exists("cache:GET:/v1/convert:alice:timestamp:0") == 1


@pytest.mark.asyncio
async def test_mget_and_mset(backend) -> None:
    await backend.mset([("cache:a", 1, None), ("cache:b", {"x": 2}, 1_000)])

    assert await backend.mget(["cache:a", "cache:b", "cache:c"]) == [1, {"x": 2}, None]


@pytest.mark.asyncio
async def test_stats_report_sampled_keys(backend) -> None:
    await backend.set("cache:a", 1)
    await backend.get("cache:a")

    stats = await backend.stats()

    assert stats.hits == 1
    assert stats.size >= 1
    assert "cache:a" in stats.keys


@pytest.mark.asyncio
async def test_health_check_when_connected(backend) -> None:
    report = await backend.health_check()

    assert report.status == "healthy"
    assert report.type == "redis"
    assert report.details["connected"] is True


@pytest.mark.asyncio
async def test_get_falls_back_to_memory_when_redis_fails() -> None:
    fallback = InMemoryCacheBackend()
    await fallback.set("cache:k", "from-memory")
    cache = RedisCacheBackend(
        _failing_client(),
        fallback=fallback,
        reconnect_base_delay_seconds=3600,
    )
    cache.monitor.connected = True

    assert await cache.get("cache:k") == "from-memory"
    assert cache.monitor.connected is False
    assert cache.monitor.reconnect_pending is True

    await cache.close()


@pytest.mark.asyncio
async def test_writes_go_to_fallback_while_disconnected() -> None:
    client = _failing_client()
    cache = RedisCacheBackend(client, fallback=InMemoryCacheBackend())

    await cache.set("cache:k", "v")

    client.set.assert_not_called()
    assert await cache.get("cache:k") == "v"


@pytest.mark.asyncio
async def test_without_fallback_failures_read_as_none() -> None:
    cache = RedisCacheBackend(
        _failing_client(),
        fallback=InMemoryCacheBackend(),
        fallback_to_memory=False,
        reconnect_base_delay_seconds=3600,
    )
    cache.monitor.connected = True

    await cache.set("cache:k", "v")
    assert await cache.get("cache:k") is None
    assert await cache.exists("cache:k") is False

    await cache.close()


@pytest.mark.asyncio
async def test_timeout_is_treated_as_failure() -> None:
    async def slow_get(key):
        await asyncio.sleep(1)

    client = _failing_client()
    client.get.side_effect = slow_get
    cache = RedisCacheBackend(
        client,
        fallback=InMemoryCacheBackend(),
        operation_timeout_seconds=0.01,
        reconnect_base_delay_seconds=3600,
    )
    cache.monitor.connected = True

    assert await cache.get("cache:k") is None
    assert cache.monitor.connected is False

    await cache.close()


@pytest.mark.asyncio
async def test_health_check_when_disconnected_reports_fallback() -> None:
    cache = RedisCacheBackend(
        _failing_client(),
        fallback=InMemoryCacheBackend(),
        reconnect_base_delay_seconds=3600,
    )

    report = await cache.health_check()

    assert report.status == "degraded"
    assert report.type == "memory-fallback"
    assert report.details["redis_status"] == "disconnected"
    assert report.details["fallback_active"] is True

    await cache.close()
