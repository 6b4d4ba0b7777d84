"""Tests for deterministic cache key generation."""

from app.adapters.cache.base import CacheableRequest, fast_hash, generate_cache_key


def test_parameter_order_does_not_change_key() -> None:
    first = generate_cache_key(CacheableRequest("convert", {"timestamp": 1, "timezone": "UTC"}))
    second = generate_cache_key(CacheableRequest("convert", {"timezone": "UTC", "timestamp": 1}))

    assert first == second
    assert first == "cache:convert:anonymous:timestamp:1|timezone:UTC"


def test_user_id_partitions_keys() -> None:
    anonymous = generate_cache_key(CacheableRequest("now", {}))
    scoped = generate_cache_key(CacheableRequest("now", {}, user_id="u-1"))

    assert anonymous == "cache:now:anonymous:"
    assert scoped == "cache:now:u-1:"


def test_none_values_are_dropped() -> None:
    key = generate_cache_key(CacheableRequest("convert", {"timestamp": 1, "timezone": None}))

    assert key == "cache:convert:anonymous:timestamp:1"


def test_long_lists_are_summarized() -> None:
    short = generate_cache_key(CacheableRequest("batch", {"ids": [1, 2, 3]}))
    long = generate_cache_key(CacheableRequest("batch", {"ids": list(range(8))}))

    assert short.endswith("ids:[1,2,3]")
    assert long.endswith("ids:[8items]")


def test_many_parameters_collapse_into_digest() -> None:
    params = {f"p{i}": i for i in range(11)}
    shuffled = dict(reversed(list(params.items())))

    key = generate_cache_key(CacheableRequest("format", params))

    assert key == generate_cache_key(CacheableRequest("format", shuffled))
    digest = key.rsplit(":", 1)[-1]
    assert "|" not in digest
    assert digest.isalnum()


def test_booleans_and_nested_values_serialize_stably() -> None:
    key = generate_cache_key(CacheableRequest("x", {"flag": True, "opts": {"b": 1, "a": None}}))

    assert key == 'cache:x:anonymous:flag:true|opts:{"a":null,"b":1}'


def test_custom_prefix() -> None:
    assert generate_cache_key(CacheableRequest("now"), prefix="tsapi:") == "tsapi:now:anonymous:"


def test_fast_hash_is_stable_base36() -> None:
    assert fast_hash("") == "45h"
    assert fast_hash("abc") == fast_hash("abc")
    assert fast_hash("abc") != fast_hash("abd")
