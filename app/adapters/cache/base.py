"""Cache backend interfaces.

The HTTP layer depends on this abstraction (not the concrete implementation)
so the in-process store and the Redis store are interchangeable behind the
factory.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from app.adapters.health import HealthReport
from app.core.errors import ValidationAppError

# Parameter sets larger than this hash to a compact digest
MAX_LITERAL_PARAMS = 10
# Lists longer than this are summarized as "[<n>items]" in keys
MAX_LITERAL_LIST_ITEMS = 5


@dataclass(frozen=True)
class CacheableRequest:
    """Inputs a cache key is derived from.

    Attributes:
        endpoint: Logical endpoint name (e.g. ``GET:/v1/convert``).
        parameters: Request parameters; ``None`` values are ignored.
        user_id: Optional caller id that partitions the key space.
    """

    endpoint: str
    parameters: Mapping[str, Any] = field(default_factory=dict)
    user_id: str | None = None


@dataclass
class CacheEntry:
    """Stored value with expiration and recency metadata (epoch milliseconds)."""

    value: Any
    expires_at_ms: float
    last_access_ms: float


@dataclass(frozen=True)
class CacheStats:
    hits: int
    misses: int
    size: int
    keys: list[str]


def _serialize(value: Any) -> str:
    """Order-independent serialization used for key material."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Mapping):
        pairs = (f'"{k}":{_serialize(value[k])}' for k in sorted(value, key=str))
        return "{" + ",".join(pairs) + "}"
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(_serialize(item) for item in value) + "]"
    return str(value)


def _to_base36(number: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    if number == 0:
        return "0"
    out = []
    while number:
        number, rem = divmod(number, 36)
        out.append(digits[rem])
    return "".join(reversed(out))


def fast_hash(text: str) -> str:
    """djb2 hash truncated to 32 bits, rendered in base 36."""
    value = 5381
    for char in text:
        value = ((value << 5) + value + ord(char)) & 0xFFFFFFFF
    return _to_base36(value)


def generate_cache_key(request: CacheableRequest, *, prefix: str = "cache:") -> str:
    """Build a deterministic cache key for a request.

    Parameters are sorted by name so permutations of the same parameter set
    map to one key. Sets with more than ten parameters collapse into a digest.

    Args:
        request: Endpoint, parameters and optional user id.
        prefix: Key namespace prefix.

    Returns:
        Key of the form ``{prefix}{endpoint}:{user_id|anonymous}:{params}``.

    Examples:
        >>> generate_cache_key(CacheableRequest("convert", {"b": 2, "a": 1}))
        'cache:convert:anonymous:a:1|b:2'
    """
    params = {k: v for k, v in request.parameters.items() if v is not None}

    if len(params) > MAX_LITERAL_PARAMS:
        param_string = fast_hash(_serialize(params))
    else:
        parts = []
        for name in sorted(params):
            value = params[name]
            if isinstance(value, (list, tuple)) and len(value) > MAX_LITERAL_LIST_ITEMS:
                parts.append(f"{name}:[{len(value)}items]")
            else:
                parts.append(f"{name}:{_serialize(value)}")
        param_string = "|".join(parts)

    return f"{prefix}{request.endpoint}:{request.user_id or 'anonymous'}:{param_string}"


def compile_key_pattern(pattern: str | None) -> re.Pattern[str] | None:
    """Compile a ``clear`` pattern, a regular expression searched in each key.

    Raises:
        ValidationAppError: If the pattern is not a valid regular expression.
    """
    if pattern is None:
        return None
    try:
        return re.compile(pattern)
    except re.error as exc:
        raise ValidationAppError(
            code="invalid_pattern",
            message=f"Invalid cache key pattern: {exc}",
        ) from exc


class AbstractCacheBackend(ABC):
    """Interface for cache backends.

    Every method is a coroutine so in-process and remote stores share one
    contract. Implementations must never raise transport errors to callers:
    reads degrade to ``None`` and writes to no-ops.
    """

    key_prefix: str = "cache:"

    @abstractmethod
    async def get(self, key: str) -> Any | None:
        """Return the cached value, or None when missing, expired or unreadable."""
        raise NotImplementedError

    @abstractmethod
    async def set(self, key: str, value: Any, ttl_ms: int | None = None) -> None:
        """Store a value for ``ttl_ms`` milliseconds (backend default when None)."""
        raise NotImplementedError

    @abstractmethod
    async def delete(self, key: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def exists(self, key: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    async def clear(self, pattern: str | None = None) -> None:
        """Remove keys matching the ``pattern`` regex, or every key when omitted.

        Raises:
            ValidationAppError: If ``pattern`` is not a valid regular expression.
        """
        raise NotImplementedError

    @abstractmethod
    async def stats(self) -> CacheStats:
        raise NotImplementedError

    @abstractmethod
    async def health_check(self) -> HealthReport:
        raise NotImplementedError

    async def mget(self, keys: Iterable[str]) -> list[Any | None]:
        """Fetch several keys; backends with a batch primitive override this."""
        return [await self.get(key) for key in keys]

    async def mset(self, items: Iterable[tuple[str, Any, int | None]]) -> None:
        """Store several ``(key, value, ttl_ms)`` triples."""
        for key, value, ttl_ms in items:
            await self.set(key, value, ttl_ms)

    def generate_key(self, request: CacheableRequest) -> str:
        return generate_cache_key(request, prefix=self.key_prefix)

    async def start(self) -> None:
        """Start background maintenance. No-op by default."""

    async def close(self) -> None:
        """Stop background maintenance and release connections. No-op by default."""
