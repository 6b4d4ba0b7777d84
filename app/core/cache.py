"""Response cache middleware.

Memoizes successful GET responses of the versioned API in the cache backend
built at startup.

Policy:
- Only paths under ``CACHE_PATH_PREFIXES`` and only GET requests.
- A request carrying ``Cache-Control: no-cache`` or ``no-store`` bypasses the
  cache in both directions.
- Responses with status >= 400 are never stored and get no cache headers.
- Cache failures, failing callbacks and values that are not stored responses
  are logged and the request proceeds uncached.

Usage:
    app.middleware("http")(ResponseCacheMiddleware(settings.cache))
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

from fastapi import Request, Response

from app.adapters.cache.base import AbstractCacheBackend, CacheableRequest
from app.core.config import CacheSettings, get_cache_ttl_ms, split_csv
from app.core.logging import hash_identifier

logger = logging.getLogger(__name__)

KeyGenerator = Callable[[Request], CacheableRequest]
HitCallback = Callable[[str, dict[str, Any]], None]
MissCallback = Callable[[str], None]

NO_CACHE_DIRECTIVES = ("no-cache", "no-store")


def default_cacheable_request(request: Request) -> CacheableRequest:
    """Key material: method, path, query parameters and ``X-User-Id``."""
    return CacheableRequest(
        endpoint=f"{request.method}:{request.url.path}",
        parameters=dict(request.query_params),
        user_id=request.headers.get("X-User-Id"),
    )


def endpoint_name(path: str) -> str:
    return path.rstrip("/").rsplit("/", 1)[-1]


def is_stored_response(value: Any) -> bool:
    """Whether a cached value has the ``{status_code, body, media_type}`` shape."""
    return (
        isinstance(value, dict)
        and isinstance(value.get("body"), str)
        and isinstance(value.get("status_code", 200), int)
    )


def cache_headers(status: str, key: str, ttl_ms: int) -> dict[str, str]:
    return {
        "X-Cache": status,
        "X-Cache-Key": key,
        "Cache-Control": f"public, max-age={ttl_ms // 1000}",
    }


class ResponseCacheMiddleware:
    """HTTP middleware replaying cached responses.

    The cache backend is read from ``request.app.state.cache`` so the handle
    built in the application lifespan is the one every request uses.

    Args:
        cache_settings: Enable flag, path prefixes and default TTL.
        key_generator: Optional override of :func:`default_cacheable_request`.
        on_cache_hit: Called with the key and stored payload on a hit.
        on_cache_miss: Called with the key on a miss.
    """

    def __init__(
        self,
        cache_settings: CacheSettings,
        *,
        key_generator: KeyGenerator | None = None,
        on_cache_hit: HitCallback | None = None,
        on_cache_miss: MissCallback | None = None,
    ) -> None:
        self.cache_settings = cache_settings
        self.path_prefixes = tuple(split_csv(cache_settings.path_prefixes))
        self.key_generator = key_generator or default_cacheable_request
        self.on_cache_hit = on_cache_hit
        self.on_cache_miss = on_cache_miss

    def is_cacheable_request(self, request: Request) -> bool:
        if not self.cache_settings.enabled or request.method != "GET":
            return False
        if not request.url.path.startswith(self.path_prefixes):
            return False
        cache_control = request.headers.get("Cache-Control", "").lower()
        return not any(directive in cache_control for directive in NO_CACHE_DIRECTIVES)

    async def __call__(self, request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        cache: AbstractCacheBackend | None = getattr(request.app.state, "cache", None)
        if cache is None or not self.is_cacheable_request(request):
            return await call_next(request)

        ttl_ms = get_cache_ttl_ms(endpoint_name(request.url.path), self.cache_settings)
        try:
            key = cache.generate_key(self.key_generator(request))
            cached = await cache.get(key)
        except Exception as exc:
            logger.warning("cache.middleware_error", extra={"operation": "get", "error_type": type(exc).__name__})
            return await call_next(request)

        if is_stored_response(cached):
            self._notify(self.on_cache_hit, key, cached)
            return self._replay(cached, key, ttl_ms)

        if cached is not None:
            # Something other than a stored response sits under this key
            logger.warning("cache.unexpected_payload", extra={"cache_key": hash_identifier(key)})
        self._notify(self.on_cache_miss, key)

        response = await call_next(request)
        if response.status_code >= 400:
            return response

        body = b"".join([chunk async for chunk in response.body_iterator])
        headers = {
            name: value for name, value in response.headers.items() if name.lower() != "content-length"
        }
        fresh = Response(
            content=body,
            status_code=response.status_code,
            headers=headers,
            media_type=response.media_type,
        )
        payload = {
            "status_code": response.status_code,
            "body": body.decode("utf-8", errors="replace"),
            "media_type": response.headers.get("content-type", response.media_type),
        }
        try:
            await cache.set(key, payload, ttl_ms)
        except Exception as exc:
            logger.warning("cache.middleware_error", extra={"operation": "set", "error_type": type(exc).__name__})
            return fresh

        logger.debug("cache.stored", extra={"cache_key": hash_identifier(key), "ttl_ms": ttl_ms})
        fresh.headers.update(cache_headers("MISS", key, ttl_ms))
        return fresh

    @staticmethod
    def _notify(callback: Callable[..., None] | None, *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as exc:
            logger.warning("cache.callback_failed", extra={"error_type": type(exc).__name__})

    @staticmethod
    def _replay(cached: dict[str, Any], key: str, ttl_ms: int) -> Response:
        response = Response(
            content=cached["body"],
            status_code=cached.get("status_code", 200),
            media_type=cached.get("media_type"),
        )
        response.headers.update(cache_headers("HIT", key, ttl_ms))
        return response
