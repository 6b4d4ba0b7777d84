from __future__ import annotations

from fastapi import APIRouter, Depends

from app.adapters.cache.base import AbstractCacheBackend
from app.adapters.cache.factory import get_cache_health
from app.adapters.rate_limit.base import AbstractRateLimiter
from app.adapters.rate_limit.factory import get_rate_limiter_health
from app.api.dependencies import get_cache, get_rate_limiter

router = APIRouter(tags=["Health"])


@router.get("/health")
async def health_check(
    cache: AbstractCacheBackend = Depends(get_cache),
    limiter: AbstractRateLimiter = Depends(get_rate_limiter),
) -> dict:
    """Liveness plus the health of the cache and rate limiter backends.

    Always answers 200: the engine fails open, so a degraded backend only
    turns the overall status into ``degraded``.

    Returns:
        dict: ``status``, ``cache`` and ``rate_limiter`` reports.
    """
    cache_health = await get_cache_health(cache)
    limiter_health = await get_rate_limiter_health(limiter)
    degraded = any(report["status"] != "healthy" for report in (cache_health, limiter_health))
    return {
        "status": "degraded" if degraded else "ok",
        "cache": cache_health,
        "rate_limiter": limiter_health,
    }
