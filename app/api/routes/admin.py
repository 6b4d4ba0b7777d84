"""Admin endpoints for inspecting and resetting the cache and rate limiter.

Every route requires a valid ``X-API-Key`` (see ``app.core.auth``).
"""

from __future__ import annotations

import logging
from dataclasses import asdict

from fastapi import APIRouter, Depends, Query

from app.adapters.cache.base import AbstractCacheBackend
from app.adapters.cache.factory import CacheFactory
from app.adapters.rate_limit.base import AbstractRateLimiter, RateLimitType
from app.adapters.rate_limit.factory import RateLimiterFactory, anonymous_rule, authenticated_rule
from app.api.dependencies import (
    get_cache,
    get_cache_factory,
    get_rate_limiter,
    get_rate_limiter_factory,
    get_settings,
)
from app.core.auth import verify_api_key
from app.core.config import Settings
from app.core.logging import hash_identifier

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Admin"], dependencies=[Depends(verify_api_key)])


@router.get("/cache/stats")
async def cache_stats(cache: AbstractCacheBackend = Depends(get_cache)) -> dict:
    stats = await cache.stats()
    report = await cache.health_check()
    return {"stats": asdict(stats), "health": asdict(report)}


@router.post("/cache/clear")
async def cache_clear(
    pattern: str | None = Query(default=None, description="Regular expression matched against keys"),
    cache: AbstractCacheBackend = Depends(get_cache),
) -> dict:
    """Clear the whole cache, or only keys matching ``pattern``.

    Raises:
        ValidationAppError: If ``pattern`` is not a valid regular expression.
    """
    await cache.clear(pattern)
    logger.info("admin.cache_cleared", extra={"pattern": pattern})
    return {"cleared": True, "pattern": pattern}


@router.get("/cache/config")
async def cache_config(factory: CacheFactory = Depends(get_cache_factory)) -> dict:
    return _factory_report(factory)


@router.get("/rate-limit/config")
async def rate_limit_config(factory: RateLimiterFactory = Depends(get_rate_limiter_factory)) -> dict:
    return _factory_report(factory)


@router.get("/rate-limit/{identifier}")
async def rate_limit_stats(
    identifier: str,
    type: RateLimitType | None = Query(default=None, description="Read the live counter of this rule type"),
    limiter: AbstractRateLimiter = Depends(get_rate_limiter),
    settings: Settings = Depends(get_settings),
) -> dict:
    """Counter snapshot for an identifier such as ``ip:203.0.113.7``."""
    rule = None
    if type is RateLimitType.USER:
        rule = authenticated_rule(settings.rate_limit)
    elif type is RateLimitType.IP:
        rule = anonymous_rule(settings.rate_limit)
    stats = await limiter.get_stats(identifier, rule)
    return asdict(stats)


@router.delete("/rate-limit/{identifier}")
async def rate_limit_reset(
    identifier: str,
    type: RateLimitType = Query(default=RateLimitType.IP),
    limiter: AbstractRateLimiter = Depends(get_rate_limiter),
    settings: Settings = Depends(get_settings),
) -> dict:
    rule = authenticated_rule(settings.rate_limit) if type is RateLimitType.USER else anonymous_rule(settings.rate_limit)
    await limiter.reset(identifier, rule)
    logger.info("admin.rate_limit_reset", extra={"key_hash": hash_identifier(identifier), "key_type": type.value})
    return {"reset": True, "identifier": identifier, "type": type.value}


def _factory_report(factory: CacheFactory | RateLimiterFactory) -> dict:
    """Redacted configuration, validation issues and lifecycle state."""
    validation = factory.validate_configuration()
    state = factory.state
    return {
        "config": factory.get_configuration_summary(),
        "validation": {"valid": validation.valid, "provider": validation.provider.value, "issues": validation.issues},
        "state": {"phase": state.phase.value, "kind": state.kind.value if state.kind else None},
    }
