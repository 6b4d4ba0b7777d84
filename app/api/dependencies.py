"""FastAPI dependencies exposing the engine handles built at startup."""

from __future__ import annotations

from fastapi import Request

from app.adapters.cache.base import AbstractCacheBackend
from app.adapters.cache.factory import CacheFactory
from app.adapters.rate_limit.base import AbstractRateLimiter
from app.adapters.rate_limit.factory import RateLimiterFactory
from app.core.config import Settings


def get_cache(request: Request) -> AbstractCacheBackend:
    return request.app.state.cache


def get_rate_limiter(request: Request) -> AbstractRateLimiter:
    return request.app.state.rate_limiter


def get_cache_factory(request: Request) -> CacheFactory:
    return request.app.state.cache_factory


def get_rate_limiter_factory(request: Request) -> RateLimiterFactory:
    return request.app.state.rate_limiter_factory


def get_settings(request: Request) -> Settings:
    return request.app.state.settings
