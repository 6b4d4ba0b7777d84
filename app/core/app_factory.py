"""Application factory for the FastAPI app.

Centralizes app construction (metadata, middleware, handlers, routers) and
owns the lifetime of the cache and rate limiter: both are built once in the
lifespan, stored on ``app.state`` and closed on shutdown.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from app.adapters.cache.factory import CacheFactory
from app.adapters.rate_limit.factory import RateLimiterFactory
from app.api.routes import admin_router, health_router, time_router
from app.core.cache import ResponseCacheMiddleware
from app.core.config import Settings, settings as default_settings
from app.core.exception_handlers import setup_exception_handlers
from app.core.logging import configure_logging
from app.core.middleware import request_id_middleware
from app.core.openapi import apply_openapi_customizations
from app.core.rate_limit import RateLimitMiddleware

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    cache_factory: CacheFactory = app.state.cache_factory
    limiter_factory: RateLimiterFactory = app.state.rate_limiter_factory

    for factory in (cache_factory, limiter_factory):
        validation = factory.validate_configuration()
        if validation.issues:
            logger.warning(
                "config.validation_issues",
                extra={"provider": validation.provider.value, "issues": validation.issues},
            )

    app.state.cache = cache_factory.create()
    app.state.rate_limiter = limiter_factory.create()
    await app.state.cache.start()
    await app.state.rate_limiter.start()
    logger.info(
        "app.started",
        extra={"cache_provider": cache_factory.state.kind.value, "rate_limit_provider": limiter_factory.state.kind.value},
    )
    try:
        yield
    finally:
        await app.state.rate_limiter.close()
        await app.state.cache.close()
        cache_factory.reset()
        limiter_factory.reset()
        logger.info("app.stopped")


def create_app(app_settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application instance.

    Args:
        app_settings: Settings to build the app from; defaults to the
            environment-derived global settings.

    Returns:
        Configured FastAPI app with middleware, handlers, routers and docs.
    """
    cfg = app_settings or default_settings

    # Logging first so subsequent init logs are formatted as desired
    configure_logging(cfg.log)

    app = FastAPI(
        title="Timestamp API",
        description=(
            "Converts and formats timestamps: current time, unix/ISO conversion "
            "across IANA timezones and timezone listing. Responses are cached "
            "and requests rate limited, in memory or on Redis with automatic "
            "in-memory fallback."
        ),
        version="0.1.0",
        license_info={
            "name": "MIT License",
            "url": "https://opensource.org/licenses/MIT",
        },
        lifespan=lifespan,
        debug=cfg.app.debug,
    )
    app.state.settings = cfg
    app.state.cache_factory = CacheFactory(cfg)
    app.state.rate_limiter_factory = RateLimiterFactory(cfg)

    # Middleware: the last registered runs first, so the request id wraps
    # rate limiting, which wraps the response cache.
    app.middleware("http")(ResponseCacheMiddleware(cfg.cache))
    app.middleware("http")(RateLimitMiddleware(cfg.rate_limit))
    app.middleware("http")(request_id_middleware)

    # Exception handlers
    setup_exception_handlers(app)

    # Routers
    app.include_router(time_router, prefix="/v1")
    app.include_router(admin_router, prefix="/admin")
    app.include_router(health_router)

    # OpenAPI customizations (security scheme, tags, exemptions)
    apply_openapi_customizations(app)

    return app
