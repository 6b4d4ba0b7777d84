"""Rate limiting middleware for the versioned API.

This module wires the rate limiter built at startup into the HTTP layer.

Rate limiting strategy:
- Authenticated callers (``Authorization: Bearer`` or ``X-API-Key``) are
  limited per hashed credential under the authenticated budget.
- Anonymous callers are limited per client IP (first ``X-Forwarded-For``
  hop, then ``X-Real-IP``, then the socket peer).
- Limiter failures fail open: the request proceeds unthrottled.

Usage:
    app.middleware("http")(RateLimitMiddleware(settings.rate_limit))
"""

from __future__ import annotations

import logging
import time
from typing import Awaitable, Callable

from fastapi import Request, Response
from fastapi.responses import JSONResponse

from app.adapters.rate_limit.base import AbstractRateLimiter, RateLimitResult, RateLimitRule
from app.adapters.rate_limit.factory import anonymous_rule, authenticated_rule
from app.core.config import RateLimitSettings, split_csv
from app.core.errors import RateLimitExceededError
from app.core.exception_handlers import build_error_content
from app.core.logging import hash_identifier

logger = logging.getLogger(__name__)

RuleResolver = Callable[[Request, str], RateLimitRule]
LimitReachedCallback = Callable[[Request, RateLimitResult], None]


def extract_credential(request: Request) -> str | None:
    """Bearer token or X-API-Key value, if the caller sent one."""
    authorization = request.headers.get("Authorization", "")
    if authorization.lower().startswith("bearer "):
        token = authorization[7:].strip()
        if token:
            return token
    return request.headers.get("X-API-Key") or None


def client_ip(request: Request) -> str:
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        first_hop = forwarded_for.split(",")[0].strip()
        if first_hop:
            return first_hop
    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else "unknown"


def build_identifier(request: Request) -> str:
    """Build the limiter identifier for the current request.

    Returns:
        ``user:<hash>`` for authenticated callers, ``ip:<address>`` otherwise.
    """
    credential = extract_credential(request)
    if credential:
        return f"user:{hash_identifier(credential)}"
    return f"ip:{client_ip(request)}"


def rate_limit_headers(result: RateLimitResult, now_ms: float, cfg: RateLimitSettings) -> dict[str, str]:
    headers: dict[str, str] = {}
    if cfg.standard_headers:
        headers["RateLimit-Limit"] = str(result.total_limit)
        headers["RateLimit-Remaining"] = str(result.remaining)
        headers["RateLimit-Reset"] = str(result.retry_after_seconds(now_ms))
    if cfg.legacy_headers:
        headers["X-RateLimit-Limit"] = str(result.total_limit)
        headers["X-RateLimit-Remaining"] = str(result.remaining)
        headers["X-RateLimit-Reset"] = str(result.reset_time_ms // 1000)
    return headers


class RateLimitMiddleware:
    """HTTP middleware enforcing per-identifier request budgets.

    The limiter is read from ``request.app.state.rate_limiter``.

    When ``skip_successful_requests`` or ``skip_failed_requests`` is set the
    increment is deferred: ``check_limit`` gates the request and the unit is
    consumed after the handler returns, only for statuses that count. Two
    concurrent requests of one caller may both pass the gate.

    Args:
        rate_limit_settings: Budgets, header switches and path prefixes.
        rule_resolver: Optional override choosing the rule per request.
        on_limit_reached: Called with the request and the denying result.
        clock: Time source returning UNIX time in seconds.
    """

    def __init__(
        self,
        rate_limit_settings: RateLimitSettings,
        *,
        rule_resolver: RuleResolver | None = None,
        on_limit_reached: LimitReachedCallback | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = rate_limit_settings
        self.path_prefixes = tuple(split_csv(rate_limit_settings.path_prefixes))
        self.rule_resolver = rule_resolver or self.default_rule
        self.on_limit_reached = on_limit_reached
        self._clock = clock

    @property
    def deferred(self) -> bool:
        return self.settings.skip_successful_requests or self.settings.skip_failed_requests

    def default_rule(self, request: Request, identifier: str) -> RateLimitRule:
        if identifier.startswith("user:"):
            return authenticated_rule(self.settings)
        return anonymous_rule(self.settings)

    def counts(self, status_code: int) -> bool:
        if status_code < 400:
            return not self.settings.skip_successful_requests
        return not self.settings.skip_failed_requests

    async def __call__(self, request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        limiter: AbstractRateLimiter | None = getattr(request.app.state, "rate_limiter", None)
        if limiter is None or not self.settings.enabled or not request.url.path.startswith(self.path_prefixes):
            return await call_next(request)

        key_hash = None
        try:
            identifier = build_identifier(request)
            key_hash = hash_identifier(identifier)
            rule = self.rule_resolver(request, identifier)
            result = await limiter.check_limit(identifier, rule)
            if not self.deferred and result.allowed:
                result = await limiter.increment(identifier, rule)
        except Exception as exc:
            logger.warning(
                "rate_limit.check_failed",
                extra={"key_hash": key_hash, "error_type": type(exc).__name__},
            )
            return await call_next(request)

        now_ms = self._clock() * 1000
        if not result.allowed:
            return self._reject(request, result, now_ms, key_hash, rule)

        response = await call_next(request)
        response.headers.update(rate_limit_headers(result, now_ms, self.settings))

        if self.deferred and self.counts(response.status_code):
            try:
                await limiter.increment(identifier, rule)
            except Exception as exc:
                logger.warning(
                    "rate_limit.increment_failed",
                    extra={"key_hash": key_hash, "error_type": type(exc).__name__},
                )
        return response

    def _reject(
        self,
        request: Request,
        result: RateLimitResult,
        now_ms: float,
        key_hash: str,
        rule: RateLimitRule,
    ) -> JSONResponse:
        retry_after = result.retry_after_seconds(now_ms)
        logger.warning(
            "rate_limit.exceeded",
            extra={
                "key_type": rule.type.value,
                "key_hash": key_hash,
                "limit": result.total_limit,
                "remaining": result.remaining,
                "window_ms": rule.window_ms,
                "retry_after_s": retry_after,
            },
        )
        if self.on_limit_reached is not None:
            self.on_limit_reached(request, result)

        error = RateLimitExceededError(
            code="rate_limit_exceeded",
            message="Too many requests. Please try again later.",
            details={
                "limit": result.total_limit,
                "remaining": result.remaining,
                "reset_time": result.reset_time_ms,
                "retry_after": retry_after,
            },
        )
        headers = rate_limit_headers(result, now_ms, self.settings)
        headers["Retry-After"] = str(retry_after)
        return JSONResponse(status_code=429, content=build_error_content(error), headers=headers)
