"""Pytest configuration and fixtures shared across all test modules.

Environment variables are set before any ``app`` import so the global
settings are built from them, and Redis is never selected implicitly.
"""

import os

# CRITICAL: Set this before any imports that might load settings
os.environ["APP_ENV"] = "testing"
os.environ.pop("REDIS_URL", None)
os.environ.pop("REDIS_USE_REDIS", None)

os.environ.setdefault("APP_API_KEY_REQUIRED", "true")
os.environ.setdefault("APP_API_KEYS", "test-api-key-123,test-api-key-456")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest

from app.core.config import CacheSettings, RateLimitSettings, RedisSettings, Settings


class FakeTime:
    """Deterministic clock (UNIX seconds) used to test expiry and windows."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.current = start

    def __call__(self) -> float:
        return self.current

    def advance_ms(self, milliseconds: float) -> None:
        self.current += milliseconds / 1000


@pytest.fixture
def fake_time() -> FakeTime:
    return FakeTime()


def make_settings(**overrides) -> Settings:
    """Settings with in-memory backends unless a section is overridden."""
    sections = {
        "cache": CacheSettings(),
        "rate_limit": RateLimitSettings(),
        "redis": RedisSettings(url=None, use_redis=None),
    }
    sections.update(overrides)
    return Settings(**sections)


@pytest.fixture
def settings_factory():
    return make_settings
