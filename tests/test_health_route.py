from __future__ import annotations

from fastapi.testclient import TestClient

from app.core.app_factory import create_app


def test_health_reports_engine_backends(settings_factory):
    with TestClient(create_app(settings_factory())) as client:
        resp = client.get("/health")

    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "ok"
    assert data["cache"]["provider"] == "memory"
    assert data["cache"]["status"] == "healthy"
    assert data["rate_limiter"]["provider"] == "memory"
    assert "latency_ms" in data["rate_limiter"]


def test_health_is_degraded_while_redis_is_unreachable(settings_factory):
    from app.core.config import RedisSettings

    settings = settings_factory(
        redis=RedisSettings(
            url="redis://127.0.0.1:1/0",
            operation_timeout_seconds=0.2,
            reconnect_base_delay_seconds=3600,
        )
    )
    with TestClient(create_app(settings)) as client:
        resp = client.get("/health")
        convert = client.get("/v1/convert", params={"timestamp": "0"})

    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "degraded"
    assert data["cache"]["provider"] == "memory-fallback"
    assert data["rate_limiter"]["provider"] == "memory-fallback"
    assert convert.status_code == 200
