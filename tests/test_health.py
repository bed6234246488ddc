from unittest.mock import MagicMock

from fastapi.testclient import TestClient

from tollgate.app.core.config import Settings
from tollgate.app.main import app, build_limiter, create_app
from tollgate.app.ratelimit.backends import FixedWindowLimiter, RedisCounterStore
from tollgate.app.ratelimit.engine import AdmissionEngine
from tollgate.app.ratelimit.rules import RuleSet


def test_health():
    client = TestClient(app)
    resp = client.get("/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "ok"
    assert "rate_limiter" in data["components"]


def test_health_reports_memory_backend():
    engine = AdmissionEngine(RuleSet(burst=10))
    client = TestClient(create_app(settings=Settings(_env_file=None), limiter=engine))
    engine.limit_by_keys([("a",), ("b",)])

    component = client.get("/health").json()["components"]["rate_limiter"]
    assert component["backend"] == "memory"
    assert component["enabled"] is True
    assert component["keys"] == 2


def test_health_reports_redis_backend():
    limiter = FixedWindowLimiter(RuleSet(), RedisCounterStore(redis_client=MagicMock()), fail_closed=False)
    client = TestClient(create_app(settings=Settings(_env_file=None), limiter=limiter))

    component = client.get("/health").json()["components"]["rate_limiter"]
    assert component["backend"] == "redis"
    assert "keys" not in component


def test_lifespan_starts_and_stops_sweeper():
    engine = AdmissionEngine(RuleSet(sweep_interval=30))
    with TestClient(create_app(settings=Settings(_env_file=None), limiter=engine)):
        assert engine.store.running
    assert not engine.store.running


def test_unhandled_error_returns_json_500():
    application = create_app(settings=Settings(_env_file=None, rate_limit_enabled=False))

    @application.get("/boom")
    async def boom():
        raise RuntimeError("secret details")

    resp = TestClient(application, raise_server_exceptions=False).get("/boom")
    assert resp.status_code == 500
    body = resp.json()
    assert body["error"] == "internal_error"
    assert body["message"] == "Internal server error"
    assert body["request_id"]


def test_build_limiter_selects_backend():
    assert isinstance(build_limiter(Settings(_env_file=None)), AdmissionEngine)

    limiter = build_limiter(Settings(_env_file=None, redis_enabled=True, rate_limit_fail_closed=True))
    assert isinstance(limiter, FixedWindowLimiter)
    assert isinstance(limiter.counter_store, RedisCounterStore)
    assert limiter.fail_closed is True
