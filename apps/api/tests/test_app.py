import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy.orm.exc import StaleDataError

from prepaid.core.config import Settings, normalize_database_url
from prepaid.db.async_session import _to_async_url
from prepaid.main import DAY_WINDOW, RateLimitMiddleware, create_app


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"ok": True}


@pytest.mark.asyncio
async def test_rate_limit_returns_429_with_retry_after(tmp_path):
    settings = Settings(
        database_url=f"sqlite:///{tmp_path / 'rl.db'}",
        jwt_secret="test-secret",
        rate_limit_enabled=True,
        rate_limit_per_min=1,
    )
    app = create_app(settings)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        # GET gets five requests per minute when the base limit is one
        for _ in range(5):
            resp = await client.get("/api/v1/subscriptions/tiers")
            assert resp.status_code == 200
        resp = await client.get("/api/v1/subscriptions/tiers")
        assert resp.status_code == 429
        assert resp.json()["error"]["type"] == "rate_limit_exceeded"
        assert int(resp.headers["Retry-After"]) >= 1

        # Health checks are never limited
        assert (await client.get("/health")).status_code == 200
    await app.state.engine.dispose()


def test_database_url_normalization():
    assert normalize_database_url("postgres://u:p@db.example.com/app") == "postgresql+psycopg2://u:p@db.example.com/app"
    assert "sslmode=require" in normalize_database_url("postgresql://u:p@abc.supabase.co/postgres")
    assert normalize_database_url("sqlite:///./x.db") == "sqlite:///./x.db"
    assert _to_async_url("postgresql+psycopg2://u@h/db") == "postgresql+asyncpg://u@h/db"
    assert _to_async_url("sqlite:///./x.db") == "sqlite+aiosqlite:///./x.db"


@pytest.mark.asyncio
async def test_concurrent_modification_maps_to_conflict(app, client):
    async def stale_write():
        raise StaleDataError("UPDATE statement on table 'customers' expected to update 1 row(s); 0 were matched.")

    app.add_api_route("/stale-write", stale_write, methods=["POST"])
    resp = await client.post("/stale-write")
    assert resp.status_code == 409
    body = resp.json()
    assert body["type"] == "error"
    assert body["error"]["type"] == "conflict"
    assert "customers" not in body["error"]["message"]


def test_expired_rate_limit_buckets_are_evicted(settings):
    middleware = RateLimitMiddleware(app=None, settings=settings)
    now = 2 * DAY_WINDOW
    middleware.buckets = {
        "t:acme|ip:1.1.1.1": {"minute": (now - DAY_WINDOW, 3), "day": (now - DAY_WINDOW, 3)},
        "t:acme|ip:2.2.2.2": {"minute": (now - 30, 1), "day": (now - 3600, 7)},
    }

    assert middleware.evict_expired(now) == 1
    assert list(middleware.buckets) == ["t:acme|ip:2.2.2.2"]
    assert middleware.last_sweep == now
    assert middleware.evict_expired(now + 1) == 0
