from datetime import datetime, timedelta

import pytest


@pytest.mark.asyncio
async def test_tiers_are_public(client):
    resp = await client.get("/api/v1/subscriptions/tiers")
    assert resp.status_code == 200
    assert [t["tier"] for t in resp.json()] == ["starter", "growth", "scale", "enterprise"]


@pytest.mark.asyncio
async def test_current_subscription_and_usage(client, org, auth_headers):
    resp = await client.get("/api/v1/subscriptions/current", headers=auth_headers("viewer"))
    assert resp.status_code == 200
    body = resp.json()
    assert body["tier"] == "starter"
    assert body["next_tier"] == "growth"
    assert body["usage"]["transaction_limit"] == 200
    assert body["usage"]["transactions_this_month"] == 0

    resp = await client.get("/api/v1/subscriptions/usage", headers=auth_headers("viewer"))
    assert resp.json()["remaining"] == 200
    assert resp.json()["approaching_limit"] is False


@pytest.mark.asyncio
async def test_usage_counts_reset_in_a_new_month(client, db, org, auth_headers):
    org.transactions_this_month = 170
    org.last_usage_reset = datetime.utcnow() - timedelta(days=40)
    await db.commit()

    resp = await client.get("/api/v1/subscriptions/usage", headers=auth_headers("viewer"))
    assert resp.json()["transactions_this_month"] == 0

    org.last_usage_reset = datetime.utcnow()
    await db.commit()
    resp = await client.get("/api/v1/subscriptions/usage", headers=auth_headers("viewer"))
    assert resp.json()["transactions_this_month"] == 170
    assert resp.json()["approaching_limit"] is True


@pytest.mark.asyncio
async def test_upgrade_and_guarded_downgrade(client, org, auth_headers):
    headers = auth_headers("admin")
    resp = await client.post("/api/v1/subscriptions/upgrade", headers=headers, json={"tier": "growth"})
    assert resp.status_code == 200
    assert resp.json()["tier"] == "growth"
    assert resp.json()["usage"]["transaction_limit"] == 3000

    resp = await client.post("/api/v1/subscriptions/upgrade", headers=headers, json={"tier": "starter"})
    assert resp.status_code == 400

    resp = await client.post("/api/v1/subscriptions/upgrade", headers=headers,
                             json={"tier": "starter", "allow_downgrade": True})
    assert resp.status_code == 200
    assert resp.json()["tier"] == "starter"


@pytest.mark.asyncio
async def test_upgrade_requires_billing_permission(client, org, auth_headers):
    resp = await client.post("/api/v1/subscriptions/upgrade", headers=auth_headers("operator"),
                             json={"tier": "growth"})
    assert resp.status_code == 403

    resp = await client.post("/api/v1/subscriptions/upgrade", headers=auth_headers("admin"),
                             json={"tier": "platinum"})
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_current_requires_authentication(client, org):
    resp = await client.get("/api/v1/subscriptions/current")
    assert resp.status_code == 401
