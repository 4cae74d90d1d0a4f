import json

import pytest
from sqlalchemy import select

from prepaid.models.integrations import WebhookLog
from prepaid.services.webhooks_service import WebhooksService

SECRET = {"X-Webhook-Secret": "hook-secret"}


def _stripe_event(event_type, obj):
    return {"id": "evt_test_1", "object": "event", "type": event_type, "data": {"object": obj}}


async def _logs(db, source):
    result = await db.execute(select(WebhookLog).where(WebhookLog.source == source))
    return result.scalars().all()


@pytest.mark.asyncio
async def test_topup_webhook_requires_shared_secret(client, org):
    resp = await client.post("/api/v1/webhooks/topup", json={"status": "Completed", "order_id": "ORD-1-ABCDEFGHI"})
    assert resp.status_code == 401

    resp = await client.post("/api/v1/webhooks/topup", headers={"X-Webhook-Secret": "wrong"},
                             json={"status": "Completed", "order_id": "ORD-1-ABCDEFGHI"})
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_topup_webhook_completes_pending_transaction(client, db, workflow, org, product):
    tx = await workflow.checkout(org, product, phone_number="+5215500000001", payment_type="gateway")

    resp = await client.post("/api/v1/webhooks/topup", headers=SECRET, json={
        "status": "Completed",
        "order_id": tx.order_id,
        "provider_transaction_id": "DING-42",
    })
    assert resp.status_code == 200
    body = resp.json()
    assert body["received"] is True
    assert body["status"] == "completed"
    assert body["changed"] is True

    await db.refresh(tx)
    assert tx.status == "completed"
    assert tx.provider_transaction_id == "DING-42"

    # Redelivery is acknowledged without changes
    resp = await client.post("/api/v1/webhooks/topup", headers=SECRET, json={
        "Status": "Failed",
        "TransferId": "DING-42",
    })
    assert resp.status_code == 200
    assert resp.json()["changed"] is False

    logs = await _logs(db, "dingconnect")
    assert len(logs) == 2
    assert all(log.status == "success" for log in logs)
    assert logs[0].transaction_id == tx.id


@pytest.mark.asyncio
async def test_topup_webhook_resolves_retry_references(client, db, workflow, org, product):
    tx = await workflow.checkout(org, product, phone_number="+5215500000001", payment_type="gateway")

    resp = await client.post("/api/v1/webhooks/topup", headers=SECRET, json={
        "Status": "Failed",
        "DistributorRef": f"{tx.order_id}-R2",
        "ErrorMessage": "Account barred",
    })
    assert resp.status_code == 200
    assert resp.json()["order_id"] == tx.order_id
    assert resp.json()["status"] == "failed"


@pytest.mark.asyncio
async def test_topup_webhook_acknowledges_unknown_reference(client, db, org):
    resp = await client.post("/api/v1/webhooks/topup", headers=SECRET,
                             json={"status": "Completed", "provider_transaction_id": "DING-404"})
    assert resp.status_code == 200
    assert "ignored" in resp.json()

    logs = await _logs(db, "dingconnect")
    assert len(logs) == 1
    assert logs[0].status == "failed"
    assert logs[0].response_code == 200


@pytest.mark.asyncio
async def test_topup_webhook_rejects_bad_payloads(client, org):
    resp = await client.post("/api/v1/webhooks/topup", headers=SECRET, json={"status": "Exploded", "order_id": "x"})
    assert resp.status_code == 400

    resp = await client.post("/api/v1/webhooks/topup", headers={**SECRET, "Content-Type": "application/json"},
                             content=b"not json")
    assert resp.status_code == 400

    resp = await client.post("/api/v1/webhooks/topup", headers=SECRET, json={"status": "Completed"})
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_stripe_checkout_completed_pays_and_fulfils(client, db, workflow, org, product, topup):
    tx = await workflow.checkout(org, product, phone_number="+5215500000001", payment_type="gateway")
    event = _stripe_event("checkout.session.completed", {
        "id": "cs_test_1",
        "object": "checkout.session",
        "payment_intent": "pi_test_1",
        "metadata": {"order_id": tx.order_id},
    })

    resp = await client.post("/api/v1/webhooks/stripe", content=json.dumps(event),
                             headers={"Content-Type": "application/json"})
    assert resp.status_code == 200
    assert resp.json()["status"] == "completed"
    assert len(topup.calls) == 1

    await db.refresh(tx)
    assert tx.payment_id == "pi_test_1"
    assert tx.paid_at is not None

    # Stripe redelivers; the second receipt must not fulfil again
    resp = await client.post("/api/v1/webhooks/stripe", content=json.dumps(event),
                             headers={"Content-Type": "application/json"})
    assert resp.json()["changed"] is False
    assert len(topup.calls) == 1


@pytest.mark.asyncio
async def test_stripe_payment_failure_marks_transaction_failed(client, db, workflow, org, product):
    tx = await workflow.checkout(org, product, phone_number="+5215500000001", payment_type="gateway")
    event = _stripe_event("checkout.session.expired", {"id": "cs_test_2", "metadata": {"order_id": tx.order_id}})

    resp = await client.post("/api/v1/webhooks/stripe", content=json.dumps(event),
                             headers={"Content-Type": "application/json"})
    assert resp.status_code == 200
    await db.refresh(tx)
    assert tx.status == "failed"


@pytest.mark.asyncio
async def test_stripe_subscription_events_update_org(client, db, org):
    org.stripe_customer_id = "cus_test_1"
    org.tier = "growth"
    await db.commit()

    event = _stripe_event("customer.subscription.deleted", {"id": "sub_1", "customer": "cus_test_1"})
    resp = await client.post("/api/v1/webhooks/stripe", content=json.dumps(event),
                             headers={"Content-Type": "application/json"})
    assert resp.status_code == 200

    await db.refresh(org)
    assert org.subscription_status == "canceled"
    assert org.tier == "starter"


@pytest.mark.asyncio
async def test_stripe_signature_is_checked_when_secret_configured(client, app, org):
    app.state.settings.stripe_webhook_secret = "whsec_test"
    event = _stripe_event("checkout.session.completed", {"id": "cs_test_3", "metadata": {"order_id": "x"}})

    resp = await client.post("/api/v1/webhooks/stripe", content=json.dumps(event),
                             headers={"Content-Type": "application/json", "Stripe-Signature": "t=1,v1=bad"})
    assert resp.status_code == 400

    resp = await client.post("/api/v1/webhooks/stripe", content=json.dumps(event),
                             headers={"Content-Type": "application/json"})
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_unexpected_handler_error_closes_log_as_failed(db, workflow, org, product, monkeypatch):
    tx = await workflow.checkout(org, product, phone_number="+5215500000001", payment_type="gateway")

    async def broken_report(**kwargs):
        raise RuntimeError("lookup exploded")

    monkeypatch.setattr(workflow, "provider_report", broken_report)
    with pytest.raises(RuntimeError):
        await WebhooksService(db, workflow).handle_topup({"status": "Completed", "order_id": tx.order_id})

    logs = await _logs(db, "dingconnect")
    assert len(logs) == 1
    assert logs[0].status == "failed"
    assert logs[0].response_code == 500
    assert logs[0].error_message == "lookup exploded"
    assert logs[0].processed_at is not None


@pytest.mark.asyncio
async def test_webhook_logs_are_listed_and_replayed(client, db, workflow, org, product, auth_headers):
    tx = await workflow.checkout(org, product, phone_number="+5215500000001", payment_type="gateway")
    resp = await client.post("/api/v1/webhooks/topup", headers=SECRET, json={
        "status": "Completed",
        "order_id": tx.order_id,
        "provider_transaction_id": "DING-77",
    })
    assert resp.status_code == 200

    viewer = auth_headers("viewer")
    resp = await client.get("/api/v1/webhooks/logs", headers=viewer)
    assert resp.status_code == 200
    logs = resp.json()
    assert len(logs) == 1
    assert logs[0]["source"] == "dingconnect"
    assert logs[0]["event"] == "topup.completed"
    assert logs[0]["transaction_id"] == tx.id
    log_id = logs[0]["id"]

    resp = await client.get(f"/api/v1/webhooks/logs/{log_id}", headers=viewer)
    assert resp.status_code == 200
    assert resp.json()["payload"]["provider_transaction_id"] == "DING-77"

    resp = await client.post(f"/api/v1/webhooks/logs/{log_id}/replay", headers=viewer)
    assert resp.status_code == 403

    resp = await client.post(f"/api/v1/webhooks/logs/{log_id}/replay", headers=auth_headers("admin"))
    assert resp.status_code == 200
    body = resp.json()
    assert body["replayed_from"] == log_id
    assert body["status"] == "completed"
    assert body["changed"] is False

    resp = await client.get("/api/v1/webhooks/logs", headers=viewer, params={"status": "success"})
    assert len(resp.json()) == 2
    resp = await client.get("/api/v1/webhooks/logs", headers=viewer, params={"status": "exploded"})
    assert resp.status_code == 400

    resp = await client.get("/api/v1/webhooks/logs/missing", headers=viewer)
    assert resp.status_code == 404
    resp = await client.get(f"/api/v1/webhooks/logs/{log_id}", headers=auth_headers("admin", org_id="other-org"))
    assert resp.status_code == 403
    resp = await client.get("/api/v1/webhooks/logs", headers=auth_headers("admin", org_id="other-org"))
    assert resp.json() == []


@pytest.mark.asyncio
async def test_stripe_log_replay_does_not_fulfil_twice(client, db, workflow, org, product, topup, auth_headers):
    tx = await workflow.checkout(org, product, phone_number="+5215500000001", payment_type="gateway")
    event = _stripe_event("checkout.session.completed", {
        "id": "cs_test_9",
        "object": "checkout.session",
        "payment_intent": "pi_test_9",
        "metadata": {"order_id": tx.order_id},
    })
    resp = await client.post("/api/v1/webhooks/stripe", content=json.dumps(event),
                             headers={"Content-Type": "application/json"})
    assert resp.status_code == 200
    assert len(topup.calls) == 1

    log_id = (await client.get("/api/v1/webhooks/logs", headers=auth_headers("admin"),
                               params={"source": "stripe"})).json()[0]["id"]
    resp = await client.post(f"/api/v1/webhooks/logs/{log_id}/replay", headers=auth_headers("admin"))
    assert resp.status_code == 200
    assert resp.json()["changed"] is False
    assert len(topup.calls) == 1
