import pytest

from prepaid.repositories.integrations_repository import IntegrationsRepository


async def _create(client, headers, provider, **extra):
    resp = await client.post("/api/v1/integrations", headers=headers, json={"provider": provider, **extra})
    assert resp.status_code == 201, resp.text
    return resp.json()


async def _primaries(client, headers):
    resp = await client.get("/api/v1/integrations", headers=headers)
    return [i["id"] for i in resp.json() if i["is_primary_email"]]


@pytest.mark.asyncio
async def test_credentials_are_masked(client, org, auth_headers):
    created = await _create(client, auth_headers("admin"), "dingconnect",
                            credentials={"api_key": "sk_live_1234567890", "pin": "1234"})
    assert created["credentials"] == {"api_key": "****7890", "pin": "****"}


@pytest.mark.asyncio
async def test_unknown_provider_is_rejected(client, org, auth_headers):
    resp = await client.post("/api/v1/integrations", headers=auth_headers("admin"), json={"provider": "carrier-pigeon"})
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_only_one_primary_email_per_org(client, org, auth_headers):
    headers = auth_headers("admin")
    first = await _create(client, headers, "zeptomail", is_primary_email=True)
    second = await _create(client, headers, "mailgun")
    assert first["is_primary_email"] is True
    assert await _primaries(client, headers) == [first["id"]]

    resp = await client.patch(f"/api/v1/integrations/{second['id']}/primary", headers=headers,
                              json={"is_primary_email": True})
    assert resp.status_code == 200
    assert resp.json()["is_primary_email"] is True
    assert await _primaries(client, headers) == [second["id"]]

    resp = await client.patch(f"/api/v1/integrations/{second['id']}/primary", headers=headers,
                              json={"is_primary_email": False})
    assert resp.json()["is_primary_email"] is False
    assert await _primaries(client, headers) == []


@pytest.mark.asyncio
async def test_topup_integrations_cannot_be_primary_email(client, org, auth_headers):
    headers = auth_headers("admin")
    ding = await _create(client, headers, "dingconnect")
    resp = await client.patch(f"/api/v1/integrations/{ding['id']}/primary", headers=headers,
                              json={"is_primary_email": True})
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_unpersisted_primary_change_is_reverted(client, org, auth_headers, monkeypatch):
    headers = auth_headers("admin")
    first = await _create(client, headers, "zeptomail", is_primary_email=True)
    second = await _create(client, headers, "sendgrid")

    original = IntegrationsRepository.set_primary_flag

    async def lossy_set_primary_flag(self, integration_id, flag, now):
        if integration_id == second["id"]:
            return 0
        return await original(self, integration_id, flag, now)

    monkeypatch.setattr(IntegrationsRepository, "set_primary_flag", lossy_set_primary_flag)

    resp = await client.patch(f"/api/v1/integrations/{second['id']}/primary", headers=headers,
                              json={"is_primary_email": True})
    assert resp.status_code == 409
    assert resp.json()["error"]["type"] == "conflict"
    assert await _primaries(client, headers) == [first["id"]]


@pytest.mark.asyncio
async def test_viewer_can_list_but_not_manage(client, org, auth_headers):
    resp = await client.get("/api/v1/integrations", headers=auth_headers("viewer"))
    assert resp.status_code == 200
    resp = await client.post("/api/v1/integrations", headers=auth_headers("viewer"), json={"provider": "mailgun"})
    assert resp.status_code == 403
