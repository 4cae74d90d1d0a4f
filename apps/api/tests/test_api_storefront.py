from decimal import Decimal

import pytest
import pytest_asyncio

from prepaid.models.storefront import Product
from prepaid.services.ledger_service import LedgerService
from prepaid.services.pricing_service import PricingService


@pytest_asyncio.fixture
async def catalog(db, org, storefront, product):
    cuba = Product(org_id=org.id, sku_code="CU_CUBACEL_20", name="Cubacel 20", operator_name="Cubacel",
                   country="CU", cost=Decimal("20.00"), send_value=Decimal("20.00"), currency="USD")
    db.add(cuba)
    await db.commit()
    await PricingService(db).create_rule(org.id, name="Default", percentage_markup=Decimal("20"))
    return [product, cuba]


@pytest.mark.asyncio
async def test_products_are_priced_and_filtered_by_country(client, catalog):
    resp = await client.get("/api/v1/storefront/acme/products")
    assert resp.status_code == 200
    items = resp.json()
    assert [p["sku_code"] for p in items] == ["MX_TELCEL_10"]
    assert items[0]["price_before_discount"] == 12.0
    assert items[0]["final_price"] == 12.0
    assert items[0]["discount_applied"] is False

    resp = await client.get("/api/v1/storefront/acme/products", params={"country": "CU"})
    assert resp.json() == []


@pytest.mark.asyncio
async def test_unknown_or_inactive_storefront_is_404(client, db, catalog, storefront):
    resp = await client.get("/api/v1/storefront/nope/products")
    assert resp.status_code == 404

    storefront.is_active = False
    await db.commit()
    resp = await client.get("/api/v1/storefront/acme/products")
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_automatic_discount_applies_to_listed_prices(client, catalog, auth_headers):
    resp = await client.put("/api/v1/storefront/settings", headers=auth_headers("admin"), json={
        "discount_enabled": True,
        "discount_type": "percentage",
        "discount_value": "10",
        "discount_countries": ["mx"],
    })
    assert resp.status_code == 200
    assert resp.json()["discount_countries"] == ["MX"]

    items = (await client.get("/api/v1/storefront/acme/products")).json()
    assert items[0]["price_before_discount"] == 12.0
    assert items[0]["final_price"] == 10.8
    assert items[0]["discount_applied"] is True


@pytest.mark.asyncio
async def test_gateway_checkout_waits_for_payment(client, catalog, topup):
    resp = await client.post("/api/v1/storefront/acme/checkout", json={
        "sku_code": "MX_TELCEL_10",
        "phone_number": "+5215500000009",
        "email": "buyer@example.com",
    })
    assert resp.status_code == 201
    body = resp.json()
    assert body["status"] == "pending"
    assert body["amount"] == 12.0
    assert body["payment_type"] == "gateway"
    assert topup.calls == []


@pytest.mark.asyncio
async def test_balance_checkout_is_fulfilled_immediately(client, db, catalog, customer, topup):
    await LedgerService(db).assign(customer.id, Decimal("20"))

    resp = await client.post("/api/v1/storefront/acme/checkout", json={
        "sku_code": "MX_TELCEL_10",
        "phone_number": customer.phone_number,
        "payment_type": "balance",
    })
    assert resp.status_code == 201
    assert resp.json()["status"] == "completed"
    assert len(topup.calls) == 1


@pytest.mark.asyncio
async def test_balance_checkout_needs_a_known_customer(client, catalog):
    resp = await client.post("/api/v1/storefront/acme/checkout", json={
        "sku_code": "MX_TELCEL_10",
        "phone_number": "+5215500000000",
        "payment_type": "balance",
    })
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_disabled_country_cannot_be_bought(client, catalog):
    resp = await client.post("/api/v1/storefront/acme/checkout", json={
        "sku_code": "CU_CUBACEL_20",
        "phone_number": "+5350000000",
    })
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_admin_manages_catalog(client, org, storefront, auth_headers):
    headers = auth_headers("admin")
    payload = {"sku_code": "GT_TIGO_5", "name": "Tigo 5", "operator_name": "Tigo", "country": "gt", "cost": "5"}
    resp = await client.post("/api/v1/storefront/products", headers=headers, json=payload)
    assert resp.status_code == 201
    assert resp.json()["country"] == "GT"

    resp = await client.post("/api/v1/storefront/products", headers=headers, json=payload)
    assert resp.status_code == 400

    resp = await client.get("/api/v1/storefront/products", headers=auth_headers("viewer"))
    assert [p["sku_code"] for p in resp.json()] == ["GT_TIGO_5"]

    resp = await client.post("/api/v1/storefront/products", headers=auth_headers("viewer"), json=payload)
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_settings_are_created_on_first_read(client, org, auth_headers):
    resp = await client.get("/api/v1/storefront/settings", headers=auth_headers("viewer"))
    assert resp.status_code == 200
    assert resp.json()["is_active"] is False
    assert resp.json()["all_countries_enabled"] is True
