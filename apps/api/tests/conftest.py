from decimal import Decimal

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from prepaid.api.auth import create_access_token
from prepaid.core.config import Settings
from prepaid.db.base import Base
from prepaid.main import create_app
from prepaid.models.customers import Customer
from prepaid.models.organizations import Organization
from prepaid.models.storefront import Product, StorefrontSettings
from prepaid.services.providers.topup_client import TransferResult
from prepaid.services.transaction_workflow import TransactionWorkflow


class FakeTopupClient:
    """Stands in for the provider API; queued results are returned in order."""

    def __init__(self):
        self.results = []
        self.calls = []

    def send_transfer(self, sku_code, account_number, send_value=None, validate_only=False, distributor_ref=None):
        self.calls.append({
            "sku_code": sku_code,
            "account_number": account_number,
            "send_value": send_value,
            "validate_only": validate_only,
            "distributor_ref": distributor_ref,
        })
        result = self.results.pop(0) if self.results else TransferResult(
            transfer_id=f"T-{len(self.calls)}", status="Completed")
        if isinstance(result, Exception):
            raise result
        return result


class FakeNotifier:
    def __init__(self):
        self.sent = []

    async def send_refund_notice(self, customer_email, order_id, amount, currency, reason):
        self.sent.append({
            "email": customer_email,
            "order_id": order_id,
            "amount": amount,
            "currency": currency,
            "reason": reason,
        })


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'test.db'}",
        jwt_secret="test-secret",
        rate_limit_enabled=False,
        topup_provider_api_key="test-key",
        topup_webhook_secret="hook-secret",
    )


@pytest_asyncio.fixture
async def app(settings):
    app = create_app(settings)
    async with app.state.engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    app.state.topup_client = FakeTopupClient()
    app.state.notifier = FakeNotifier()
    yield app
    await app.state.engine.dispose()


@pytest_asyncio.fixture
async def db(app):
    async with app.state.session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


@pytest.fixture
def topup(app):
    return app.state.topup_client


@pytest.fixture
def notifier(app):
    return app.state.notifier


@pytest.fixture
def workflow(app, db, settings):
    return TransactionWorkflow(db, settings=settings, topup_client=app.state.topup_client,
                               notifier=app.state.notifier)


@pytest_asyncio.fixture
async def org(db):
    org = Organization(name="Acme Topups", slug="acme", email="ops@acme.test", tier="starter")
    db.add(org)
    await db.commit()
    return org


@pytest_asyncio.fixture
async def storefront(db, org):
    settings = StorefrontSettings(
        org_id=org.id,
        is_active=True,
        enabled_countries=[],
        disabled_countries=["CU"],
        all_countries_enabled=True,
        discount_enabled=False,
        discount_type="percentage",
        discount_value=Decimal("0"),
        discount_countries=[],
    )
    db.add(settings)
    await db.commit()
    return settings


@pytest_asyncio.fixture
async def product(db, org):
    product = Product(
        org_id=org.id,
        sku_code="MX_TELCEL_10",
        name="Telcel 10 USD",
        operator_name="Telcel",
        country="MX",
        cost=Decimal("10.00"),
        send_value=Decimal("10.00"),
        currency="USD",
    )
    db.add(product)
    await db.commit()
    return product


@pytest_asyncio.fixture
async def customer(db, org):
    customer = Customer(org_id=org.id, phone_number="+5215512345678", email="ana@example.com", name="Ana")
    db.add(customer)
    await db.commit()
    return customer


@pytest.fixture
def auth_headers(settings, org):
    def _make(*roles, org_id=None, user_id="user-1"):
        token = create_access_token(settings, user_id=user_id, org_id=org_id or org.id,
                                    roles=list(roles) or ["admin"])
        return {"Authorization": f"Bearer {token}"}

    return _make
