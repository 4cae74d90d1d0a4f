from datetime import datetime
from decimal import Decimal
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from prepaid.api.auth import CurrentUser, require_permission
from prepaid.api.deps_async import get_db_async, get_workflow
from prepaid.core.exceptions import NotFoundError
from prepaid.core.permissions import Permission
from prepaid.repositories.customers_repository import CustomersRepository
from prepaid.repositories.storefront_repository import StorefrontRepository
from prepaid.services.storefront_service import StorefrontService
from prepaid.services.transaction_workflow import TransactionWorkflow

router = APIRouter(prefix="/api/v1/storefront", tags=["storefront"])


class ProductOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    sku_code: str
    name: str
    provider: str
    operator_name: str
    country: str
    cost: float
    send_value: Optional[float] = None
    currency: str
    is_variable_value: bool
    is_active: bool


class PricedProductOut(BaseModel):
    sku_code: str
    name: str
    operator_name: str
    country: str
    currency: str
    send_value: Optional[float] = None
    is_variable_value: bool
    price_before_discount: float
    final_price: float
    discount_applied: bool


class ProductIn(BaseModel):
    sku_code: str = Field(min_length=1, max_length=128)
    name: str = Field(min_length=1, max_length=255)
    provider: str = "dingconnect"
    operator_id: Optional[str] = None
    operator_name: str
    country: str = Field(min_length=2, max_length=2)
    cost: Decimal
    send_value: Optional[Decimal] = None
    currency: str = "USD"
    is_variable_value: bool = False
    is_active: bool = True


class StorefrontSettingsOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    org_id: str
    is_active: bool
    enabled_countries: list[str] = []
    disabled_countries: list[str] = []
    all_countries_enabled: bool
    discount_enabled: bool
    discount_type: str
    discount_value: float
    discount_min_purchase: Optional[float] = None
    discount_start: Optional[datetime] = None
    discount_end: Optional[datetime] = None
    discount_countries: list[str] = []
    discount_description: Optional[str] = None
    business_name: Optional[str] = None
    support_email: Optional[str] = None


class StorefrontSettingsIn(BaseModel):
    is_active: Optional[bool] = None
    enabled_countries: Optional[list[str]] = None
    disabled_countries: Optional[list[str]] = None
    all_countries_enabled: Optional[bool] = None
    discount_enabled: Optional[bool] = None
    discount_type: Optional[Literal["percentage", "fixed"]] = None
    discount_value: Optional[Decimal] = None
    discount_min_purchase: Optional[Decimal] = None
    discount_start: Optional[datetime] = None
    discount_end: Optional[datetime] = None
    discount_countries: Optional[list[str]] = None
    discount_description: Optional[str] = None
    business_name: Optional[str] = None
    support_email: Optional[str] = None


class CheckoutIn(BaseModel):
    sku_code: str
    phone_number: str = Field(min_length=3, max_length=32)
    payment_type: Literal["gateway", "balance"] = "gateway"
    email: Optional[str] = None
    name: Optional[str] = None
    discount_code: Optional[str] = None
    send_value: Optional[Decimal] = Field(default=None, gt=0)


class CheckoutOut(BaseModel):
    order_id: str
    status: str
    amount: float
    currency: str
    discount_amount: float
    payment_type: str


# Public storefront

@router.get("/{slug}/products", response_model=list[PricedProductOut])
async def list_storefront_products(slug: str, country: Optional[str] = None,
                                   db: AsyncSession = Depends(get_db_async)):
    priced = await StorefrontService(db).list_products(slug, country)
    return [
        PricedProductOut(
            sku_code=p.product.sku_code,
            name=p.product.name,
            operator_name=p.product.operator_name,
            country=p.product.country,
            currency=p.product.currency,
            send_value=p.product.send_value,
            is_variable_value=p.product.is_variable_value,
            price_before_discount=float(p.quote.price_before_discount),
            final_price=float(p.quote.final_price),
            discount_applied=p.quote.discount_applied,
        )
        for p in priced
    ]


@router.post("/{slug}/checkout", response_model=CheckoutOut, status_code=201)
async def storefront_checkout(
    slug: str,
    body: CheckoutIn,
    request: Request,
    db: AsyncSession = Depends(get_db_async),
    workflow: TransactionWorkflow = Depends(get_workflow),
):
    svc = StorefrontService(db)
    org, settings = await svc.resolve(slug)
    product = await svc.product_for_checkout(org, settings, body.sku_code)

    customer_id = None
    if body.payment_type == "balance":
        customer = await CustomersRepository(db).get_by_phone(org.id, body.phone_number.strip())
        if customer is None:
            raise NotFoundError("No prepaid balance found for this phone number")
        customer_id = customer.id

    tx = await workflow.checkout(
        org,
        product,
        phone_number=body.phone_number,
        payment_type=body.payment_type,
        customer_id=customer_id,
        email=body.email,
        name=body.name,
        discount_code=body.discount_code,
        send_value=body.send_value,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
    # Balance purchases are already paid; gateway ones wait for the payment webhook
    if tx.status == "paid":
        tx = await workflow.fulfil(tx)
    return CheckoutOut(
        order_id=tx.order_id,
        status=tx.status,
        amount=float(tx.amount),
        currency=tx.currency,
        discount_amount=float(tx.discount_amount or 0),
        payment_type=tx.payment_type,
    )


# Admin

@router.get("/settings", response_model=StorefrontSettingsOut)
async def get_storefront_settings(
    db: AsyncSession = Depends(get_db_async),
    current_user: CurrentUser = Depends(require_permission(Permission.VIEW_STOREFRONT_SETTINGS)),
):
    settings = await StorefrontService(db).get_settings(current_user.org_id)
    return StorefrontSettingsOut.model_validate(settings)


@router.put("/settings", response_model=StorefrontSettingsOut)
async def update_storefront_settings(
    body: StorefrontSettingsIn,
    db: AsyncSession = Depends(get_db_async),
    current_user: CurrentUser = Depends(require_permission(Permission.MANAGE_STOREFRONT)),
):
    settings = await StorefrontService(db).update_settings(current_user.org_id, **body.model_dump(exclude_unset=True))
    return StorefrontSettingsOut.model_validate(settings)


@router.get("/products", response_model=list[ProductOut])
async def list_catalog(
    country: Optional[str] = None,
    db: AsyncSession = Depends(get_db_async),
    current_user: CurrentUser = Depends(require_permission(Permission.VIEW_STOREFRONT_SETTINGS)),
):
    rows = await StorefrontRepository(db).list_products(current_user.org_id, country=country, active_only=False)
    return [ProductOut.model_validate(r) for r in rows]


@router.post("/products", response_model=ProductOut, status_code=201)
async def add_product(
    body: ProductIn,
    db: AsyncSession = Depends(get_db_async),
    current_user: CurrentUser = Depends(require_permission(Permission.MANAGE_STOREFRONT)),
):
    product = await StorefrontService(db).add_product(current_user.org_id, **body.model_dump())
    return ProductOut.model_validate(product)
