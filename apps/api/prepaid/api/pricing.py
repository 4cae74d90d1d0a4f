from datetime import datetime
from decimal import Decimal
from typing import Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from prepaid.api.auth import CurrentUser, require_permission
from prepaid.api.deps_async import get_db_async
from prepaid.core.permissions import Permission
from prepaid.services.pricing_service import PricingService

router = APIRouter(prefix="/api/v1", tags=["pricing"])


class PricingRuleOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    description: Optional[str] = None
    percentage_markup: Optional[float] = None
    fixed_markup: Optional[float] = None
    priority: int
    is_active: bool
    applicable_countries: list[str] = []
    applicable_regions: list[str] = []
    excluded_countries: list[str] = []
    min_transaction_amount: Optional[float] = None
    max_transaction_amount: Optional[float] = None
    created_at: datetime


class PricingRuleIn(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    percentage_markup: Optional[Decimal] = None
    fixed_markup: Optional[Decimal] = None
    priority: int = 0
    is_active: bool = True
    applicable_countries: list[str] = []
    applicable_regions: list[str] = []
    excluded_countries: list[str] = []
    min_transaction_amount: Optional[Decimal] = None
    max_transaction_amount: Optional[Decimal] = None


class PricingRuleUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    percentage_markup: Optional[Decimal] = None
    fixed_markup: Optional[Decimal] = None
    priority: Optional[int] = None
    is_active: Optional[bool] = None
    applicable_countries: Optional[list[str]] = None
    applicable_regions: Optional[list[str]] = None
    excluded_countries: Optional[list[str]] = None
    min_transaction_amount: Optional[Decimal] = None
    max_transaction_amount: Optional[Decimal] = None


class DiscountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    description: Optional[str] = None
    code: Optional[str] = None
    discount_type: str
    value: float
    is_active: bool
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    min_purchase_amount: Optional[float] = None
    max_discount_amount: Optional[float] = None
    applicable_countries: list[str] = []
    applicable_products: list[str] = []
    usage_limit: Optional[int] = None
    usage_count: int


class DiscountIn(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    code: Optional[str] = None
    discount_type: Literal["percentage", "fixed"]
    value: Decimal
    is_active: bool = True
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    min_purchase_amount: Optional[Decimal] = None
    max_discount_amount: Optional[Decimal] = None
    applicable_countries: list[str] = []
    applicable_products: list[str] = []
    usage_limit: Optional[int] = Field(default=None, ge=1)


class DiscountUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    code: Optional[str] = None
    discount_type: Optional[Literal["percentage", "fixed"]] = None
    value: Optional[Decimal] = None
    is_active: Optional[bool] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    min_purchase_amount: Optional[Decimal] = None
    max_discount_amount: Optional[Decimal] = None
    applicable_countries: Optional[list[str]] = None
    applicable_products: Optional[list[str]] = None
    usage_limit: Optional[int] = Field(default=None, ge=1)


class ValidateCodeIn(BaseModel):
    code: str = Field(min_length=1)
    amount: Decimal = Field(gt=0)
    country: str = Field(min_length=2, max_length=2)
    sku_code: Optional[str] = None


class QuoteIn(BaseModel):
    cost: Decimal = Field(ge=0)
    country: str = Field(min_length=2, max_length=2)
    sku_code: Optional[str] = None
    discount_code: Optional[str] = None


# Pricing rules

@router.get("/pricing/rules", response_model=list[PricingRuleOut])
async def list_rules(
    db: AsyncSession = Depends(get_db_async),
    current_user: CurrentUser = Depends(require_permission(Permission.VIEW_PRICING)),
):
    rows = await PricingService(db).list_rules(current_user.org_id)
    return [PricingRuleOut.model_validate(r) for r in rows]


@router.post("/pricing/rules", response_model=PricingRuleOut, status_code=201)
async def create_rule(
    body: PricingRuleIn,
    db: AsyncSession = Depends(get_db_async),
    current_user: CurrentUser = Depends(require_permission(Permission.MANAGE_PRICING)),
):
    rule = await PricingService(db).create_rule(current_user.org_id, **body.model_dump())
    return PricingRuleOut.model_validate(rule)


@router.get("/pricing/rules/{rule_id}", response_model=PricingRuleOut)
async def get_rule(
    rule_id: str,
    db: AsyncSession = Depends(get_db_async),
    current_user: CurrentUser = Depends(require_permission(Permission.VIEW_PRICING)),
):
    rule = await PricingService(db).get_rule(current_user.org_id, rule_id)
    return PricingRuleOut.model_validate(rule)


@router.patch("/pricing/rules/{rule_id}", response_model=PricingRuleOut)
async def update_rule(
    rule_id: str,
    body: PricingRuleUpdate,
    db: AsyncSession = Depends(get_db_async),
    current_user: CurrentUser = Depends(require_permission(Permission.MANAGE_PRICING)),
):
    rule = await PricingService(db).update_rule(current_user.org_id, rule_id, **body.model_dump(exclude_unset=True))
    return PricingRuleOut.model_validate(rule)


@router.delete("/pricing/rules/{rule_id}", status_code=204)
async def delete_rule(
    rule_id: str,
    db: AsyncSession = Depends(get_db_async),
    current_user: CurrentUser = Depends(require_permission(Permission.MANAGE_PRICING)),
):
    await PricingService(db).delete_rule(current_user.org_id, rule_id)


@router.post("/pricing/quote")
async def quote_price(
    body: QuoteIn,
    db: AsyncSession = Depends(get_db_async),
    current_user: CurrentUser = Depends(require_permission(Permission.VIEW_PRICING)),
):
    quote = await PricingService(db).quote(current_user.org_id, body.cost, body.country, body.sku_code,
                                           body.discount_code)
    return quote.to_dict()


# Discounts

@router.get("/discounts", response_model=list[DiscountOut])
async def list_discounts(
    db: AsyncSession = Depends(get_db_async),
    current_user: CurrentUser = Depends(require_permission(Permission.VIEW_PRICING)),
):
    rows = await PricingService(db).list_discounts(current_user.org_id)
    return [DiscountOut.model_validate(r) for r in rows]


@router.post("/discounts", response_model=DiscountOut, status_code=201)
async def create_discount(
    body: DiscountIn,
    db: AsyncSession = Depends(get_db_async),
    current_user: CurrentUser = Depends(require_permission(Permission.MANAGE_PRICING)),
):
    discount = await PricingService(db).create_discount(current_user.org_id, **body.model_dump())
    return DiscountOut.model_validate(discount)


@router.post("/discounts/validate")
async def validate_discount(
    body: ValidateCodeIn,
    db: AsyncSession = Depends(get_db_async),
    current_user: CurrentUser = Depends(require_permission(Permission.VIEW_PRICING)),
):
    return await PricingService(db).validate_code(current_user.org_id, body.code, body.amount, body.country,
                                                  body.sku_code)


@router.get("/discounts/{discount_id}", response_model=DiscountOut)
async def get_discount(
    discount_id: str,
    db: AsyncSession = Depends(get_db_async),
    current_user: CurrentUser = Depends(require_permission(Permission.VIEW_PRICING)),
):
    discount = await PricingService(db).get_discount(current_user.org_id, discount_id)
    return DiscountOut.model_validate(discount)


@router.patch("/discounts/{discount_id}", response_model=DiscountOut)
async def update_discount(
    discount_id: str,
    body: DiscountUpdate,
    db: AsyncSession = Depends(get_db_async),
    current_user: CurrentUser = Depends(require_permission(Permission.MANAGE_PRICING)),
):
    discount = await PricingService(db).update_discount(current_user.org_id, discount_id,
                                                        **body.model_dump(exclude_unset=True))
    return DiscountOut.model_validate(discount)


@router.delete("/discounts/{discount_id}", status_code=204)
async def delete_discount(
    discount_id: str,
    db: AsyncSession = Depends(get_db_async),
    current_user: CurrentUser = Depends(require_permission(Permission.MANAGE_PRICING)),
):
    await PricingService(db).delete_discount(current_user.org_id, discount_id)
