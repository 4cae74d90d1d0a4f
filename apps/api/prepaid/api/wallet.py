from datetime import datetime
from decimal import Decimal
from typing import Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from prepaid.api.auth import CurrentUser, require_permission
from prepaid.api.deps_async import get_db_async
from prepaid.core.permissions import Permission
from prepaid.services.wallet_service import WalletService

router = APIRouter(prefix="/api/v1/wallet", tags=["wallet"])


class WalletOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    balance: float
    currency: str
    reserved_balance: float
    available_balance: float
    low_balance_threshold: float
    is_low: bool
    auto_reload_enabled: bool
    auto_reload_amount: Optional[float] = None
    status: str
    total_deposits: float
    total_withdrawals: float
    total_spent: float
    last_deposit_at: Optional[datetime] = None
    last_transaction_at: Optional[datetime] = None


class WalletSettingsIn(BaseModel):
    low_balance_threshold: Optional[Decimal] = Field(default=None, ge=0)
    auto_reload_enabled: Optional[bool] = None
    auto_reload_amount: Optional[Decimal] = Field(default=None, gt=0)
    status: Optional[Literal["active", "suspended", "frozen"]] = None


class PaymentMethodIn(BaseModel):
    provider: Literal["stripe", "paypal", "pgpay", "bank_transfer", "manual"]
    transaction_id: Optional[str] = None


class ReferenceIn(BaseModel):
    type: Literal["order", "payment", "manual", "system"] = "manual"
    id: Optional[str] = None
    description: Optional[str] = None


class DepositIn(BaseModel):
    amount: Decimal = Field(gt=0)
    payment_method: Optional[PaymentMethodIn] = None
    reference: Optional[ReferenceIn] = None
    notes: Optional[str] = None


class WalletTransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    type: str = Field(validation_alias="tx_type")
    amount: float
    currency: str
    balance_before: float
    balance_after: float
    status: str
    reference_type: str
    reference_id: Optional[str] = None
    description: Optional[str] = None
    payment_provider: Optional[str] = None
    payment_transaction_id: Optional[str] = None
    metadata: Optional[dict] = Field(default=None, validation_alias="meta")
    created_at: datetime


class DepositOut(BaseModel):
    transaction: WalletTransactionOut
    wallet: WalletOut


class WalletTransactionsPage(BaseModel):
    transactions: list[WalletTransactionOut]
    page: int
    limit: int
    total: int
    has_more: bool


@router.get("", response_model=WalletOut)
async def get_wallet(
    db: AsyncSession = Depends(get_db_async),
    current_user: CurrentUser = Depends(require_permission(Permission.VIEW_WALLET)),
):
    wallet = await WalletService(db).get_or_create(current_user.org_id)
    return WalletOut.model_validate(wallet)


@router.patch("", response_model=WalletOut)
async def update_wallet(
    body: WalletSettingsIn,
    db: AsyncSession = Depends(get_db_async),
    current_user: CurrentUser = Depends(require_permission(Permission.MANAGE_WALLET)),
):
    wallet = await WalletService(db).update_settings(current_user.org_id, **body.model_dump(exclude_unset=True))
    return WalletOut.model_validate(wallet)


@router.post("/deposit", response_model=DepositOut)
async def deposit(
    body: DepositIn,
    db: AsyncSession = Depends(get_db_async),
    current_user: CurrentUser = Depends(require_permission(Permission.MANAGE_WALLET)),
):
    reference = body.reference or ReferenceIn()
    result = await WalletService(db).deposit(
        current_user.org_id,
        body.amount,
        reference_type=reference.type,
        reference_id=reference.id,
        description=reference.description,
        payment_provider=body.payment_method.provider if body.payment_method else None,
        payment_transaction_id=body.payment_method.transaction_id if body.payment_method else None,
        notes=body.notes,
        actor=current_user.id,
    )
    return DepositOut(
        transaction=WalletTransactionOut.model_validate(result.entry),
        wallet=WalletOut.model_validate(result.wallet),
    )


@router.get("/transactions", response_model=WalletTransactionsPage)
async def list_wallet_transactions(
    type: Optional[str] = None,
    status: Optional[str] = None,
    page: int = 1,
    limit: int = 50,
    db: AsyncSession = Depends(get_db_async),
    current_user: CurrentUser = Depends(require_permission(Permission.VIEW_WALLET)),
):
    limit = max(1, min(limit, 100))
    page = max(1, page)
    rows, total = await WalletService(db).list_transactions(current_user.org_id, tx_type=type, status=status,
                                                            page=page, limit=limit)
    return WalletTransactionsPage(
        transactions=[WalletTransactionOut.model_validate(r) for r in rows],
        page=page,
        limit=limit,
        total=total,
        has_more=(page - 1) * limit + len(rows) < total,
    )
