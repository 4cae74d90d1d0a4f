from datetime import datetime
from decimal import Decimal
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from prepaid.api.auth import CurrentUser, require_permission
from prepaid.api.deps_async import get_db_async
from prepaid.core.exceptions import ValidationError
from prepaid.core.permissions import Permission
from prepaid.services.customers_service import CustomersService
from prepaid.services.ledger_service import LedgerService

router = APIRouter(prefix="/api/v1/customers", tags=["customers"])


class CustomerOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    org_id: str
    phone_number: str
    email: Optional[str] = None
    name: Optional[str] = None
    country: Optional[str] = None
    current_balance: float
    balance_currency: str
    total_assigned: float
    total_used: float
    total_purchases: int
    total_spent: float
    last_purchase_at: Optional[datetime] = None
    created_at: datetime


class CustomerCreate(BaseModel):
    phone_number: str = Field(min_length=3, max_length=32)
    email: Optional[str] = None
    name: Optional[str] = None
    country: Optional[str] = Field(default=None, min_length=2, max_length=2)
    currency: str = "USD"


class CustomerUpdate(BaseModel):
    email: Optional[str] = None
    name: Optional[str] = None
    country: Optional[str] = Field(default=None, max_length=2)


class HistoryEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    type: str = Field(validation_alias="entry_type")
    amount: float
    previous_balance: float
    new_balance: float
    currency: str
    description: Optional[str] = None
    metadata: Optional[dict] = Field(default=None, validation_alias="meta")
    created_by: Optional[str] = None
    created_at: datetime


class BalanceOut(BaseModel):
    customer_id: str
    current_balance: float
    currency: str
    total_assigned: float
    total_used: float
    history: list[HistoryEntryOut] = []


class AssignBalanceIn(BaseModel):
    amount: Decimal = Field(gt=0)
    description: Optional[str] = None
    notes: Optional[str] = None
    expires_at: Optional[datetime] = None


class UpdateBalanceIn(BaseModel):
    type: Literal["reset", "adjustment"]
    amount: Decimal
    description: Optional[str] = None
    notes: Optional[str] = None


class WithdrawBalanceIn(BaseModel):
    amount: Decimal = Field(gt=0)
    description: Optional[str] = None


class LedgerCheckOut(BaseModel):
    ok: bool
    entries: int
    balance: float
    entries_sum: float
    broken_entry_ids: list[str]


def _admin_meta(user: CurrentUser, notes: Optional[str] = None, expires_at: Optional[datetime] = None) -> dict:
    return {"kind": "admin", "admin_id": user.id, "notes": notes, "expires_at": expires_at}


@router.get("", response_model=list[CustomerOut])
async def list_customers(
    search: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    db: AsyncSession = Depends(get_db_async),
    current_user: CurrentUser = Depends(require_permission(Permission.VIEW_CUSTOMERS)),
):
    rows = await CustomersService(db).list(current_user.org_id, search=search, limit=limit, offset=offset)
    return [CustomerOut.model_validate(r) for r in rows]


@router.post("", response_model=CustomerOut, status_code=201)
async def create_customer(
    body: CustomerCreate,
    db: AsyncSession = Depends(get_db_async),
    current_user: CurrentUser = Depends(require_permission(Permission.EDIT_CUSTOMERS)),
):
    customer = await CustomersService(db).create(
        current_user.org_id,
        phone_number=body.phone_number,
        email=body.email,
        name=body.name,
        country=body.country,
        currency=body.currency,
    )
    return CustomerOut.model_validate(customer)


@router.get("/{customer_id}", response_model=CustomerOut)
async def get_customer(
    customer_id: str,
    db: AsyncSession = Depends(get_db_async),
    current_user: CurrentUser = Depends(require_permission(Permission.VIEW_CUSTOMERS)),
):
    customer = await CustomersService(db).get_for_org(customer_id, current_user.org_id)
    return CustomerOut.model_validate(customer)


@router.patch("/{customer_id}", response_model=CustomerOut)
async def update_customer(
    customer_id: str,
    body: CustomerUpdate,
    db: AsyncSession = Depends(get_db_async),
    current_user: CurrentUser = Depends(require_permission(Permission.EDIT_CUSTOMERS)),
):
    svc = CustomersService(db)
    customer = await svc.get_for_org(customer_id, current_user.org_id)
    customer = await svc.update(customer, email=body.email, name=body.name, country=body.country)
    return CustomerOut.model_validate(customer)


async def _balance_out(ledger: LedgerService, customer, limit: int = 50) -> BalanceOut:
    balance = await ledger.get_balance(customer)
    history = await ledger.list_history(customer, limit=limit)
    return BalanceOut(
        customer_id=balance["customer_id"],
        current_balance=balance["current_balance"],
        currency=balance["currency"],
        total_assigned=balance["total_assigned"],
        total_used=balance["total_used"],
        history=[HistoryEntryOut.model_validate(h) for h in history],
    )


@router.get("/{customer_id}/balance", response_model=BalanceOut)
async def get_balance(
    customer_id: str,
    db: AsyncSession = Depends(get_db_async),
    current_user: CurrentUser = Depends(require_permission(Permission.VIEW_CUSTOMERS)),
):
    customer = await CustomersService(db).get_for_org(customer_id, current_user.org_id)
    return await _balance_out(LedgerService(db), customer)


@router.post("/{customer_id}/balance", response_model=BalanceOut)
async def assign_balance(
    customer_id: str,
    body: AssignBalanceIn,
    db: AsyncSession = Depends(get_db_async),
    current_user: CurrentUser = Depends(require_permission(Permission.ASSIGN_CUSTOMER_BALANCE)),
):
    ledger = LedgerService(db)
    result = await ledger.assign(
        customer_id,
        body.amount,
        body.description,
        org_id=current_user.org_id,
        meta=_admin_meta(current_user, body.notes, body.expires_at),
        actor=current_user.id,
    )
    return await _balance_out(ledger, result.customer)


@router.put("/{customer_id}/balance", response_model=BalanceOut)
async def update_balance(
    customer_id: str,
    body: UpdateBalanceIn,
    db: AsyncSession = Depends(get_db_async),
    current_user: CurrentUser = Depends(require_permission(Permission.ADJUST_CUSTOMER_BALANCE)),
):
    ledger = LedgerService(db)
    meta = _admin_meta(current_user, body.notes)
    if body.type == "reset":
        result = await ledger.reset(customer_id, body.amount, body.description, org_id=current_user.org_id,
                                    meta=meta, actor=current_user.id)
    else:
        result = await ledger.adjust(customer_id, body.amount, body.description, org_id=current_user.org_id,
                                     meta=meta, actor=current_user.id)
    return await _balance_out(ledger, result.customer)


@router.post("/{customer_id}/balance/withdraw", response_model=BalanceOut)
async def withdraw_balance(
    customer_id: str,
    body: WithdrawBalanceIn,
    db: AsyncSession = Depends(get_db_async),
    current_user: CurrentUser = Depends(require_permission(Permission.ADJUST_CUSTOMER_BALANCE)),
):
    ledger = LedgerService(db)
    result = await ledger.withdraw(customer_id, body.amount, body.description, org_id=current_user.org_id,
                                   actor=current_user.id)
    return await _balance_out(ledger, result.customer)


@router.get("/{customer_id}/balance/history", response_model=list[HistoryEntryOut])
async def balance_history(
    customer_id: str,
    limit: int = Query(50, ge=1, le=500),
    type: Optional[str] = None,
    db: AsyncSession = Depends(get_db_async),
    current_user: CurrentUser = Depends(require_permission(Permission.VIEW_CUSTOMERS)),
):
    customer = await CustomersService(db).get_for_org(customer_id, current_user.org_id)
    rows = await LedgerService(db).list_history(customer, limit=limit, entry_type=type)
    return [HistoryEntryOut.model_validate(r) for r in rows]


@router.get("/{customer_id}/balance/verify", response_model=LedgerCheckOut)
async def verify_balance(
    customer_id: str,
    db: AsyncSession = Depends(get_db_async),
    current_user: CurrentUser = Depends(require_permission(Permission.VIEW_CUSTOMERS)),
):
    customer = await CustomersService(db).get_for_org(customer_id, current_user.org_id)
    check = await LedgerService(db).verify_ledger(customer)
    if check.entries == 0 and check.balance != 0:
        raise ValidationError("Customer has a balance without any ledger entries")
    return LedgerCheckOut(
        ok=check.ok,
        entries=check.entries,
        balance=float(check.balance),
        entries_sum=float(check.entries_sum),
        broken_entry_ids=check.broken_entry_ids,
    )
