"""Prepaid balance ledger.

Every mutation locks the customer row, computes the new balance in Decimal,
writes the customer and appends exactly one history entry in the same unit
of work. History entries are never updated or deleted.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from prepaid.core.exceptions import (
    ForbiddenError,
    InsufficientBalanceError,
    NotFoundError,
    ValidationError,
)
from prepaid.models.customers import Customer, BalanceHistoryEntry
from prepaid.repositories.customers_repository import CustomersRepository
from prepaid.schemas.metadata import dump_balance_meta, parse_balance_meta

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ENTRY_TYPES = ("assignment", "usage", "reset", "adjustment", "refund")


def _q(value) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass
class LedgerResult:
    customer: Customer
    entry: BalanceHistoryEntry

    @property
    def balance(self) -> Decimal:
        return self.customer.current_balance


@dataclass
class LedgerCheck:
    ok: bool
    entries: int
    balance: Decimal
    entries_sum: Decimal
    broken_entry_ids: list[str]


class LedgerService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.customers_repo = CustomersRepository(db)

    async def _locked_customer(self, customer_id: str, org_id: Optional[str]) -> Customer:
        customer = await self.customers_repo.get_for_update(customer_id)
        if customer is None:
            raise NotFoundError("Customer not found")
        if org_id is not None and str(customer.org_id) != str(org_id):
            raise ForbiddenError("Customer belongs to a different organization")
        return customer

    async def _apply(
        self,
        customer: Customer,
        *,
        entry_type: str,
        new_balance: Decimal,
        description: str | None,
        meta,
        actor: str | None,
        assigned_delta: Decimal = Decimal("0"),
        used_delta: Decimal = Decimal("0"),
        commit: bool,
    ) -> LedgerResult:
        previous = _q(customer.current_balance or 0)
        new_balance = _q(new_balance)
        amount = new_balance - previous

        customer.current_balance = new_balance
        customer.total_assigned = _q(customer.total_assigned or 0) + assigned_delta
        customer.total_used = _q(customer.total_used or 0) + used_delta
        customer.updated_at = datetime.utcnow()
        await self.customers_repo.save(customer)

        entry = BalanceHistoryEntry(
            org_id=customer.org_id,
            customer_id=customer.id,
            entry_type=entry_type,
            amount=amount,
            previous_balance=previous,
            new_balance=new_balance,
            currency=customer.balance_currency,
            description=description,
            meta=dump_balance_meta(parse_balance_meta(meta)),
            created_by=actor,
            created_at=datetime.utcnow(),
        )
        await self.customers_repo.add_history(entry)
        if commit:
            await self.db.commit()

        logger.info(
            "Ledger %s customer=%s amount=%s balance=%s->%s",
            entry_type, customer.id, amount, previous, new_balance,
        )
        return LedgerResult(customer=customer, entry=entry)

    async def assign(self, customer_id: str, amount, description: str | None = None, *,
                     org_id: str | None = None, meta=None, actor: str | None = None,
                     commit: bool = True) -> LedgerResult:
        amount = _q(amount)
        if amount <= 0:
            raise ValidationError("Amount must be greater than zero")
        customer = await self._locked_customer(customer_id, org_id)
        return await self._apply(
            customer,
            entry_type="assignment",
            new_balance=_q(customer.current_balance or 0) + amount,
            description=description or "Balance assigned",
            meta=meta,
            actor=actor,
            assigned_delta=amount,
            commit=commit,
        )

    async def withdraw(self, customer_id: str, amount, description: str | None = None, *,
                       org_id: str | None = None, meta=None, actor: str | None = None,
                       commit: bool = True) -> LedgerResult:
        amount = _q(amount)
        if amount <= 0:
            raise ValidationError("Amount must be greater than zero")
        customer = await self._locked_customer(customer_id, org_id)
        current = _q(customer.current_balance or 0)
        if amount > current:
            raise InsufficientBalanceError(required=amount, available=current)
        return await self._apply(
            customer,
            entry_type="usage",
            new_balance=current - amount,
            description=description or "Balance used",
            meta=meta,
            actor=actor,
            used_delta=amount,
            commit=commit,
        )

    async def reset(self, customer_id: str, new_balance, description: str | None = None, *,
                    org_id: str | None = None, meta=None, actor: str | None = None,
                    commit: bool = True) -> LedgerResult:
        new_balance = _q(new_balance)
        if new_balance < 0:
            raise ValidationError("Balance cannot be negative")
        customer = await self._locked_customer(customer_id, org_id)
        return await self._apply(
            customer,
            entry_type="reset",
            new_balance=new_balance,
            description=description or "Balance reset",
            meta=meta,
            actor=actor,
            commit=commit,
        )

    async def adjust(self, customer_id: str, signed_amount, description: str | None = None, *,
                     org_id: str | None = None, meta=None, actor: str | None = None,
                     commit: bool = True) -> LedgerResult:
        signed_amount = _q(signed_amount)
        if signed_amount == 0:
            raise ValidationError("Adjustment amount cannot be zero")
        customer = await self._locked_customer(customer_id, org_id)
        new_balance = _q(customer.current_balance or 0) + signed_amount
        if new_balance < 0:
            raise ValidationError("Balance cannot be negative")
        positive = signed_amount > 0
        return await self._apply(
            customer,
            entry_type="adjustment",
            new_balance=new_balance,
            description=description or "Balance adjusted",
            meta=meta,
            actor=actor,
            assigned_delta=signed_amount if positive else Decimal("0"),
            used_delta=Decimal("0") if positive else -signed_amount,
            commit=commit,
        )

    async def refund(self, customer_id: str, amount, description: str | None = None, *,
                     org_id: str | None = None, meta=None, actor: str | None = None,
                     commit: bool = True) -> LedgerResult:
        """Credit a refunded purchase back to the balance. Totals are left untouched.

        Zero is accepted so a free purchase still gets its single refund entry.
        """
        amount = _q(amount)
        if amount < 0:
            raise ValidationError("Refund amount cannot be negative")
        customer = await self._locked_customer(customer_id, org_id)
        return await self._apply(
            customer,
            entry_type="refund",
            new_balance=_q(customer.current_balance or 0) + amount,
            description=description or "Refund",
            meta=meta,
            actor=actor,
            commit=commit,
        )

    async def get_balance(self, customer: Customer) -> dict:
        return {
            "customer_id": customer.id,
            "current_balance": float(customer.current_balance or 0),
            "currency": customer.balance_currency,
            "total_assigned": float(customer.total_assigned or 0),
            "total_used": float(customer.total_used or 0),
        }

    async def list_history(self, customer: Customer, *, limit: int = 50,
                           entry_type: str | None = None) -> Sequence[BalanceHistoryEntry]:
        if entry_type is not None and entry_type not in ENTRY_TYPES:
            raise ValidationError(f"Unknown history type: {entry_type}")
        limit = max(1, min(int(limit), 500))
        return await self.customers_repo.list_history(customer.id, limit=limit, entry_type=entry_type)

    async def verify_ledger(self, customer: Customer) -> LedgerCheck:
        entries = await self.customers_repo.all_history(customer.id)
        broken = [
            e.id for e in entries
            if _q(e.new_balance) - _q(e.previous_balance) != _q(e.amount)
        ]
        total = sum((_q(e.amount) for e in entries), Decimal("0"))
        balance = _q(customer.current_balance or 0)
        return LedgerCheck(
            ok=not broken and total == balance,
            entries=len(entries),
            balance=balance,
            entries_sum=total,
            broken_entry_ids=broken,
        )
