"""Organization wallet.

Funds are held per organization; ``available = balance - reserved``. Balance
movements lock the wallet row and append one ``WalletTransaction`` with a
signed amount. Reservations only move ``reserved_balance`` and are not
recorded as movements.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Sequence

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from prepaid.core.exceptions import InsufficientBalanceError, ValidationError
from prepaid.models.wallets import (
    PAYMENT_PROVIDERS,
    REFERENCE_TYPES,
    WALLET_STATUSES,
    WALLET_TRANSACTION_STATUSES,
    WALLET_TRANSACTION_TYPES,
    Wallet,
    WalletTransaction,
)
from prepaid.repositories.wallets_repository import WalletsRepository

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def _q(value) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def _positive(amount) -> Decimal:
    amount = _q(amount)
    if amount <= 0:
        raise ValidationError("Amount must be greater than zero")
    return amount


@dataclass
class WalletResult:
    wallet: Wallet
    entry: Optional[WalletTransaction] = None


class WalletService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.repo = WalletsRepository(db)

    async def get_or_create(self, org_id: str) -> Wallet:
        wallet = await self.repo.get_by_org(org_id)
        if wallet is not None:
            return wallet
        wallet = Wallet(org_id=org_id, balance=ZERO, reserved_balance=ZERO, currency="USD", status="active",
                        created_at=datetime.utcnow())
        try:
            await self.repo.insert(wallet)
            await self.db.commit()
        except IntegrityError:
            # Another request created it first
            await self.db.rollback()
            wallet = await self.repo.get_by_org(org_id)
        else:
            logger.info("Created wallet for org=%s", org_id)
        return wallet

    async def _locked(self, org_id: str, *, require_active: bool = True) -> Wallet:
        await self.get_or_create(org_id)
        wallet = await self.repo.get_by_org_for_update(org_id)
        if require_active and wallet.status != "active":
            raise ValidationError(f"Wallet is {wallet.status}")
        return wallet

    async def _move(
        self,
        wallet: Wallet,
        *,
        tx_type: str,
        amount: Decimal,
        description: str | None,
        reference_type: str = "manual",
        reference_id: str | None = None,
        payment_provider: str | None = None,
        payment_transaction_id: str | None = None,
        notes: str | None = None,
        actor: str | None = None,
        commit: bool,
    ) -> WalletResult:
        now = datetime.utcnow()
        before = _q(wallet.balance or 0)
        after = before + amount
        wallet.balance = after
        wallet.last_transaction_at = now
        wallet.updated_at = now
        await self.repo.save(wallet)

        meta = {k: v for k, v in {"processed_by": actor, "notes": notes}.items() if v}
        entry = WalletTransaction(
            org_id=wallet.org_id,
            wallet_id=wallet.id,
            tx_type=tx_type,
            amount=amount,
            currency=wallet.currency,
            balance_before=before,
            balance_after=after,
            status="completed",
            reference_type=reference_type,
            reference_id=reference_id,
            description=description,
            payment_provider=payment_provider,
            payment_transaction_id=payment_transaction_id,
            meta=meta or None,
            created_by=actor,
            created_at=now,
        )
        await self.repo.add_transaction(entry)
        if commit:
            await self.db.commit()
        logger.info("Wallet %s org=%s amount=%s balance=%s->%s", tx_type, wallet.org_id, amount, before, after)
        return WalletResult(wallet=wallet, entry=entry)

    async def deposit(self, org_id: str, amount, *, reference_type: str = "manual",
                      reference_id: str | None = None, description: str | None = None,
                      payment_provider: str | None = None, payment_transaction_id: str | None = None,
                      notes: str | None = None, actor: str | None = None, commit: bool = True) -> WalletResult:
        amount = _positive(amount)
        if reference_type not in REFERENCE_TYPES:
            raise ValidationError(f"Unknown reference type: {reference_type}")
        if payment_provider is not None and payment_provider not in PAYMENT_PROVIDERS:
            raise ValidationError(f"Unknown payment provider: {payment_provider}")
        wallet = await self._locked(org_id)
        wallet.total_deposits = _q(wallet.total_deposits or 0) + amount
        wallet.last_deposit_at = datetime.utcnow()
        return await self._move(
            wallet,
            tx_type="deposit",
            amount=amount,
            description=description or "Manual deposit",
            reference_type=reference_type,
            reference_id=reference_id,
            payment_provider=payment_provider,
            payment_transaction_id=payment_transaction_id,
            notes=notes,
            actor=actor,
            commit=commit,
        )

    async def withdraw(self, org_id: str, amount, *, description: str | None = None,
                       actor: str | None = None, commit: bool = True) -> WalletResult:
        amount = _positive(amount)
        wallet = await self._locked(org_id)
        available = _q(wallet.available_balance)
        if amount > available:
            raise InsufficientBalanceError(required=amount, available=available)
        wallet.total_withdrawals = _q(wallet.total_withdrawals or 0) + amount
        return await self._move(wallet, tx_type="withdrawal", amount=-amount,
                                description=description or "Withdrawal", actor=actor, commit=commit)

    async def reserve(self, org_id: str, amount, *, commit: bool = True) -> Wallet:
        """Hold funds for a pending purchase. Raises when the available balance is short."""
        amount = _positive(amount)
        wallet = await self._locked(org_id)
        available = _q(wallet.available_balance)
        if amount > available:
            raise InsufficientBalanceError(required=amount, available=available)
        wallet.reserved_balance = _q(wallet.reserved_balance or 0) + amount
        wallet.updated_at = datetime.utcnow()
        await self.repo.save(wallet)
        if commit:
            await self.db.commit()
        return wallet

    async def release_reservation(self, org_id: str, amount, *, commit: bool = True) -> Wallet:
        amount = _positive(amount)
        wallet = await self._locked(org_id, require_active=False)
        wallet.reserved_balance = max(ZERO, _q(wallet.reserved_balance or 0) - amount)
        wallet.updated_at = datetime.utcnow()
        await self.repo.save(wallet)
        if commit:
            await self.db.commit()
        return wallet

    async def deduct(self, org_id: str, amount, *, reserved: bool = True, reference_id: str | None = None,
                     description: str | None = None, actor: str | None = None,
                     commit: bool = True) -> WalletResult:
        """Spend funds, consuming a prior reservation when ``reserved`` is set."""
        amount = _positive(amount)
        wallet = await self._locked(org_id)
        if reserved:
            balance = _q(wallet.balance or 0)
            if amount > balance:
                raise InsufficientBalanceError(required=amount, available=balance)
            wallet.reserved_balance = max(ZERO, _q(wallet.reserved_balance or 0) - amount)
        else:
            available = _q(wallet.available_balance)
            if amount > available:
                raise InsufficientBalanceError(required=amount, available=available)
        wallet.total_spent = _q(wallet.total_spent or 0) + amount
        return await self._move(
            wallet,
            tx_type="purchase",
            amount=-amount,
            description=description or "Top-up purchase",
            reference_type="order" if reference_id else "system",
            reference_id=reference_id,
            actor=actor,
            commit=commit,
        )

    async def update_settings(self, org_id: str, **fields) -> Wallet:
        wallet = await self._locked(org_id, require_active=False)
        if fields.get("low_balance_threshold") is not None and fields["low_balance_threshold"] < 0:
            raise ValidationError("low_balance_threshold must not be negative")
        if fields.get("status") is not None and fields["status"] not in WALLET_STATUSES:
            raise ValidationError(f"Unknown wallet status: {fields['status']}")
        reload_enabled = fields.get("auto_reload_enabled", wallet.auto_reload_enabled)
        reload_amount = fields.get("auto_reload_amount", wallet.auto_reload_amount)
        if reload_enabled and not (reload_amount and reload_amount > 0):
            raise ValidationError("auto_reload_amount is required when auto reload is enabled")
        for key, value in fields.items():
            if value is not None or key == "auto_reload_amount":
                setattr(wallet, key, value)
        wallet.updated_at = datetime.utcnow()
        await self.repo.save(wallet)
        await self.db.commit()
        logger.info("Wallet settings updated for org=%s: %s", org_id, sorted(fields))
        return wallet

    async def list_transactions(self, org_id: str, *, tx_type: str | None = None, status: str | None = None,
                                page: int = 1, limit: int = 50) -> tuple[Sequence[WalletTransaction], int]:
        if tx_type and tx_type not in WALLET_TRANSACTION_TYPES:
            raise ValidationError(f"Unknown wallet transaction type: {tx_type}")
        if status and status not in WALLET_TRANSACTION_STATUSES:
            raise ValidationError(f"Unknown wallet transaction status: {status}")
        limit = max(1, min(limit, 100))
        offset = (max(1, page) - 1) * limit
        rows = await self.repo.list_transactions(org_id, tx_type=tx_type, status=status, limit=limit, offset=offset)
        total = await self.repo.count_transactions(org_id, tx_type=tx_type, status=status)
        return rows, total

    async def verify(self, org_id: str) -> bool:
        """True when completed movements sum to the wallet balance."""
        wallet = await self.get_or_create(org_id)
        total = _q(await self.repo.sum_completed(wallet.id))
        return total == _q(wallet.balance or 0)
