from __future__ import annotations

from typing import Optional, Sequence

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from prepaid.models.wallets import Wallet, WalletTransaction


class WalletsRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_org(self, org_id: str) -> Optional[Wallet]:
        result = await self.db.execute(select(Wallet).where(Wallet.org_id == org_id))
        return result.scalar_one_or_none()

    async def get_by_org_for_update(self, org_id: str) -> Optional[Wallet]:
        stmt = (
            select(Wallet)
            .where(Wallet.org_id == org_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def insert(self, wallet: Wallet) -> Wallet:
        self.db.add(wallet)
        await self.db.flush()
        return wallet

    async def save(self, wallet: Wallet) -> Wallet:
        await self.db.flush()
        return wallet

    async def add_transaction(self, entry: WalletTransaction) -> WalletTransaction:
        self.db.add(entry)
        await self.db.flush()
        return entry

    def _filtered(self, stmt, org_id: str, tx_type: str | None, status: str | None):
        stmt = stmt.where(WalletTransaction.org_id == org_id)
        if tx_type:
            stmt = stmt.where(WalletTransaction.tx_type == tx_type)
        if status:
            stmt = stmt.where(WalletTransaction.status == status)
        return stmt

    async def list_transactions(self, org_id: str, *, tx_type: str | None = None, status: str | None = None,
                                limit: int = 50, offset: int = 0) -> Sequence[WalletTransaction]:
        stmt = self._filtered(select(WalletTransaction), org_id, tx_type, status)
        stmt = stmt.order_by(WalletTransaction.created_at.desc()).limit(limit).offset(offset)
        result = await self.db.execute(stmt)
        return result.scalars().all()

    async def count_transactions(self, org_id: str, *, tx_type: str | None = None,
                                 status: str | None = None) -> int:
        stmt = self._filtered(select(func.count(WalletTransaction.id)), org_id, tx_type, status)
        result = await self.db.execute(stmt)
        return int(result.scalar_one())

    async def sum_completed(self, wallet_id: str):
        result = await self.db.execute(
            select(func.coalesce(func.sum(WalletTransaction.amount), 0))
            .where(WalletTransaction.wallet_id == wallet_id, WalletTransaction.status == "completed")
        )
        return result.scalar_one()
