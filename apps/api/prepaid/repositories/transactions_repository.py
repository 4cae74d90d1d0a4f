from __future__ import annotations

from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from prepaid.models.transactions import Transaction


class TransactionsRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, transaction_id: str) -> Optional[Transaction]:
        result = await self.db.execute(select(Transaction).where(Transaction.id == transaction_id))
        return result.scalar_one_or_none()

    async def get_for_update(self, transaction_id: str) -> Optional[Transaction]:
        stmt = (
            select(Transaction)
            .where(Transaction.id == transaction_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_order_id(self, order_id: str) -> Optional[Transaction]:
        result = await self.db.execute(select(Transaction).where(Transaction.order_id == order_id))
        return result.scalar_one_or_none()

    async def get_by_provider_transaction_id(self, provider_transaction_id: str) -> Optional[Transaction]:
        result = await self.db.execute(
            select(Transaction).where(Transaction.provider_transaction_id == provider_transaction_id)
        )
        return result.scalar_one_or_none()

    async def list(self, org_id: str, *, status: str | None = None, customer_id: str | None = None,
                   limit: int = 50, offset: int = 0) -> Sequence[Transaction]:
        stmt = select(Transaction).where(Transaction.org_id == org_id)
        if status:
            stmt = stmt.where(Transaction.status == status)
        if customer_id:
            stmt = stmt.where(Transaction.customer_id == customer_id)
        stmt = stmt.order_by(Transaction.created_at.desc()).limit(limit).offset(offset)
        result = await self.db.execute(stmt)
        return result.scalars().all()

    async def claim_failed_for_retry(self, transaction_id: str, now: datetime) -> bool:
        """Move a ``failed`` row to ``processing`` in one statement.

        Returns False when another request already claimed it (or it is no longer failed).
        """
        result = await self.db.execute(
            update(Transaction)
            .where(Transaction.id == transaction_id, Transaction.status == "failed")
            .values(status="processing", processing_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return (result.rowcount or 0) == 1

    async def insert(self, tx: Transaction) -> Transaction:
        self.db.add(tx)
        await self.db.flush()
        return tx

    async def save(self, tx: Transaction) -> Transaction:
        await self.db.flush()
        return tx
