from __future__ import annotations

from typing import Optional, Sequence

from sqlalchemy import select, or_, func
from sqlalchemy.ext.asyncio import AsyncSession

from prepaid.models.customers import Customer, BalanceHistoryEntry


class CustomersRepository:
    """Repository for customers and their balance history.

    History rows are only ever inserted; there is no update or delete path.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, customer_id: str) -> Optional[Customer]:
        result = await self.db.execute(select(Customer).where(Customer.id == customer_id))
        return result.scalar_one_or_none()

    async def get_for_update(self, customer_id: str) -> Optional[Customer]:
        # populate_existing refreshes an instance already in the identity map
        stmt = (
            select(Customer)
            .where(Customer.id == customer_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_phone(self, org_id: str, phone_number: str) -> Optional[Customer]:
        result = await self.db.execute(
            select(Customer).where(Customer.org_id == org_id, Customer.phone_number == phone_number)
        )
        return result.scalar_one_or_none()

    async def list(self, org_id: str, *, search: str | None = None, limit: int = 50,
                   offset: int = 0) -> Sequence[Customer]:
        stmt = select(Customer).where(Customer.org_id == org_id)
        if search:
            pattern = f"%{search}%"
            stmt = stmt.where(or_(
                Customer.phone_number.ilike(pattern),
                Customer.email.ilike(pattern),
                Customer.name.ilike(pattern),
            ))
        stmt = stmt.order_by(Customer.created_at.desc()).limit(limit).offset(offset)
        result = await self.db.execute(stmt)
        return result.scalars().all()

    async def count(self, org_id: str) -> int:
        result = await self.db.execute(select(func.count(Customer.id)).where(Customer.org_id == org_id))
        return int(result.scalar_one())

    async def insert(self, customer: Customer) -> Customer:
        self.db.add(customer)
        await self.db.flush()
        return customer

    async def save(self, customer: Customer) -> Customer:
        await self.db.flush()
        return customer

    async def add_history(self, entry: BalanceHistoryEntry) -> BalanceHistoryEntry:
        self.db.add(entry)
        await self.db.flush()
        return entry

    async def list_history(self, customer_id: str, *, limit: int = 50,
                           entry_type: str | None = None) -> Sequence[BalanceHistoryEntry]:
        stmt = select(BalanceHistoryEntry).where(BalanceHistoryEntry.customer_id == customer_id)
        if entry_type:
            stmt = stmt.where(BalanceHistoryEntry.entry_type == entry_type)
        stmt = stmt.order_by(BalanceHistoryEntry.created_at.desc()).limit(limit)
        result = await self.db.execute(stmt)
        return result.scalars().all()

    async def all_history(self, customer_id: str) -> Sequence[BalanceHistoryEntry]:
        result = await self.db.execute(
            select(BalanceHistoryEntry)
            .where(BalanceHistoryEntry.customer_id == customer_id)
            .order_by(BalanceHistoryEntry.created_at.asc())
        )
        return result.scalars().all()
