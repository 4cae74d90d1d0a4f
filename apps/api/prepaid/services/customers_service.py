from __future__ import annotations

from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from prepaid.core.exceptions import ConflictError, ForbiddenError, NotFoundError, ValidationError
from prepaid.models.customers import Customer
from prepaid.repositories.customers_repository import CustomersRepository


class CustomersService:
    """Customer records. Balance fields are left to the ledger service."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.repo = CustomersRepository(db)

    async def get_for_org(self, customer_id: str, org_id: str) -> Customer:
        customer = await self.repo.get(customer_id)
        if customer is None:
            raise NotFoundError("Customer not found")
        if str(customer.org_id) != str(org_id):
            raise ForbiddenError("Customer belongs to a different organization")
        return customer

    async def list(self, org_id: str, *, search: Optional[str] = None, limit: int = 50,
                   offset: int = 0) -> Sequence[Customer]:
        return await self.repo.list(org_id, search=search, limit=max(1, min(limit, 200)), offset=max(0, offset))

    async def create(
        self,
        org_id: str,
        *,
        phone_number: str,
        email: Optional[str] = None,
        name: Optional[str] = None,
        country: Optional[str] = None,
        currency: str = "USD",
    ) -> Customer:
        phone_number = (phone_number or "").strip()
        if not phone_number:
            raise ValidationError("phone_number is required")
        if await self.repo.get_by_phone(org_id, phone_number):
            raise ConflictError("A customer with this phone number already exists")
        now = datetime.utcnow()
        customer = Customer(
            org_id=org_id,
            phone_number=phone_number,
            email=email.strip().lower() if email else None,
            name=name,
            country=country.upper() if country else None,
            balance_currency=currency,
            acquisition_source="admin",
            created_at=now,
            updated_at=now,
        )
        await self.repo.insert(customer)
        await self.db.commit()
        return customer

    async def update(
        self,
        customer: Customer,
        *,
        email: Optional[str] = None,
        name: Optional[str] = None,
        country: Optional[str] = None,
    ) -> Customer:
        if email is not None:
            customer.email = email.strip().lower() or None
        if name is not None:
            customer.name = name
        if country is not None:
            customer.country = country.upper() or None
        customer.updated_at = datetime.utcnow()
        await self.repo.save(customer)
        await self.db.commit()
        return customer
