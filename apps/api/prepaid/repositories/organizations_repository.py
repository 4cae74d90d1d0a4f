from __future__ import annotations

from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from prepaid.models.organizations import Organization


class OrganizationsRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, org_id: str) -> Optional[Organization]:
        result = await self.db.execute(select(Organization).where(Organization.id == org_id))
        return result.scalar_one_or_none()

    async def get_for_update(self, org_id: str) -> Optional[Organization]:
        stmt = (
            select(Organization)
            .where(Organization.id == org_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_slug(self, slug: str) -> Optional[Organization]:
        result = await self.db.execute(select(Organization).where(Organization.slug == slug))
        return result.scalar_one_or_none()

    async def get_by_stripe_customer(self, stripe_customer_id: str) -> Optional[Organization]:
        result = await self.db.execute(
            select(Organization).where(Organization.stripe_customer_id == stripe_customer_id)
        )
        return result.scalar_one_or_none()

    async def insert(self, org: Organization) -> Organization:
        self.db.add(org)
        await self.db.flush()
        return org

    async def save(self, org: Organization) -> Organization:
        await self.db.flush()
        return org
