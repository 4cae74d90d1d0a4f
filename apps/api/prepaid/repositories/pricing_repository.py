from __future__ import annotations

from typing import Optional, Sequence

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from prepaid.models.pricing import PricingRule, Discount


class PricingRepository:
    """Pricing rules and discounts for an organization."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def list_rules(self, org_id: str, *, active_only: bool = False) -> Sequence[PricingRule]:
        stmt = select(PricingRule).where(PricingRule.org_id == org_id)
        if active_only:
            stmt = stmt.where(PricingRule.is_active.is_(True))
        stmt = stmt.order_by(PricingRule.priority.desc(), PricingRule.name.asc())
        result = await self.db.execute(stmt)
        return result.scalars().all()

    async def get_rule(self, rule_id: str) -> Optional[PricingRule]:
        result = await self.db.execute(select(PricingRule).where(PricingRule.id == rule_id))
        return result.scalar_one_or_none()

    async def insert_rule(self, rule: PricingRule) -> PricingRule:
        self.db.add(rule)
        await self.db.flush()
        return rule

    async def delete_rule(self, rule: PricingRule) -> None:
        await self.db.delete(rule)
        await self.db.flush()

    async def list_discounts(self, org_id: str) -> Sequence[Discount]:
        result = await self.db.execute(
            select(Discount).where(Discount.org_id == org_id).order_by(Discount.created_at.desc())
        )
        return result.scalars().all()

    async def get_discount(self, discount_id: str) -> Optional[Discount]:
        result = await self.db.execute(select(Discount).where(Discount.id == discount_id))
        return result.scalar_one_or_none()

    async def get_discount_by_code(self, org_id: str, code: str) -> Optional[Discount]:
        result = await self.db.execute(
            select(Discount).where(Discount.org_id == org_id, func.upper(Discount.code) == code.strip().upper())
        )
        return result.scalar_one_or_none()

    async def insert_discount(self, discount: Discount) -> Discount:
        self.db.add(discount)
        await self.db.flush()
        return discount

    async def delete_discount(self, discount: Discount) -> None:
        await self.db.delete(discount)
        await self.db.flush()

    async def save(self, obj) -> None:
        await self.db.flush()

    async def increment_discount_usage(self, discount_id: str) -> bool:
        """Consume one use; False when the usage limit is already reached."""
        result = await self.db.execute(
            update(Discount)
            .where(
                Discount.id == discount_id,
                (Discount.usage_limit.is_(None)) | (Discount.usage_count < Discount.usage_limit),
            )
            .values(usage_count=Discount.usage_count + 1)
            .execution_options(synchronize_session=False)
        )
        return (result.rowcount or 0) == 1
