from __future__ import annotations

from typing import Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from prepaid.models.storefront import Product, StorefrontSettings


class StorefrontRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_settings(self, org_id: str) -> Optional[StorefrontSettings]:
        result = await self.db.execute(select(StorefrontSettings).where(StorefrontSettings.org_id == org_id))
        return result.scalar_one_or_none()

    async def insert_settings(self, settings: StorefrontSettings) -> StorefrontSettings:
        self.db.add(settings)
        await self.db.flush()
        return settings

    async def list_products(self, org_id: str, *, country: str | None = None,
                            active_only: bool = True) -> Sequence[Product]:
        stmt = select(Product).where(Product.org_id == org_id)
        if country:
            stmt = stmt.where(Product.country == country.upper())
        if active_only:
            stmt = stmt.where(Product.is_active.is_(True))
        stmt = stmt.order_by(Product.country.asc(), Product.cost.asc())
        result = await self.db.execute(stmt)
        return result.scalars().all()

    async def get_product_by_sku(self, org_id: str, sku_code: str) -> Optional[Product]:
        result = await self.db.execute(
            select(Product).where(Product.org_id == org_id, Product.sku_code == sku_code)
        )
        return result.scalar_one_or_none()

    async def insert_product(self, product: Product) -> Product:
        self.db.add(product)
        await self.db.flush()
        return product

    async def save(self, obj) -> None:
        await self.db.flush()
