from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from prepaid.core.exceptions import NotFoundError, ValidationError
from prepaid.models.organizations import Organization
from prepaid.models.storefront import Product, StorefrontSettings
from prepaid.repositories.organizations_repository import OrganizationsRepository
from prepaid.repositories.storefront_repository import StorefrontRepository
from prepaid.services.pricing_service import PricingService, PriceQuote

SETTINGS_FIELDS = (
    "is_active",
    "enabled_countries",
    "disabled_countries",
    "all_countries_enabled",
    "discount_enabled",
    "discount_type",
    "discount_value",
    "discount_min_purchase",
    "discount_start",
    "discount_end",
    "discount_countries",
    "discount_description",
    "business_name",
    "support_email",
)


@dataclass
class PricedProduct:
    product: Product
    quote: PriceQuote


def country_enabled(settings: StorefrontSettings, country: str) -> bool:
    country = country.upper()
    if settings.all_countries_enabled:
        return country not in (settings.disabled_countries or [])
    return country in (settings.enabled_countries or [])


class StorefrontService:
    """Public storefront: catalog with computed prices and settings management."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.orgs_repo = OrganizationsRepository(db)
        self.storefront_repo = StorefrontRepository(db)
        self.pricing = PricingService(db)

    async def resolve(self, slug: str) -> tuple[Organization, StorefrontSettings]:
        org = await self.orgs_repo.get_by_slug(slug)
        if org is None:
            raise NotFoundError("Storefront not found")
        settings = await self.storefront_repo.get_settings(org.id)
        if settings is None or not settings.is_active:
            raise NotFoundError("Storefront not available")
        return org, settings

    async def list_products(self, slug: str, country: Optional[str] = None) -> list[PricedProduct]:
        org, settings = await self.resolve(slug)
        if country and not country_enabled(settings, country):
            return []
        products = await self.storefront_repo.list_products(org.id, country=country)
        rules = await self.pricing.load_rules(org.id)
        out = []
        for product in products:
            if not country_enabled(settings, product.country):
                continue
            quote = await self.pricing.quote(org.id, Decimal(product.cost), product.country, product.sku_code,
                                             rules=rules)
            out.append(PricedProduct(product=product, quote=quote))
        return out

    async def product_for_checkout(self, org: Organization, settings: StorefrontSettings,
                                   sku_code: str) -> Product:
        product = await self.storefront_repo.get_product_by_sku(org.id, sku_code)
        if product is None or not product.is_active:
            raise NotFoundError("Product not found")
        if not country_enabled(settings, product.country):
            raise ValidationError(f"Country {product.country} is not available on this storefront")
        return product

    async def get_settings(self, org_id: str) -> StorefrontSettings:
        settings = await self.storefront_repo.get_settings(org_id)
        if settings is None:
            settings = StorefrontSettings(
                org_id=org_id,
                is_active=False,
                enabled_countries=[],
                disabled_countries=[],
                all_countries_enabled=True,
                discount_enabled=False,
                discount_type="percentage",
                discount_value=Decimal("0"),
                discount_countries=[],
                updated_at=datetime.utcnow(),
            )
            await self.storefront_repo.insert_settings(settings)
            await self.db.commit()
        return settings

    async def update_settings(self, org_id: str, **fields) -> StorefrontSettings:
        settings = await self.get_settings(org_id)
        if fields.get("discount_type") not in (None, "percentage", "fixed"):
            raise ValidationError("discount_type must be 'percentage' or 'fixed'")
        if fields.get("discount_value") is not None and Decimal(fields["discount_value"]) < 0:
            raise ValidationError("discount_value must not be negative")
        for key in ("enabled_countries", "disabled_countries", "discount_countries"):
            if fields.get(key) is not None:
                fields[key] = [c.upper() for c in fields[key]]
        for key, value in fields.items():
            if key in SETTINGS_FIELDS and value is not None:
                setattr(settings, key, value)
        settings.updated_at = datetime.utcnow()
        await self.storefront_repo.save(settings)
        await self.db.commit()
        return settings

    async def add_product(self, org_id: str, **fields) -> Product:
        if Decimal(fields.get("cost") or 0) < 0:
            raise ValidationError("cost must not be negative")
        fields["country"] = fields["country"].upper()
        if await self.storefront_repo.get_product_by_sku(org_id, fields["sku_code"]):
            raise ValidationError("A product with this SKU already exists")
        product = Product(org_id=org_id, **fields)
        await self.storefront_repo.insert_product(product)
        await self.db.commit()
        return product
