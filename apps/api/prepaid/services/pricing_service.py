"""Markup and discount evaluation.

``evaluate_price`` is a pure function over plain dataclasses so it can be
used (and tested) without a database. ``PricingService`` loads the rules and
discounts of an organization and feeds them to it.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from prepaid.core.exceptions import NotFoundError, ValidationError
from prepaid.models.pricing import PricingRule, Discount
from prepaid.models.storefront import StorefrontSettings
from prepaid.repositories.pricing_repository import PricingRepository
from prepaid.repositories.storefront_repository import StorefrontRepository

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0")

REGIONS: dict[str, list[str]] = {
    "Africa": ["DZ", "AO", "BJ", "BW", "BF", "BI", "CM", "CV", "CF", "TD", "KM", "CG", "CD", "CI", "DJ", "EG", "GQ",
               "ER", "ET", "GA", "GM", "GH", "GN", "GW", "KE", "LS", "LR", "LY", "MG", "MW", "ML", "MR", "MU", "YT",
               "MA", "MZ", "NA", "NE", "NG", "RE", "RW", "SH", "ST", "SN", "SC", "SL", "SO", "ZA", "SS", "SD", "SZ",
               "TZ", "TG", "TN", "UG", "ZM", "ZW"],
    "Asia": ["AF", "AM", "AZ", "BH", "BD", "BT", "BN", "KH", "CN", "CX", "CC", "IO", "GE", "HK", "IN", "ID", "IR",
             "IQ", "IL", "JP", "JO", "KZ", "KW", "KG", "LA", "LB", "MO", "MY", "MV", "MN", "MM", "NP", "KP", "OM",
             "PK", "PS", "PH", "QA", "SA", "SG", "KR", "LK", "SY", "TW", "TJ", "TH", "TL", "TR", "TM", "AE", "UZ",
             "VN", "YE"],
    "Europe": ["AX", "AL", "AD", "AT", "BY", "BE", "BA", "BG", "HR", "CY", "CZ", "DK", "EE", "FO", "FI", "FR", "DE",
               "GI", "GR", "GG", "HU", "IS", "IE", "IM", "IT", "JE", "XK", "LV", "LI", "LT", "LU", "MK", "MT", "MD",
               "MC", "ME", "NL", "NO", "PL", "PT", "RO", "RU", "SM", "RS", "SK", "SI", "ES", "SJ", "SE", "CH", "UA",
               "GB", "VA"],
    "North America": ["AI", "AG", "AW", "BS", "BB", "BZ", "BM", "BQ", "VG", "CA", "KY", "CR", "CU", "CW", "DM", "DO",
                      "SV", "GL", "GD", "GP", "GT", "HT", "HN", "JM", "MQ", "MX", "MS", "NI", "PA", "PM", "PR", "BL",
                      "KN", "LC", "MF", "VC", "SX", "TT", "TC", "US", "VI"],
    "South America": ["AR", "BO", "BR", "CL", "CO", "EC", "FK", "GF", "GY", "PY", "PE", "SR", "UY", "VE"],
    "Oceania": ["AS", "AU", "CK", "FJ", "PF", "GU", "KI", "MH", "FM", "NR", "NC", "NZ", "NU", "NF", "MP", "PW", "PG",
                "PN", "WS", "SB", "TK", "TO", "TV", "UM", "VU", "WF"],
    "Caribbean": ["AI", "AG", "AW", "BS", "BB", "BQ", "VG", "KY", "CU", "CW", "DM", "DO", "GD", "GP", "HT", "JM", "MQ",
                  "MS", "PR", "BL", "KN", "LC", "MF", "VC", "SX", "TT", "TC", "VI"],
    "Latin America": ["AR", "BO", "BR", "CL", "CO", "CR", "CU", "DO", "EC", "SV", "GT", "HT", "HN", "MX", "NI", "PA",
                      "PY", "PE", "UY", "VE"],
}

# Scope specificity, higher wins on equal priority
SCOPE_COUNTRY = 2
SCOPE_REGION = 1
SCOPE_GLOBAL = 0

# PATCH may set these back to null; other fields ignore an explicit null
NULLABLE_RULE_FIELDS = frozenset({
    "description", "percentage_markup", "fixed_markup", "min_transaction_amount", "max_transaction_amount",
})
NULLABLE_DISCOUNT_FIELDS = frozenset({
    "description", "code", "start_date", "end_date", "min_purchase_amount", "max_discount_amount", "usage_limit",
})


def _money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass
class MarkupRule:
    id: Optional[str]
    name: str
    percentage_markup: Decimal = ZERO
    fixed_markup: Decimal = ZERO
    priority: int = 0
    is_active: bool = True
    applicable_countries: list[str] = field(default_factory=list)
    applicable_regions: list[str] = field(default_factory=list)
    excluded_countries: list[str] = field(default_factory=list)
    min_transaction_amount: Optional[Decimal] = None
    max_transaction_amount: Optional[Decimal] = None

    @classmethod
    def from_model(cls, rule: PricingRule) -> "MarkupRule":
        return cls(
            id=rule.id,
            name=rule.name,
            percentage_markup=Decimal(rule.percentage_markup or 0),
            fixed_markup=Decimal(rule.fixed_markup or 0),
            priority=rule.priority or 0,
            is_active=bool(rule.is_active),
            applicable_countries=list(rule.applicable_countries or []),
            applicable_regions=list(rule.applicable_regions or []),
            excluded_countries=list(rule.excluded_countries or []),
            min_transaction_amount=rule.min_transaction_amount,
            max_transaction_amount=rule.max_transaction_amount,
        )

    def scope(self) -> int:
        if self.applicable_countries:
            return SCOPE_COUNTRY
        if self.applicable_regions:
            return SCOPE_REGION
        return SCOPE_GLOBAL

    def applies_to_country(self, country: str) -> bool:
        if not self.is_active:
            return False
        if country in self.excluded_countries:
            return False
        if self.applicable_countries:
            return country in self.applicable_countries
        if self.applicable_regions:
            return any(country in REGIONS.get(region, ()) for region in self.applicable_regions)
        return True

    def applies_to_amount(self, cost: Decimal) -> bool:
        if self.min_transaction_amount is not None and cost < self.min_transaction_amount:
            return False
        if self.max_transaction_amount is not None and cost > self.max_transaction_amount:
            return False
        return True

    def markup_for(self, cost: Decimal) -> Decimal:
        markup = ZERO
        if self.percentage_markup and self.percentage_markup > 0:
            markup += cost * Decimal(self.percentage_markup) / Decimal(100)
        if self.fixed_markup and self.fixed_markup > 0:
            markup += Decimal(self.fixed_markup)
        return _money(markup)


@dataclass
class DiscountTerms:
    discount_type: str  # percentage | fixed
    value: Decimal
    min_purchase_amount: Optional[Decimal] = None
    max_discount_amount: Optional[Decimal] = None
    code: Optional[str] = None
    discount_id: Optional[str] = None


@dataclass
class PriceQuote:
    cost: Decimal
    markup: Decimal
    price_before_discount: Decimal
    discount_amount: Decimal
    final_price: Decimal
    discount_applied: bool
    rule_id: Optional[str] = None
    needs_review: bool = False
    discount_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "cost": float(self.cost),
            "markup": float(self.markup),
            "price_before_discount": float(self.price_before_discount),
            "discount_amount": float(self.discount_amount),
            "final_price": float(self.final_price),
            "discount_applied": self.discount_applied,
            "rule_id": self.rule_id,
            "needs_review": self.needs_review,
        }


def select_rule(rules: Iterable[MarkupRule], country: str, cost: Decimal) -> Optional[MarkupRule]:
    """Highest priority wins; ties go to the most specific scope, then to the name."""
    candidates = [r for r in rules if r.applies_to_country(country) and r.applies_to_amount(cost)]
    if not candidates:
        return None
    candidates.sort(key=lambda r: (-r.priority, -r.scope(), r.name))
    return candidates[0]


def compute_discount(terms: DiscountTerms, price: Decimal) -> Decimal:
    """Raw discount for ``price`` before clamping; zero when the minimum purchase is not met."""
    if terms.min_purchase_amount is not None and price < terms.min_purchase_amount:
        return ZERO
    if terms.discount_type == "percentage":
        discount = price * Decimal(terms.value) / Decimal(100)
    elif terms.discount_type == "fixed":
        discount = Decimal(terms.value)
    else:
        raise ValidationError(f"Unknown discount type: {terms.discount_type}")
    if terms.max_discount_amount is not None and discount > terms.max_discount_amount:
        discount = Decimal(terms.max_discount_amount)
    return _money(discount)


def evaluate_price(
    cost: Decimal,
    country: str,
    rules: Sequence[MarkupRule],
    discount: Optional[DiscountTerms] = None,
) -> PriceQuote:
    cost = _money(cost)
    if cost < 0:
        raise ValidationError("Cost must not be negative")
    country = (country or "").upper()

    rule = select_rule(rules, country, cost)
    markup = rule.markup_for(cost) if rule else ZERO
    price_before_discount = _money(cost + markup)

    discount_amount = ZERO
    needs_review = False
    if discount is not None:
        discount_amount = compute_discount(discount, price_before_discount)
        if discount_amount > price_before_discount:
            discount_amount = price_before_discount
            needs_review = True

    final_price = _money(price_before_discount - discount_amount)
    return PriceQuote(
        cost=cost,
        markup=markup,
        price_before_discount=price_before_discount,
        discount_amount=discount_amount,
        final_price=final_price,
        discount_applied=discount_amount > 0,
        rule_id=rule.id if rule else None,
        needs_review=needs_review,
        discount_id=discount.discount_id if discount and discount_amount > 0 else None,
    )


def discount_is_live(discount: Discount, now: datetime) -> bool:
    if not discount.is_active:
        return False
    if discount.start_date and now < discount.start_date:
        return False
    if discount.end_date and now > discount.end_date:
        return False
    if discount.usage_limit is not None and discount.usage_count >= discount.usage_limit:
        return False
    return True


def discount_applies_to(discount: Discount, country: str, sku: Optional[str]) -> bool:
    if discount.applicable_countries and country not in discount.applicable_countries:
        return False
    if discount.applicable_products and sku not in discount.applicable_products:
        return False
    return True


def automatic_discount_terms(settings: Optional[StorefrontSettings], country: str,
                             now: datetime) -> Optional[DiscountTerms]:
    if settings is None or not settings.discount_enabled:
        return None
    if settings.discount_start and now < settings.discount_start:
        return None
    if settings.discount_end and now > settings.discount_end:
        return None
    if settings.discount_countries and country not in settings.discount_countries:
        return None
    return DiscountTerms(
        discount_type=settings.discount_type,
        value=Decimal(settings.discount_value or 0),
        min_purchase_amount=settings.discount_min_purchase,
    )


class PricingService:
    """Prices a product for an organization from its stored rules and discounts."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.pricing_repo = PricingRepository(db)
        self.storefront_repo = StorefrontRepository(db)

    async def load_rules(self, org_id: str) -> list[MarkupRule]:
        rows = await self.pricing_repo.list_rules(org_id, active_only=True)
        return [MarkupRule.from_model(r) for r in rows]

    async def resolve_discount_code(self, org_id: str, code: str, country: str,
                                    sku: Optional[str]) -> Discount:
        discount = await self.pricing_repo.get_discount_by_code(org_id, code)
        if discount is None:
            raise NotFoundError("Discount code not found")
        if not discount_is_live(discount, datetime.utcnow()):
            raise ValidationError("Discount code is not active")
        if not discount_applies_to(discount, country, sku):
            raise ValidationError("Discount code does not apply to this product")
        return discount

    async def quote(
        self,
        org_id: str,
        cost: Decimal,
        country: str,
        sku: Optional[str] = None,
        discount_code: Optional[str] = None,
        *,
        rules: Optional[list[MarkupRule]] = None,
    ) -> PriceQuote:
        country = (country or "").upper()
        if rules is None:
            rules = await self.load_rules(org_id)

        terms: Optional[DiscountTerms] = None
        if discount_code:
            d = await self.resolve_discount_code(org_id, discount_code, country, sku)
            terms = DiscountTerms(
                discount_type=d.discount_type,
                value=Decimal(d.value),
                min_purchase_amount=d.min_purchase_amount,
                max_discount_amount=d.max_discount_amount,
                code=d.code,
                discount_id=d.id,
            )
        else:
            settings = await self.storefront_repo.get_settings(org_id)
            terms = automatic_discount_terms(settings, country, datetime.utcnow())

        quote = evaluate_price(Decimal(cost), country, rules, terms)
        if quote.needs_review:
            logger.warning("Price clamped to zero for org=%s sku=%s, flagged for review", org_id, sku)
        return quote

    async def consume_discount(self, discount_id: str) -> None:
        if not await self.pricing_repo.increment_discount_usage(discount_id):
            raise ValidationError("Discount code usage limit reached")

    @staticmethod
    def _check_rule(fields: dict) -> None:
        pct = fields.get("percentage_markup")
        fixed = fields.get("fixed_markup")
        if (pct is None or pct == 0) and (fixed is None or fixed == 0):
            raise ValidationError("A pricing rule needs a percentage or fixed markup")
        if (pct is not None and pct < 0) or (fixed is not None and fixed < 0):
            raise ValidationError("Markup values must not be negative")
        unknown = [r for r in fields.get("applicable_regions") or [] if r not in REGIONS]
        if unknown:
            raise ValidationError(f"Unknown regions: {', '.join(unknown)}")
        for key in ("applicable_countries", "excluded_countries"):
            if fields.get(key) is not None:
                fields[key] = [c.upper() for c in fields[key]]

    @staticmethod
    def _check_discount(fields: dict) -> None:
        if fields.get("discount_type") not in ("percentage", "fixed"):
            raise ValidationError("discount_type must be 'percentage' or 'fixed'")
        if Decimal(fields.get("value") or 0) <= 0:
            raise ValidationError("Discount value must be positive")
        if fields.get("discount_type") == "percentage" and Decimal(fields["value"]) > 100:
            raise ValidationError("Percentage discount cannot exceed 100")
        start, end = fields.get("start_date"), fields.get("end_date")
        if start and end and end < start:
            raise ValidationError("end_date must be after start_date")

    async def get_rule(self, org_id: str, rule_id: str) -> PricingRule:
        rule = await self.pricing_repo.get_rule(rule_id)
        if rule is None or str(rule.org_id) != str(org_id):
            raise NotFoundError("Pricing rule not found")
        return rule

    async def list_rules(self, org_id: str) -> Sequence[PricingRule]:
        return await self.pricing_repo.list_rules(org_id)

    async def create_rule(self, org_id: str, **fields) -> PricingRule:
        self._check_rule(fields)
        rule = PricingRule(org_id=org_id, **fields)
        await self.pricing_repo.insert_rule(rule)
        await self.db.commit()
        logger.info("Pricing rule %s created for org=%s", rule.id, org_id)
        return rule

    async def update_rule(self, org_id: str, rule_id: str, **fields) -> PricingRule:
        rule = await self.get_rule(org_id, rule_id)
        merged = {
            "percentage_markup": rule.percentage_markup,
            "fixed_markup": rule.fixed_markup,
            "applicable_regions": rule.applicable_regions,
        }
        merged.update({k: v for k, v in fields.items() if v is not None or k in NULLABLE_RULE_FIELDS})
        self._check_rule(merged)
        for key, value in merged.items():
            setattr(rule, key, value)
        rule.updated_at = datetime.utcnow()
        await self.pricing_repo.save(rule)
        await self.db.commit()
        return rule

    async def delete_rule(self, org_id: str, rule_id: str) -> None:
        rule = await self.get_rule(org_id, rule_id)
        await self.pricing_repo.delete_rule(rule)
        await self.db.commit()

    async def get_discount(self, org_id: str, discount_id: str) -> Discount:
        discount = await self.pricing_repo.get_discount(discount_id)
        if discount is None or str(discount.org_id) != str(org_id):
            raise NotFoundError("Discount not found")
        return discount

    async def list_discounts(self, org_id: str) -> Sequence[Discount]:
        return await self.pricing_repo.list_discounts(org_id)

    async def create_discount(self, org_id: str, **fields) -> Discount:
        self._check_discount(fields)
        code = fields.get("code")
        if code:
            fields["code"] = code.strip().upper()
            if await self.pricing_repo.get_discount_by_code(org_id, fields["code"]):
                raise ValidationError("A discount with this code already exists")
        discount = Discount(org_id=org_id, **fields)
        await self.pricing_repo.insert_discount(discount)
        await self.db.commit()
        return discount

    async def update_discount(self, org_id: str, discount_id: str, **fields) -> Discount:
        discount = await self.get_discount(org_id, discount_id)
        merged = {
            "discount_type": discount.discount_type,
            "value": discount.value,
            "start_date": discount.start_date,
            "end_date": discount.end_date,
        }
        merged.update({k: v for k, v in fields.items() if v is not None or k in NULLABLE_DISCOUNT_FIELDS})
        self._check_discount(merged)
        code = merged.get("code")
        if code:
            merged["code"] = code.strip().upper()
            existing = await self.pricing_repo.get_discount_by_code(org_id, merged["code"])
            if existing is not None and existing.id != discount.id:
                raise ValidationError("A discount with this code already exists")
        for key, value in merged.items():
            setattr(discount, key, value)
        discount.updated_at = datetime.utcnow()
        await self.pricing_repo.save(discount)
        await self.db.commit()
        return discount

    async def delete_discount(self, org_id: str, discount_id: str) -> None:
        discount = await self.get_discount(org_id, discount_id)
        await self.pricing_repo.delete_discount(discount)
        await self.db.commit()

    async def validate_code(self, org_id: str, code: str, amount: Decimal, country: str,
                            sku: Optional[str]) -> dict:
        country = (country or "").upper()
        discount = await self.resolve_discount_code(org_id, code, country, sku)
        terms = DiscountTerms(
            discount_type=discount.discount_type,
            value=Decimal(discount.value),
            min_purchase_amount=discount.min_purchase_amount,
            max_discount_amount=discount.max_discount_amount,
        )
        amount = _money(amount)
        if terms.min_purchase_amount is not None and amount < terms.min_purchase_amount:
            raise ValidationError(f"Minimum purchase of {terms.min_purchase_amount} required for this code")
        discount_amount = min(compute_discount(terms, amount), amount)
        return {
            "valid": True,
            "code": discount.code,
            "discount_type": discount.discount_type,
            "value": float(discount.value),
            "discount_amount": float(discount_amount),
            "final_amount": float(_money(amount - discount_amount)),
        }
