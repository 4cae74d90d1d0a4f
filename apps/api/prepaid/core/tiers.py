"""Subscription tier table.

Static mapping of tier -> limits, transaction fee and feature flags. Feature
flags are either a bool or a partial-access label ("partial", "limited",
"advanced", "full"); any of those labels grants access.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Literal, Optional, Union

UNLIMITED = "unlimited"

TIER_ORDER = ["starter", "growth", "scale", "enterprise"]

PARTIAL_ACCESS_LABELS = ("partial", "limited", "advanced", "full")

LimitValue = Union[int, Literal["unlimited"]]
FeatureValue = Union[bool, str]

LIMIT_TYPES = ("max_organizations", "max_team_members", "max_transactions_per_month")


@dataclass(frozen=True)
class TierFeatures:
    max_organizations: LimitValue
    max_team_members: LimitValue
    max_transactions_per_month: LimitValue

    transaction_fee_percentage: Decimal
    monthly_fee: Decimal

    white_label: FeatureValue = False
    custom_domain: FeatureValue = False
    api_access: FeatureValue = False
    webhooks: FeatureValue = False
    zapier: FeatureValue = False
    advanced_discounts: FeatureValue = False
    staff_portal: FeatureValue = False
    priority_processing: FeatureValue = False
    audit_logs: FeatureValue = False
    multi_language: FeatureValue = False
    dedicated_support: FeatureValue = False
    advanced_analytics: FeatureValue = False
    marketing_integrations: FeatureValue = False
    rbac: FeatureValue = False
    test_mode: FeatureValue = True

    api_rate_limit: int = 10  # requests per minute


@dataclass(frozen=True)
class TierInfo:
    tier: str
    name: str
    description: str
    features: TierFeatures
    highlights: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        data = asdict(self)
        features = data["features"]
        features["transaction_fee_percentage"] = float(self.features.transaction_fee_percentage)
        features["monthly_fee"] = float(self.features.monthly_fee)
        return data


TIER_FEATURES: dict[str, TierFeatures] = {
    "starter": TierFeatures(
        max_organizations=1,
        max_team_members=1,
        max_transactions_per_month=200,
        transaction_fee_percentage=Decimal("4.0"),
        monthly_fee=Decimal("0"),
        api_rate_limit=10,
    ),
    "growth": TierFeatures(
        max_organizations=3,
        max_team_members=5,
        max_transactions_per_month=3000,
        transaction_fee_percentage=Decimal("2.0"),
        monthly_fee=Decimal("149"),
        white_label="partial",
        api_access=True,
        webhooks=True,
        zapier=True,
        staff_portal="limited",
        advanced_analytics=True,
        marketing_integrations=True,
        rbac=True,
        api_rate_limit=60,
    ),
    "scale": TierFeatures(
        max_organizations=UNLIMITED,
        max_team_members=UNLIMITED,
        max_transactions_per_month=UNLIMITED,
        transaction_fee_percentage=Decimal("1.0"),
        monthly_fee=Decimal("499"),
        white_label=True,
        custom_domain=True,
        api_access=True,
        webhooks="advanced",
        zapier=True,
        advanced_discounts=True,
        staff_portal=True,
        priority_processing=True,
        audit_logs=True,
        multi_language="full",
        advanced_analytics=True,
        marketing_integrations=True,
        rbac=True,
        api_rate_limit=300,
    ),
    "enterprise": TierFeatures(
        max_organizations=UNLIMITED,
        max_team_members=UNLIMITED,
        max_transactions_per_month=UNLIMITED,
        transaction_fee_percentage=Decimal("0.5"),
        monthly_fee=Decimal("1000"),
        white_label=True,
        custom_domain=True,
        api_access=True,
        webhooks="advanced",
        zapier=True,
        advanced_discounts=True,
        staff_portal=True,
        priority_processing=True,
        audit_logs=True,
        multi_language="full",
        dedicated_support=True,
        advanced_analytics=True,
        marketing_integrations=True,
        rbac=True,
        api_rate_limit=1000,
    ),
}

_TIER_COPY: dict[str, tuple[str, str, list[str]]] = {
    "starter": (
        "Launch",
        "Perfect for solo resellers testing the market",
        ["Global Mobile Top-Ups", "1 Organization", "Public Storefront", "Customer Portal", "Basic Analytics"],
    ),
    "growth": (
        "Business",
        "For real businesses selling daily",
        ["Up to 3 Organizations", "Up to 5 Team Members", "Partial White Label", "Customer API Access",
         "Full Analytics & Webhooks"],
    ),
    "scale": (
        "White Label Pro",
        "For fintechs and serious operations",
        ["Unlimited Organizations", "Unlimited Team Members", "Full White Label", "Custom Domain",
         "Priority Processing"],
    ),
    "enterprise": (
        "Infrastructure Partner",
        "For aggregators, telcos, and banks",
        ["Dedicated Infrastructure", "Custom Integrations", "SLA Contracts", "Dedicated Support",
         "Revenue Share Deals"],
    ),
}


def _features(tier: str) -> TierFeatures:
    try:
        return TIER_FEATURES[tier]
    except KeyError:
        raise ValueError(f"Unknown tier: {tier}") from None


def get_tier_info(tier: str) -> TierInfo:
    features = _features(tier)
    name, description, highlights = _TIER_COPY[tier]
    return TierInfo(tier=tier, name=name, description=description, features=features, highlights=list(highlights))


def all_tiers() -> list[TierInfo]:
    return [get_tier_info(t) for t in TIER_ORDER]


def can_access_feature(tier: str, feature: str) -> bool:
    value = getattr(_features(tier), feature, None)
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value in PARTIAL_ACCESS_LABELS
    return False


def check_limit(tier: str, limit_type: str, current: int) -> dict:
    """Return ``{"allowed", "limit", "remaining"}`` for a countable limit."""
    if limit_type not in LIMIT_TYPES:
        raise ValueError(f"Unknown limit type: {limit_type}")
    limit = getattr(_features(tier), limit_type)
    if limit == UNLIMITED:
        return {"allowed": True, "limit": UNLIMITED, "remaining": UNLIMITED}
    return {"allowed": current < limit, "limit": limit, "remaining": max(0, limit - current)}


def calculate_transaction_fee(tier: str, amount: Decimal) -> Decimal:
    pct = _features(tier).transaction_fee_percentage
    fee = Decimal(amount) * pct / Decimal(100)
    return fee.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def get_next_tier(tier: str) -> Optional[str]:
    if tier not in TIER_ORDER:
        return None
    idx = TIER_ORDER.index(tier)
    if idx == len(TIER_ORDER) - 1:
        return None
    return TIER_ORDER[idx + 1]


def is_approaching_limit(tier: str, limit_type: str, current: int, threshold: float = 0.8) -> bool:
    limit = getattr(_features(tier), limit_type)
    if limit == UNLIMITED:
        return False
    return current >= limit * threshold


def tier_rank(tier: str) -> int:
    return TIER_ORDER.index(tier)
