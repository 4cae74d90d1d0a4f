from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP

from sqlalchemy.ext.asyncio import AsyncSession

from prepaid.core import tiers
from prepaid.core.exceptions import NotFoundError, ValidationError
from prepaid.models.organizations import Organization
from prepaid.repositories.organizations_repository import OrganizationsRepository

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = ("active", "trialing", "past_due")


def month_start(now: datetime) -> datetime:
    return datetime(now.year, now.month, 1)


def _usage_is_stale(org: Organization, now: datetime) -> bool:
    return org.last_usage_reset is None or org.last_usage_reset < month_start(now)


class SubscriptionsService:
    """Tier, subscription status and monthly usage counters of an organization."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.orgs_repo = OrganizationsRepository(db)

    async def get_org(self, org_id: str) -> Organization:
        org = await self.orgs_repo.get(org_id)
        if org is None:
            raise NotFoundError("Organization not found")
        return org

    def reset_usage_if_stale(self, org: Organization, now: datetime | None = None) -> bool:
        now = now or datetime.utcnow()
        if not _usage_is_stale(org, now):
            return False
        org.transactions_this_month = 0
        org.transaction_fees_this_month = Decimal("0")
        org.revenue_this_month = Decimal("0")
        org.last_usage_reset = now
        logger.info("Monthly usage counters reset for org=%s", org.id)
        return True

    async def track_transaction_completion(self, org_id: str, amount: Decimal, *,
                                           now: datetime | None = None) -> Organization:
        """Count a completed transaction; the caller commits."""
        now = now or datetime.utcnow()
        org = await self.orgs_repo.get_for_update(org_id)
        if org is None:
            raise NotFoundError("Organization not found")
        self.reset_usage_if_stale(org, now)
        amount = Decimal(str(amount))
        fee = tiers.calculate_transaction_fee(org.tier, amount)
        org.transactions_this_month = (org.transactions_this_month or 0) + 1
        org.transaction_fees_this_month = Decimal(org.transaction_fees_this_month or 0) + fee
        org.revenue_this_month = (Decimal(org.revenue_this_month or 0) + amount).quantize(
            Decimal("0.01"), rounding=ROUND_HALF_UP)
        await self.orgs_repo.save(org)
        return org

    def check_transaction_limit(self, org: Organization, now: datetime | None = None) -> dict:
        now = now or datetime.utcnow()
        current = 0 if _usage_is_stale(org, now) else (org.transactions_this_month or 0)
        result = tiers.check_limit(org.tier, "max_transactions_per_month", current)
        return {
            "allowed": result["allowed"],
            "current_count": current,
            "limit": result["limit"],
            "remaining": result["remaining"],
        }

    async def current(self, org_id: str) -> dict:
        org = await self.get_org(org_id)
        info = tiers.get_tier_info(org.tier)
        return {
            "org_id": org.id,
            "tier": org.tier,
            "subscription_status": org.subscription_status,
            "current_period_end": org.current_period_end,
            "tier_info": info.to_dict(),
            "next_tier": tiers.get_next_tier(org.tier),
            "usage": self._usage(org),
        }

    def _usage(self, org: Organization) -> dict:
        limit = self.check_transaction_limit(org)
        stale = _usage_is_stale(org, datetime.utcnow())
        return {
            "transactions_this_month": limit["current_count"],
            "transaction_fees_this_month": 0.0 if stale else float(org.transaction_fees_this_month or 0),
            "revenue_this_month": 0.0 if stale else float(org.revenue_this_month or 0),
            "transaction_limit": limit["limit"],
            "remaining": limit["remaining"],
            "approaching_limit": tiers.is_approaching_limit(
                org.tier, "max_transactions_per_month", limit["current_count"]),
        }

    async def usage(self, org_id: str) -> dict:
        org = await self.get_org(org_id)
        return self._usage(org)

    async def upgrade(self, org_id: str, tier: str, *, allow_downgrade: bool = False) -> Organization:
        if tier not in tiers.TIER_ORDER:
            raise ValidationError(f"Unknown tier: {tier}")
        org = await self.orgs_repo.get_for_update(org_id)
        if org is None:
            raise NotFoundError("Organization not found")
        if tiers.tier_rank(tier) == tiers.tier_rank(org.tier):
            raise ValidationError(f"Organization is already on the {tier} tier")
        if tiers.tier_rank(tier) < tiers.tier_rank(org.tier) and not allow_downgrade:
            raise ValidationError("Downgrades require allow_downgrade")
        previous = org.tier
        org.tier = tier
        await self.orgs_repo.save(org)
        await self.db.commit()
        logger.info("Organization %s tier changed %s -> %s", org.id, previous, tier)
        return org

    async def mark_invoice_paid(self, stripe_customer_id: str, period_end: datetime | None) -> Organization | None:
        org = await self.orgs_repo.get_by_stripe_customer(stripe_customer_id)
        if org is None:
            logger.warning("invoice.paid for unknown Stripe customer %s", stripe_customer_id)
            return None
        org.subscription_status = "active"
        if period_end is not None:
            org.current_period_end = period_end
        await self.orgs_repo.save(org)
        return org

    async def mark_subscription_deleted(self, stripe_customer_id: str) -> Organization | None:
        org = await self.orgs_repo.get_by_stripe_customer(stripe_customer_id)
        if org is None:
            logger.warning("subscription.deleted for unknown Stripe customer %s", stripe_customer_id)
            return None
        org.subscription_status = "canceled"
        org.tier = "starter"
        org.stripe_subscription_id = None
        await self.orgs_repo.save(org)
        return org
