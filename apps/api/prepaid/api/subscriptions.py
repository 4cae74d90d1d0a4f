from typing import Literal

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from prepaid.api.auth import CurrentUser, get_current_user, require_permission
from prepaid.api.deps_async import get_db_async
from prepaid.core import tiers
from prepaid.core.permissions import Permission
from prepaid.services.subscriptions_service import SubscriptionsService

router = APIRouter(prefix="/api/v1/subscriptions", tags=["subscriptions"])


class UpgradeIn(BaseModel):
    tier: Literal["starter", "growth", "scale", "enterprise"]
    allow_downgrade: bool = False


@router.get("/tiers")
async def list_tiers():
    return [t.to_dict() for t in tiers.all_tiers()]


@router.get("/current")
async def current_subscription(
    db: AsyncSession = Depends(get_db_async),
    current_user: CurrentUser = Depends(get_current_user),
):
    return await SubscriptionsService(db).current(current_user.org_id)


@router.get("/usage")
async def subscription_usage(
    db: AsyncSession = Depends(get_db_async),
    current_user: CurrentUser = Depends(get_current_user),
):
    return await SubscriptionsService(db).usage(current_user.org_id)


@router.post("/upgrade")
async def upgrade_subscription(
    body: UpgradeIn,
    db: AsyncSession = Depends(get_db_async),
    current_user: CurrentUser = Depends(require_permission(Permission.MANAGE_BILLING)),
):
    svc = SubscriptionsService(db)
    await svc.upgrade(current_user.org_id, body.tier, allow_downgrade=body.allow_downgrade)
    return await svc.current(current_user.org_id)
