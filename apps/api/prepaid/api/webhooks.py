import hmac
import json
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, ConfigDict
from sqlalchemy.ext.asyncio import AsyncSession

from prepaid.api.auth import CurrentUser, require_permission
from prepaid.api.deps_async import get_db_async, get_settings, get_workflow
from prepaid.core.config import Settings
from prepaid.core.permissions import Permission
from prepaid.services.providers.payments import parse_stripe_event
from prepaid.services.transaction_workflow import TransactionWorkflow
from prepaid.services.webhooks_service import WebhooksService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])


class WebhookLogOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    source: str
    event: str
    status: str
    response_code: Optional[int] = None
    error_message: Optional[str] = None
    transaction_id: Optional[str] = None
    payload: dict = {}
    created_at: datetime
    processed_at: Optional[datetime] = None


async def _json_body(request: Request) -> dict:
    try:
        data = json.loads(await request.body() or b"{}")
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid webhook payload")
    if not isinstance(data, dict):
        raise HTTPException(status_code=400, detail="Invalid webhook payload")
    return data


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db_async),
    settings: Settings = Depends(get_settings),
    workflow: TransactionWorkflow = Depends(get_workflow),
):
    payload = await request.body()
    event = parse_stripe_event(payload, request.headers.get("stripe-signature"), settings)
    raw = await _json_body(request)
    return await WebhooksService(db, workflow).handle_stripe(event, raw)


@router.post("/topup")
async def topup_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db_async),
    settings: Settings = Depends(get_settings),
    workflow: TransactionWorkflow = Depends(get_workflow),
):
    if settings.topup_webhook_secret:
        supplied = request.headers.get("x-webhook-secret") or ""
        if not hmac.compare_digest(supplied.encode(), settings.topup_webhook_secret.encode()):
            raise HTTPException(status_code=401, detail="Invalid webhook secret")
    else:
        logger.warning("TOPUP_WEBHOOK_SECRET not set, accepting unauthenticated top-up webhook")
    payload = await _json_body(request)
    return await WebhooksService(db, workflow).handle_topup(payload)


@router.get("/logs", response_model=list[WebhookLogOut])
async def list_webhook_logs(
    source: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 50,
    db: AsyncSession = Depends(get_db_async),
    workflow: TransactionWorkflow = Depends(get_workflow),
    current_user: CurrentUser = Depends(require_permission(Permission.VIEW_WEBHOOK_LOGS)),
):
    logs = await WebhooksService(db, workflow).list_logs(current_user.org_id, source=source, status=status,
                                                         limit=limit)
    return [WebhookLogOut.model_validate(log) for log in logs]


@router.get("/logs/{log_id}", response_model=WebhookLogOut)
async def get_webhook_log(
    log_id: str,
    db: AsyncSession = Depends(get_db_async),
    workflow: TransactionWorkflow = Depends(get_workflow),
    current_user: CurrentUser = Depends(require_permission(Permission.VIEW_WEBHOOK_LOGS)),
):
    log = await WebhooksService(db, workflow).get_log(current_user.org_id, log_id)
    return WebhookLogOut.model_validate(log)


@router.post("/logs/{log_id}/replay")
async def replay_webhook(
    log_id: str,
    db: AsyncSession = Depends(get_db_async),
    workflow: TransactionWorkflow = Depends(get_workflow),
    current_user: CurrentUser = Depends(require_permission(Permission.REPLAY_WEBHOOKS)),
):
    logger.info("Webhook log %s replay requested by %s", log_id, current_user.id)
    return await WebhooksService(db, workflow).replay(current_user.org_id, log_id)
