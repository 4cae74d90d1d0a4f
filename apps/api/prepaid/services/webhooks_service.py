from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Any, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from prepaid.core.exceptions import ForbiddenError, NotFoundError, ServiceError, ValidationError
from prepaid.models.integrations import WebhookLog
from prepaid.repositories.integrations_repository import IntegrationsRepository
from prepaid.services.providers.payments import event_from_payload
from prepaid.services.subscriptions_service import SubscriptionsService
from prepaid.services.transaction_workflow import TransactionWorkflow, WebhookOutcome

logger = logging.getLogger(__name__)

PAYMENT_FAILED_EVENTS = ("checkout.session.expired", "payment_intent.payment_failed")
SUBSCRIPTION_ENDED_EVENTS = ("customer.subscription.deleted", "customer.subscription.canceled")
RETRY_REF_RE = re.compile(r"^(ORD-\d+-[A-Z0-9]{9})-R\d+$")
LOG_STATUSES = ("pending", "success", "failed")


class WebhooksService:
    """Persists every webhook receipt and routes it to the workflow."""

    def __init__(self, db: AsyncSession, workflow: TransactionWorkflow):
        self.db = db
        self.workflow = workflow
        self.repo = IntegrationsRepository(db)
        self.subscriptions = SubscriptionsService(db)

    async def _open_log(self, source: str, event: str, payload: dict, *,
                        org_id: str | None = None, transaction_id: str | None = None) -> WebhookLog:
        log = WebhookLog(source=source, event=event, payload=payload, status="pending",
                         org_id=org_id, transaction_id=transaction_id, created_at=datetime.utcnow())
        await self.repo.insert_webhook_log(log)
        await self.db.commit()
        return log

    async def _close_log(self, log: WebhookLog, *, status: str, code: int, error: str | None = None,
                         outcome: Optional[WebhookOutcome] = None) -> None:
        log.status = status
        log.response_code = code
        log.error_message = error
        log.processed_at = datetime.utcnow()
        if outcome is not None:
            log.transaction_id = outcome.transaction.id
            log.org_id = outcome.transaction.org_id
        await self.db.commit()

    async def _reload_after_rollback(self, log_id: str) -> WebhookLog:
        # rollback() expires every instance; reload instead of touching expired attributes
        await self.db.rollback()
        return await self.db.get(WebhookLog, log_id)

    async def _run(self, log: WebhookLog, handler) -> dict:
        log_id, source, event = log.id, log.source, log.event
        try:
            outcome = await handler()
        except NotFoundError as e:
            # Unknown references are acknowledged so the sender stops redelivering
            log = await self._reload_after_rollback(log_id)
            await self._close_log(log, status="failed", code=200, error=str(e))
            logger.warning("Webhook %s/%s ignored: %s", source, event, e)
            return {"received": True, "ignored": str(e)}
        except ServiceError as e:
            log = await self._reload_after_rollback(log_id)
            await self._close_log(log, status="failed", code=e.status_code, error=str(e))
            raise
        except Exception as e:
            logger.exception("Webhook %s/%s failed", source, event)
            log = await self._reload_after_rollback(log_id)
            await self._close_log(log, status="failed", code=500, error=str(e) or type(e).__name__)
            raise
        await self._close_log(log, status="success", code=200, outcome=outcome)
        result: dict[str, Any] = {"received": True}
        if outcome is not None:
            result.update({
                "order_id": outcome.transaction.order_id,
                "status": outcome.transaction.status,
                "changed": outcome.changed,
            })
        return result

    async def _owner(self, *, provider_transaction_id: str | None = None,
                     order_id: str | None = None) -> tuple[str | None, str | None]:
        tx = await self.workflow.find_by_reference(provider_transaction_id=provider_transaction_id,
                                                   order_id=order_id)
        if tx is None:
            return None, None
        return tx.org_id, tx.id

    async def handle_stripe(self, event, raw_payload: dict) -> dict:
        event_type = event.type
        # Read fields from the verified JSON body; StripeObject is not a dict
        obj = (raw_payload.get("data") or {}).get("object") or {}
        order_id = (obj.get("metadata") or {}).get("order_id")
        org_id, transaction_id = await self._owner(order_id=order_id) if order_id else (None, None)
        log = await self._open_log("stripe", event_type, raw_payload, org_id=org_id, transaction_id=transaction_id)
        logger.info("Stripe webhook %s received", event_type)

        async def handler() -> Optional[WebhookOutcome]:
            if event_type == "checkout.session.completed":
                if not order_id:
                    raise NotFoundError("checkout session has no order_id")
                return await self.workflow.payment_succeeded(
                    order_id, payment_id=obj.get("payment_intent") or obj.get("id"), gateway="stripe")
            if event_type in PAYMENT_FAILED_EVENTS:
                if not order_id:
                    raise NotFoundError(f"{event_type} has no order_id")
                return await self.workflow.payment_failed(order_id, reason=f"Payment not completed ({event_type})")
            if event_type == "invoice.paid":
                period_end = obj.get("period_end")
                await self.subscriptions.mark_invoice_paid(
                    obj.get("customer"),
                    datetime.utcfromtimestamp(period_end) if period_end else None,
                )
                await self.db.commit()
                return None
            if event_type in SUBSCRIPTION_ENDED_EVENTS:
                await self.subscriptions.mark_subscription_deleted(obj.get("customer"))
                await self.db.commit()
                return None
            return None

        return await self._run(log, handler)

    async def handle_topup(self, payload: dict) -> dict:
        status = payload.get("status") or payload.get("Status")
        if status not in ("Completed", "Failed", "Processing"):
            raise ValidationError("status must be Completed, Failed or Processing")
        provider_ref = payload.get("provider_transaction_id") or payload.get("TransferId")
        order_id = payload.get("order_id") or payload.get("DistributorRef")
        if not provider_ref and not order_id:
            raise ValidationError("provider_transaction_id or order_id is required")
        # Retries carry "<order_id>-R<n>" as distributor reference
        if order_id:
            match = RETRY_REF_RE.match(order_id)
            if match:
                order_id = match.group(1)
        provider_ref = str(provider_ref) if provider_ref else None

        org_id, transaction_id = await self._owner(provider_transaction_id=provider_ref, order_id=order_id)
        log = await self._open_log("dingconnect", f"topup.{status.lower()}", payload,
                                   org_id=org_id, transaction_id=transaction_id)
        logger.info("Top-up webhook %s for ref=%s order=%s", status, provider_ref, order_id)

        async def handler() -> WebhookOutcome:
            return await self.workflow.provider_report(
                status=status,
                provider_transaction_id=provider_ref,
                order_id=order_id,
                error=payload.get("error_message") or payload.get("ErrorMessage"),
            )

        return await self._run(log, handler)

    # Delivery log

    async def list_logs(self, org_id: str, *, source: str | None = None, status: str | None = None,
                        limit: int = 50) -> Sequence[WebhookLog]:
        if status and status not in LOG_STATUSES:
            raise ValidationError(f"Unknown webhook log status: {status}")
        return await self.repo.list_webhook_logs(org_id, source=source, status=status,
                                                 limit=max(1, min(limit, 200)))

    async def get_log(self, org_id: str, log_id: str) -> WebhookLog:
        log = await self.repo.get_webhook_log(log_id)
        if log is None:
            raise NotFoundError("Webhook log not found")
        if str(log.org_id) != str(org_id):
            raise ForbiddenError("Webhook log belongs to a different organization")
        return log

    async def replay(self, org_id: str, log_id: str) -> dict:
        """Process a stored delivery again. The replay gets its own log row."""
        log = await self.get_log(org_id, log_id)
        payload = dict(log.payload or {})
        logger.info("Replaying webhook log %s (%s/%s)", log.id, log.source, log.event)
        if log.source == "stripe":
            result = await self.handle_stripe(event_from_payload(payload), payload)
        elif log.source == "dingconnect":
            result = await self.handle_topup(payload)
        else:
            raise ValidationError(f"Webhooks from {log.source} cannot be replayed")
        result["replayed_from"] = log_id
        return result
