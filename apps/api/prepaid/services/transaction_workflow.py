"""Transaction status workflow.

Status changes go through ``TRANSITIONS``; ``refunded`` is terminal. Every
transition stamps the matching timeline column. Refunds credit the ledger
exactly once, retries claim the failed row atomically before resubmitting
to the top-up provider.
"""
from __future__ import annotations

import logging
import secrets
import string
import time
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession
from starlette.concurrency import run_in_threadpool

from prepaid.core.config import Settings
from prepaid.core.exceptions import (
    ConflictError,
    ForbiddenError,
    InvalidTransitionError,
    LimitExceededError,
    NotFoundError,
    UpstreamProviderError,
    ValidationError,
)
from prepaid.core.logging import mask_phone
from prepaid.models.customers import Customer
from prepaid.models.organizations import Organization
from prepaid.models.storefront import Product
from prepaid.models.transactions import Transaction, TRANSACTION_STATUSES, PAYMENT_TYPES
from prepaid.repositories.customers_repository import CustomersRepository
from prepaid.repositories.storefront_repository import StorefrontRepository
from prepaid.repositories.transactions_repository import TransactionsRepository
from prepaid.schemas.metadata import (
    AdminAssignedMeta,
    BalancePaymentMeta,
    GatewayPaymentMeta,
    dump_transaction_meta,
    parse_transaction_meta,
)
from prepaid.services.ledger_service import LedgerService
from prepaid.services.notifications import Notifier
from prepaid.services.pricing_service import PricingService, PriceQuote
from prepaid.services.providers.topup_client import TopupProviderClient, TransferResult
from prepaid.services.subscriptions_service import SubscriptionsService

logger = logging.getLogger(__name__)

TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"paid", "processing", "failed"}),
    "paid": frozenset({"processing", "failed", "refunded"}),
    "processing": frozenset({"completed", "failed"}),
    "completed": frozenset({"refunded"}),
    "failed": frozenset({"pending", "processing", "refunded"}),
    "refunded": frozenset(),
}

TIMELINE_FIELDS = {
    "paid": "paid_at",
    "processing": "processing_at",
    "completed": "completed_at",
    "failed": "failed_at",
    "refunded": "refunded_at",
}

REASON_REQUIRED = frozenset({"failed", "refunded"})
REFUNDABLE_FROM = frozenset({"failed", "paid", "completed"})

ORDER_ID_ALPHABET = string.ascii_uppercase + string.digits


def generate_order_id() -> str:
    suffix = "".join(secrets.choice(ORDER_ID_ALPHABET) for _ in range(9))
    return f"ORD-{int(time.time() * 1000)}-{suffix}"


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def check_transition(current: str, target: str) -> None:
    if target not in TRANSACTION_STATUSES:
        raise ValidationError(f"Unknown status: {target}")
    if current == target:
        raise InvalidTransitionError(f"Transaction is already {current}")
    if current == "refunded":
        raise InvalidTransitionError("Refunded transactions cannot change status")
    if not can_transition(current, target):
        raise InvalidTransitionError(f"Cannot move transaction from {current} to {target}")


@dataclass
class RetryOutcome:
    transaction: Transaction
    success: bool
    provider_status: Optional[str] = None
    error: Optional[str] = None


@dataclass
class WebhookOutcome:
    transaction: Transaction
    changed: bool
    note: Optional[str] = None


class TransactionWorkflow:
    def __init__(
        self,
        db: AsyncSession,
        *,
        settings: Settings,
        topup_client: TopupProviderClient,
        notifier: Notifier,
    ):
        self.db = db
        self.settings = settings
        self.topup_client = topup_client
        self.notifier = notifier
        self.tx_repo = TransactionsRepository(db)
        self.customers_repo = CustomersRepository(db)
        self.storefront_repo = StorefrontRepository(db)
        self.ledger = LedgerService(db)
        self.pricing = PricingService(db)
        self.subscriptions = SubscriptionsService(db)

    # Lookups

    async def get_for_org(self, transaction_id: str, org_id: str) -> Transaction:
        tx = await self.tx_repo.get(transaction_id)
        if tx is None:
            raise NotFoundError("Transaction not found")
        if str(tx.org_id) != str(org_id):
            raise ForbiddenError("Transaction belongs to a different organization")
        return tx

    async def find_by_reference(self, *, provider_transaction_id: str | None = None,
                                order_id: str | None = None) -> Optional[Transaction]:
        tx = None
        if provider_transaction_id:
            tx = await self.tx_repo.get_by_provider_transaction_id(provider_transaction_id)
        if tx is None and order_id:
            tx = await self.tx_repo.get_by_order_id(order_id)
        return tx

    async def list_for_org(self, org_id: str, *, status: str | None = None, customer_id: str | None = None,
                           limit: int = 50, offset: int = 0) -> Sequence[Transaction]:
        if status and status not in TRANSACTION_STATUSES:
            raise ValidationError(f"Unknown status: {status}")
        return await self.tx_repo.list(org_id, status=status, customer_id=customer_id,
                                       limit=max(1, min(limit, 200)), offset=max(0, offset))

    # State changes

    @staticmethod
    def _update_meta(tx: Transaction, **changes) -> None:
        meta = parse_transaction_meta(tx.meta)
        tx.meta = dump_transaction_meta(meta.model_copy(update=changes))

    def _apply_transition(self, tx: Transaction, target: str, reason: str | None = None,
                          now: datetime | None = None) -> None:
        check_transition(tx.status, target)
        now = now or datetime.utcnow()
        previous = tx.status
        tx.status = target
        field = TIMELINE_FIELDS.get(target)
        if field:
            setattr(tx, field, now)
        tx.updated_at = now
        if target in REASON_REQUIRED and reason:
            self._update_meta(tx, failure_reason=reason)
        logger.info("Transaction %s status %s -> %s", tx.order_id, previous, target)

    async def _locked(self, tx: Transaction) -> Transaction:
        locked = await self.tx_repo.get_for_update(tx.id)
        if locked is None:
            raise NotFoundError("Transaction not found")
        return locked

    async def _find_or_create_customer(self, tx: Transaction, *, create: bool) -> Optional[Customer]:
        customer = None
        if tx.customer_id:
            customer = await self.customers_repo.get(tx.customer_id)
        if customer is None:
            customer = await self.customers_repo.get_by_phone(tx.org_id, tx.recipient_phone)
        if customer is None and create:
            customer = Customer(
                org_id=tx.org_id,
                phone_number=tx.recipient_phone,
                email=tx.recipient_email,
                name=tx.recipient_name,
                country=tx.operator_country,
                acquisition_source="purchase",
                created_at=datetime.utcnow(),
            )
            await self.customers_repo.insert(customer)
            logger.info("Created customer %s from recipient %s", customer.id, mask_phone(tx.recipient_phone))
        return customer

    async def _on_completed(self, tx: Transaction, now: datetime) -> None:
        await self.subscriptions.track_transaction_completion(tx.org_id, tx.amount, now=now)
        customer = await self._find_or_create_customer(tx, create=True)
        customer.total_purchases = (customer.total_purchases or 0) + 1
        customer.total_spent = Decimal(customer.total_spent or 0) + Decimal(tx.amount)
        customer.last_purchase_at = now
        if not tx.customer_id:
            tx.customer_id = customer.id
        await self.customers_repo.save(customer)

    async def _complete(self, tx: Transaction, *, provider_ref: str | None = None) -> None:
        now = datetime.utcnow()
        if tx.status in ("pending", "paid", "failed"):
            self._apply_transition(tx, "processing", now=now)
        self._apply_transition(tx, "completed", now=now)
        if provider_ref:
            tx.provider_transaction_id = provider_ref
        await self._on_completed(tx, now)
        await self.tx_repo.save(tx)

    async def transition(self, tx: Transaction, target: str, *, reason: str | None = None,
                         actor: str | None = None) -> Transaction:
        """Admin status override. Uses the same table as every other path."""
        if target in REASON_REQUIRED and not (reason and reason.strip()):
            raise ValidationError(f"A reason is required to mark a transaction {target}")
        if target == "refunded":
            return await self.refund(tx, reason=reason or "", actor=actor)

        tx = await self._locked(tx)
        check_transition(tx.status, target)
        if target == "completed":
            await self._complete(tx)
        else:
            self._apply_transition(tx, target, reason=reason)
            await self.tx_repo.save(tx)
        await self.db.commit()
        logger.info("Transaction %s set to %s by %s", tx.order_id, target, actor or "system")
        return tx

    async def refund(self, tx: Transaction, *, reason: str, actor: str | None = None) -> Transaction:
        if not (reason and reason.strip()):
            raise ValidationError("A reason is required to refund a transaction")
        tx = await self._locked(tx)
        if tx.status == "refunded":
            raise ConflictError("Transaction has already been refunded")
        if tx.status not in REFUNDABLE_FROM:
            raise InvalidTransitionError(f"Cannot refund a {tx.status} transaction")

        customer = await self._find_or_create_customer(tx, create=True)
        await self.ledger.refund(
            customer.id,
            tx.amount,
            f"Refund for order {tx.order_id}",
            org_id=tx.org_id,
            meta={"kind": "refund", "order_id": tx.order_id, "transaction_id": tx.id, "reason": reason},
            actor=actor,
            commit=False,
        )
        if not tx.customer_id:
            tx.customer_id = customer.id
        self._apply_transition(tx, "refunded", reason=reason)
        await self.tx_repo.save(tx)
        await self.db.commit()
        logger.info("Refunded order %s amount=%s to customer %s", tx.order_id, tx.amount, customer.id)

        try:
            await self.notifier.send_refund_notice(
                customer.email or tx.recipient_email, tx.order_id, tx.amount, tx.currency, reason)
        except Exception:
            logger.exception("Refund notice failed for order %s", tx.order_id)
        return tx

    async def _send(self, tx: Transaction, distributor_ref: str, *,
                    validate_only: bool = False) -> TransferResult:
        meta = parse_transaction_meta(tx.meta)
        return await run_in_threadpool(
            self.topup_client.send_transfer,
            tx.product_sku,
            tx.recipient_phone,
            meta.send_value if meta.is_variable_value else None,
            validate_only,
            distributor_ref,
        )

    async def retry(
        self,
        tx: Transaction,
        *,
        actor: str | None = None,
        phone_number: str | None = None,
        sku_code: str | None = None,
        send_value: Decimal | None = None,
        validate_only: bool = False,
    ) -> RetryOutcome:
        if tx.status != "failed":
            raise InvalidTransitionError(f"Only failed transactions can be retried (status is {tx.status})")

        if validate_only:
            result = await run_in_threadpool(
                self.topup_client.send_transfer,
                sku_code or tx.product_sku,
                phone_number or tx.recipient_phone,
                send_value,
                True,
                None,
            )
            return RetryOutcome(transaction=tx, success=result.succeeded, provider_status=result.status,
                                error=result.error_message)

        now = datetime.utcnow()
        if not await self.tx_repo.claim_failed_for_retry(tx.id, now):
            raise ConflictError("Transaction is no longer failed or is already being retried")
        await self.db.refresh(tx)

        meta = parse_transaction_meta(tx.meta)
        retry_count = meta.retry_count + 1
        changes: dict = {"retry_count": retry_count, "retried_by": actor, "failure_reason": None}
        if phone_number:
            tx.recipient_phone = phone_number
        if sku_code:
            tx.product_sku = sku_code
            changes["product_sku_code"] = sku_code
        if send_value is not None:
            changes["send_value"] = send_value
        self._update_meta(tx, **changes)
        await self.tx_repo.save(tx)
        await self.db.commit()

        distributor_ref = f"{tx.order_id}-R{retry_count}"
        logger.info("Retrying order %s attempt=%s", tx.order_id, retry_count)
        error: str | None = None
        result: TransferResult | None = None
        try:
            result = await self._send(tx, distributor_ref)
        except UpstreamProviderError as e:
            error = str(e)
        except Exception:
            logger.exception("Unexpected error retrying order %s", tx.order_id)
            error = "Unexpected error while contacting the top-up provider"

        if result is not None and result.succeeded:
            await self._complete(tx, provider_ref=result.transfer_id)
            await self.db.commit()
            return RetryOutcome(transaction=tx, success=True, provider_status=result.status)

        if error is None:
            error = (result.error_message if result else None) or "Top-up provider reported failure"
        self._apply_transition(tx, "failed", reason=error)
        await self.tx_repo.save(tx)
        await self.db.commit()
        logger.warning("Retry of order %s failed: %s", tx.order_id, error)
        return RetryOutcome(transaction=tx, success=False,
                            provider_status=result.status if result else None, error=error)

    # Checkout and fulfilment

    async def checkout(
        self,
        org: Organization,
        product: Product,
        *,
        phone_number: str,
        payment_type: str,
        customer_id: str | None = None,
        email: str | None = None,
        name: str | None = None,
        discount_code: str | None = None,
        send_value: Decimal | None = None,
        admin_id: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        quote: PriceQuote | None = None,
    ) -> Transaction:
        if payment_type not in PAYMENT_TYPES:
            raise ValidationError(f"Unknown payment type: {payment_type}")
        if not phone_number or not phone_number.strip():
            raise ValidationError("Recipient phone number is required")
        if not product.is_active:
            raise ValidationError("Product is not available")

        limit = self.subscriptions.check_transaction_limit(org)
        if not limit["allowed"]:
            raise LimitExceededError(
                f"Monthly transaction limit of {limit['limit']} reached for the {org.tier} tier")

        cost = Decimal(product.cost)
        if product.is_variable_value:
            if send_value is None or Decimal(send_value) <= 0:
                raise ValidationError("send_value is required for variable-value products")
            cost = Decimal(send_value)

        if quote is None:
            quote = await self.pricing.quote(org.id, cost, product.country, product.sku_code, discount_code)
        if quote.discount_id:
            await self.pricing.consume_discount(quote.discount_id)

        common = {
            "product_sku_code": product.sku_code,
            "send_value": Decimal(send_value) if product.is_variable_value else product.send_value,
            "is_variable_value": product.is_variable_value,
            "ip_address": ip_address,
            "user_agent": user_agent,
            "discount_code": discount_code.upper() if discount_code and quote.discount_applied else None,
            "needs_review": quote.needs_review,
        }
        if payment_type == "balance":
            if not customer_id:
                raise ValidationError("customer_id is required for balance payments")
            customer = await self.customers_repo.get(customer_id)
            if customer is None:
                raise NotFoundError("Customer not found")
            if str(customer.org_id) != str(org.id):
                raise ForbiddenError("Customer belongs to a different organization")
            meta = BalancePaymentMeta(customer_id=customer_id, **common)
        elif payment_type == "gateway":
            meta = GatewayPaymentMeta(gateway="stripe", **common)
        else:
            if not admin_id:
                raise ValidationError("admin_id is required for admin-assigned top-ups")
            meta = AdminAssignedMeta(admin_id=admin_id, **common)

        now = datetime.utcnow()
        tx = Transaction(
            order_id=generate_order_id(),
            org_id=org.id,
            customer_id=customer_id,
            product_sku=product.sku_code,
            product_name=product.name,
            amount=quote.final_price,
            cost=quote.cost,
            markup=quote.markup,
            discount_amount=quote.discount_amount,
            currency=product.currency,
            status="pending",
            payment_type=payment_type,
            payment_gateway="stripe" if payment_type == "gateway" else None,
            provider=product.provider,
            recipient_phone=phone_number.strip(),
            recipient_email=email,
            recipient_name=name,
            operator_id=product.operator_id,
            operator_name=product.operator_name,
            operator_country=product.country,
            meta=dump_transaction_meta(meta),
            created_at=now,
        )
        await self.tx_repo.insert(tx)

        if payment_type == "balance":
            if quote.final_price > 0:
                await self.ledger.withdraw(
                    customer_id,
                    quote.final_price,
                    f"Purchase {product.name}",
                    org_id=org.id,
                    meta={
                        "kind": "purchase",
                        "order_id": tx.order_id,
                        "transaction_id": tx.id,
                        "phone_number": tx.recipient_phone,
                        "product_name": product.name,
                    },
                    commit=False,
                )
            self._apply_transition(tx, "paid", now=now)
        elif payment_type == "admin_assigned":
            self._apply_transition(tx, "paid", now=now)

        await self.tx_repo.save(tx)
        await self.db.commit()
        logger.info("Checkout order=%s org=%s sku=%s amount=%s payment=%s",
                    tx.order_id, org.id, product.sku_code, tx.amount, payment_type)
        return tx

    async def fulfil(self, tx: Transaction) -> Transaction:
        """Send a paid transaction to the top-up provider."""
        tx = await self._locked(tx)
        self._apply_transition(tx, "processing")
        await self.tx_repo.save(tx)
        await self.db.commit()

        error: str | None = None
        result: TransferResult | None = None
        try:
            result = await self._send(tx, tx.order_id)
        except UpstreamProviderError as e:
            error = str(e)
        except Exception:
            logger.exception("Unexpected error fulfilling order %s", tx.order_id)
            error = "Unexpected error while contacting the top-up provider"

        if result is not None and result.succeeded:
            await self._complete(tx, provider_ref=result.transfer_id)
            await self.db.commit()
            return tx

        if error is None:
            error = (result.error_message if result else None) or "Top-up provider reported failure"
        self._apply_transition(tx, "failed", reason=error)
        await self.tx_repo.save(tx)
        await self.db.commit()
        logger.warning("Fulfilment of order %s failed: %s", tx.order_id, error)

        if self.settings.auto_refund_failed_topups:
            tx = await self.refund(tx, reason=error, actor="system")
        return tx

    # Webhook entry points

    async def payment_succeeded(self, order_id: str, *, payment_id: str | None = None,
                                gateway: str = "stripe") -> WebhookOutcome:
        tx = await self.tx_repo.get_by_order_id(order_id)
        if tx is None:
            raise NotFoundError(f"Unknown order {order_id}")
        if tx.status != "pending":
            return WebhookOutcome(transaction=tx, changed=False, note=f"already {tx.status}")
        tx = await self._locked(tx)
        tx.payment_id = payment_id
        tx.payment_gateway = gateway
        if isinstance(parse_transaction_meta(tx.meta), GatewayPaymentMeta):
            self._update_meta(tx, payment_id=payment_id, gateway=gateway)
        self._apply_transition(tx, "paid")
        await self.tx_repo.save(tx)
        await self.db.commit()
        tx = await self.fulfil(tx)
        return WebhookOutcome(transaction=tx, changed=True)

    async def payment_failed(self, order_id: str, *, reason: str) -> WebhookOutcome:
        tx = await self.tx_repo.get_by_order_id(order_id)
        if tx is None:
            raise NotFoundError(f"Unknown order {order_id}")
        if tx.status != "pending":
            return WebhookOutcome(transaction=tx, changed=False, note=f"already {tx.status}")
        tx = await self._locked(tx)
        self._apply_transition(tx, "failed", reason=reason)
        await self.tx_repo.save(tx)
        await self.db.commit()
        return WebhookOutcome(transaction=tx, changed=True)

    async def provider_report(self, *, status: str, provider_transaction_id: str | None = None,
                              order_id: str | None = None, error: str | None = None) -> WebhookOutcome:
        tx = await self.find_by_reference(provider_transaction_id=provider_transaction_id, order_id=order_id)
        if tx is None:
            raise NotFoundError("Unknown transaction reference")

        if tx.status in ("completed", "refunded"):
            return WebhookOutcome(transaction=tx, changed=False, note=f"already {tx.status}")

        tx = await self._locked(tx)
        if status == "Completed":
            await self._complete(tx, provider_ref=provider_transaction_id)
        elif status == "Failed":
            if tx.status == "failed":
                return WebhookOutcome(transaction=tx, changed=False, note="already failed")
            self._apply_transition(tx, "failed", reason=error or "Top-up provider reported failure")
            await self.tx_repo.save(tx)
        else:
            return WebhookOutcome(transaction=tx, changed=False, note=f"status {status} ignored")
        await self.db.commit()
        return WebhookOutcome(transaction=tx, changed=True)
