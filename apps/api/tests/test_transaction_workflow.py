from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy import select

from prepaid.core.exceptions import (
    ConflictError,
    InsufficientBalanceError,
    InvalidTransitionError,
    LimitExceededError,
    UpstreamProviderError,
    ValidationError,
)
from prepaid.models.customers import BalanceHistoryEntry, Customer
from prepaid.schemas.metadata import parse_transaction_meta
from prepaid.services.ledger_service import LedgerService
from prepaid.services.pricing_service import DiscountTerms, evaluate_price
from prepaid.services.providers.topup_client import TransferResult
from prepaid.services.transaction_workflow import (
    TRANSITIONS,
    can_transition,
    check_transition,
    generate_order_id,
)


def test_transition_table():
    assert can_transition("pending", "paid")
    assert can_transition("paid", "processing")
    assert can_transition("processing", "completed")
    assert can_transition("failed", "pending")
    assert can_transition("completed", "refunded")
    assert not can_transition("pending", "completed")
    assert not can_transition("completed", "pending")
    assert TRANSITIONS["refunded"] == frozenset()

    with pytest.raises(InvalidTransitionError):
        check_transition("refunded", "pending")
    with pytest.raises(InvalidTransitionError):
        check_transition("paid", "paid")
    with pytest.raises(ValidationError):
        check_transition("paid", "shipped")


def test_order_id_format():
    order_id = generate_order_id()
    prefix, millis, suffix = order_id.split("-")
    assert prefix == "ORD"
    assert millis.isdigit()
    assert len(suffix) == 9 and suffix.isalnum() and suffix.upper() == suffix


async def _failed_admin_topup(workflow, org, product, topup):
    tx = await workflow.checkout(org, product, phone_number="+5215500000001",
                                 payment_type="admin_assigned", admin_id="user-1")
    topup.results.append(TransferResult(transfer_id=None, status="Failed", error_message="Out of stock"))
    tx = await workflow.fulfil(tx)
    assert tx.status == "failed"
    return tx


@pytest.mark.asyncio
async def test_balance_checkout_debits_and_fulfils(db, workflow, org, product, customer, topup):
    await LedgerService(db).assign(customer.id, Decimal("25"))

    tx = await workflow.checkout(org, product, phone_number=customer.phone_number,
                                 payment_type="balance", customer_id=customer.id)
    assert tx.status == "paid"
    assert tx.amount == Decimal("10.00")
    assert tx.paid_at is not None

    await db.refresh(customer)
    assert customer.current_balance == Decimal("15.00")

    tx = await workflow.fulfil(tx)
    assert tx.status == "completed"
    assert tx.provider_transaction_id == "T-1"
    assert topup.calls[0]["distributor_ref"] == tx.order_id
    assert topup.calls[0]["sku_code"] == "MX_TELCEL_10"

    await db.refresh(customer)
    assert customer.total_purchases == 1
    await db.refresh(org)
    assert org.transactions_this_month == 1
    assert org.transaction_fees_this_month == Decimal("0.40")


@pytest.mark.asyncio
async def test_balance_checkout_requires_funds(db, workflow, org, product, customer):
    with pytest.raises(InsufficientBalanceError):
        await workflow.checkout(org, product, phone_number=customer.phone_number,
                                payment_type="balance", customer_id=customer.id)


@pytest.mark.asyncio
async def test_checkout_blocked_at_monthly_limit(db, workflow, org, product):
    org.transactions_this_month = 200
    org.last_usage_reset = datetime.utcnow()
    await db.commit()

    with pytest.raises(LimitExceededError):
        await workflow.checkout(org, product, phone_number="+5215500000001", payment_type="gateway")


@pytest.mark.asyncio
async def test_variable_value_products_need_send_value(db, workflow, org, product):
    product.is_variable_value = True
    await db.commit()
    with pytest.raises(ValidationError):
        await workflow.checkout(org, product, phone_number="+5215500000001", payment_type="gateway")


@pytest.mark.asyncio
async def test_refund_credits_exactly_once(db, workflow, org, product, customer, notifier):
    await LedgerService(db).assign(customer.id, Decimal("20"))
    tx = await workflow.checkout(org, product, phone_number=customer.phone_number,
                                 payment_type="balance", customer_id=customer.id)
    tx = await workflow.fulfil(tx)

    tx = await workflow.refund(tx, reason="Customer complaint", actor="user-1")
    assert tx.status == "refunded"
    assert tx.refunded_at is not None
    assert parse_transaction_meta(tx.meta).failure_reason == "Customer complaint"

    with pytest.raises(ConflictError):
        await workflow.refund(tx, reason="Again")

    refunds = (await db.execute(
        select(BalanceHistoryEntry).where(
            BalanceHistoryEntry.customer_id == customer.id,
            BalanceHistoryEntry.entry_type == "refund",
        )
    )).scalars().all()
    assert len(refunds) == 1
    assert refunds[0].amount == Decimal("10.00")
    assert refunds[0].meta["order_id"] == tx.order_id

    await db.refresh(customer)
    assert customer.current_balance == Decimal("20.00")
    assert len(notifier.sent) == 1
    assert notifier.sent[0]["email"] == "ana@example.com"


@pytest.mark.asyncio
async def test_refund_requires_reason_and_refundable_status(db, workflow, org, product):
    tx = await workflow.checkout(org, product, phone_number="+5215500000001", payment_type="gateway")
    with pytest.raises(ValidationError):
        await workflow.refund(tx, reason="  ")
    with pytest.raises(InvalidTransitionError):
        await workflow.refund(tx, reason="Not paid yet")


@pytest.mark.asyncio
async def test_gateway_refund_becomes_store_credit(db, workflow, org, product):
    tx = await workflow.checkout(org, product, phone_number="+5215599999999", payment_type="gateway")
    await workflow.payment_succeeded(tx.order_id, payment_id="pi_123")
    tx = await workflow.refund(tx, reason="Wrong number")

    customer = (await db.execute(
        select(Customer).where(Customer.phone_number == "+5215599999999")
    )).scalar_one()
    assert tx.customer_id == customer.id
    assert customer.current_balance == Decimal("10.00")


@pytest.mark.asyncio
async def test_refunded_is_terminal(db, workflow, org, product):
    tx = await _failed_admin_topup(workflow, org, product, workflow.topup_client)
    tx = await workflow.transition(tx, "refunded", reason="Provider outage", actor="user-1")
    assert tx.status == "refunded"

    for target in ("pending", "processing", "failed", "completed"):
        with pytest.raises(InvalidTransitionError):
            await workflow.transition(tx, target, reason="override")


@pytest.mark.asyncio
async def test_admin_override_needs_reason_for_failed(db, workflow, org, product):
    tx = await workflow.checkout(org, product, phone_number="+5215500000001", payment_type="gateway")
    with pytest.raises(ValidationError):
        await workflow.transition(tx, "failed")
    tx = await workflow.transition(tx, "failed", reason="Fraud check", actor="user-1")
    assert tx.status == "failed"
    assert tx.failed_at is not None


@pytest.mark.asyncio
async def test_retry_success_uses_suffixed_reference(db, workflow, org, product, topup):
    tx = await _failed_admin_topup(workflow, org, product, topup)
    assert parse_transaction_meta(tx.meta).failure_reason == "Out of stock"

    outcome = await workflow.retry(tx, actor="user-1")
    assert outcome.success is True
    assert outcome.transaction.status == "completed"
    assert topup.calls[-1]["distributor_ref"] == f"{tx.order_id}-R1"

    meta = parse_transaction_meta(outcome.transaction.meta)
    assert meta.retry_count == 1
    assert meta.retried_by == "user-1"
    assert meta.failure_reason is None


@pytest.mark.asyncio
async def test_retry_failure_keeps_transaction_failed(db, workflow, org, product, topup):
    tx = await _failed_admin_topup(workflow, org, product, topup)
    topup.results.append(UpstreamProviderError("provider timeout", provider="dingconnect"))

    outcome = await workflow.retry(tx)
    assert outcome.success is False
    assert outcome.error == "provider timeout"
    assert outcome.transaction.status == "failed"
    assert parse_transaction_meta(outcome.transaction.meta).retry_count == 1

    outcome = await workflow.retry(outcome.transaction)
    assert outcome.success is True
    assert topup.calls[-1]["distributor_ref"] == f"{tx.order_id}-R2"


@pytest.mark.asyncio
async def test_retry_only_for_failed(db, workflow, org, product):
    tx = await workflow.checkout(org, product, phone_number="+5215500000001", payment_type="gateway")
    with pytest.raises(InvalidTransitionError):
        await workflow.retry(tx)


@pytest.mark.asyncio
async def test_provider_report_completes_pending_transaction(db, workflow, org, product):
    tx = await workflow.checkout(org, product, phone_number="+5215500000001", payment_type="gateway")

    outcome = await workflow.provider_report(status="Completed", provider_transaction_id="DING-1",
                                             order_id=tx.order_id)
    assert outcome.changed is True
    assert outcome.transaction.status == "completed"
    assert outcome.transaction.processing_at is not None
    assert outcome.transaction.provider_transaction_id == "DING-1"

    again = await workflow.provider_report(status="Failed", provider_transaction_id="DING-1")
    assert again.changed is False
    assert again.transaction.status == "completed"

    with pytest.raises(InvalidTransitionError):
        await workflow.transition(outcome.transaction, "pending")


@pytest.mark.asyncio
async def test_payment_failed_marks_pending_failed(db, workflow, org, product):
    tx = await workflow.checkout(org, product, phone_number="+5215500000001", payment_type="gateway")
    outcome = await workflow.payment_failed(tx.order_id, reason="Card declined")
    assert outcome.transaction.status == "failed"

    repeat = await workflow.payment_failed(tx.order_id, reason="Card declined")
    assert repeat.changed is False


@pytest.mark.asyncio
async def test_fulfil_failure_auto_refunds_when_enabled(db, workflow, org, product, customer, topup):
    workflow.settings.auto_refund_failed_topups = True
    await LedgerService(db).assign(customer.id, Decimal("10"))
    tx = await workflow.checkout(org, product, phone_number=customer.phone_number,
                                 payment_type="balance", customer_id=customer.id)
    topup.results.append(TransferResult(transfer_id=None, status="Failed", error_message="Invalid number"))

    tx = await workflow.fulfil(tx)
    assert tx.status == "refunded"
    await db.refresh(customer)
    assert customer.current_balance == Decimal("10.00")


@pytest.mark.asyncio
async def test_unexpected_fulfil_error_marks_transaction_failed(db, workflow, org, product, customer, topup):
    await LedgerService(db).assign(customer.id, Decimal("10"))
    tx = await workflow.checkout(org, product, phone_number=customer.phone_number,
                                 payment_type="balance", customer_id=customer.id)
    topup.results.append(ValueError("Expecting value: line 1 column 1"))

    tx = await workflow.fulfil(tx)
    assert tx.status == "failed"
    assert tx.failed_at is not None
    assert "Unexpected error" in parse_transaction_meta(tx.meta).failure_reason

    # The debit stays until the failed order is refunded
    await db.refresh(customer)
    assert customer.current_balance == Decimal("0.00")
    tx = await workflow.refund(tx, reason="Provider error")
    await db.refresh(customer)
    assert customer.current_balance == Decimal("10.00")


@pytest.mark.asyncio
async def test_unexpected_retry_error_keeps_transaction_failed(db, workflow, org, product, topup):
    tx = await _failed_admin_topup(workflow, org, product, topup)
    topup.results.append(RuntimeError("socket closed"))

    outcome = await workflow.retry(tx)
    assert outcome.success is False
    assert outcome.transaction.status == "failed"
    assert "Unexpected error" in outcome.error

    outcome = await workflow.retry(outcome.transaction)
    assert outcome.success is True
    assert topup.calls[-1]["distributor_ref"] == f"{tx.order_id}-R2"


@pytest.mark.asyncio
async def test_zero_priced_transaction_is_flagged_and_refundable(db, workflow, org, product, topup):
    quote = evaluate_price(product.cost, "MX", [], DiscountTerms(discount_type="fixed", value=Decimal("25")))
    tx = await workflow.checkout(org, product, phone_number="+5215500000009",
                                 payment_type="admin_assigned", admin_id="user-1", quote=quote)
    assert tx.amount == Decimal("0.00")
    assert parse_transaction_meta(tx.meta).needs_review is True

    topup.results.append(TransferResult(transfer_id=None, status="Failed", error_message="Out of stock"))
    tx = await workflow.fulfil(tx)
    tx = await workflow.refund(tx, reason="Provider failure")
    assert tx.status == "refunded"

    refunds = (await db.execute(
        select(BalanceHistoryEntry).where(BalanceHistoryEntry.entry_type == "refund")
    )).scalars().all()
    assert len(refunds) == 1
    assert refunds[0].amount == Decimal("0.00")
    assert refunds[0].meta["order_id"] == tx.order_id


@pytest.mark.asyncio
async def test_zero_priced_failure_auto_refunds(db, workflow, org, product, topup):
    workflow.settings.auto_refund_failed_topups = True
    quote = evaluate_price(product.cost, "MX", [], DiscountTerms(discount_type="fixed", value=Decimal("25")))
    tx = await workflow.checkout(org, product, phone_number="+5215500000009",
                                 payment_type="admin_assigned", admin_id="user-1", quote=quote)
    topup.results.append(TransferResult(transfer_id=None, status="Failed", error_message="Out of stock"))

    tx = await workflow.fulfil(tx)
    assert tx.status == "refunded"
