from decimal import Decimal

import pytest
from sqlalchemy.orm.exc import StaleDataError

from prepaid.core.exceptions import (
    ForbiddenError,
    InsufficientBalanceError,
    NotFoundError,
    ValidationError,
)
from prepaid.models.customers import Customer
from prepaid.services.ledger_service import LedgerService


@pytest.mark.asyncio
async def test_assign_then_withdraw(db, customer):
    ledger = LedgerService(db)
    await ledger.assign(customer.id, Decimal("50"), actor="admin-1")
    result = await ledger.withdraw(customer.id, Decimal("20"))

    assert result.balance == Decimal("30.00")
    assert result.entry.entry_type == "usage"
    assert result.entry.amount == Decimal("-20.00")
    assert result.entry.previous_balance == Decimal("50.00")
    assert result.entry.new_balance == Decimal("30.00")

    await db.refresh(customer)
    assert customer.total_assigned == Decimal("50.00")
    assert customer.total_used == Decimal("20.00")

    history = await ledger.list_history(customer)
    assert sorted(e.entry_type for e in history) == ["assignment", "usage"]


@pytest.mark.asyncio
async def test_insufficient_balance_leaves_balance_untouched(db, customer):
    ledger = LedgerService(db)
    await ledger.assign(customer.id, Decimal("10"))

    with pytest.raises(InsufficientBalanceError) as exc:
        await ledger.withdraw(customer.id, Decimal("10.01"))
    assert exc.value.available == Decimal("10.00")
    await db.rollback()

    refreshed = await db.get(Customer, customer.id, populate_existing=True)
    assert refreshed.current_balance == Decimal("10.00")
    assert len(await ledger.list_history(refreshed)) == 1


@pytest.mark.asyncio
async def test_amounts_must_be_positive(db, customer):
    ledger = LedgerService(db)
    with pytest.raises(ValidationError):
        await ledger.assign(customer.id, Decimal("0"))
    with pytest.raises(ValidationError):
        await ledger.withdraw(customer.id, Decimal("-5"))
    with pytest.raises(ValidationError):
        await ledger.adjust(customer.id, Decimal("0"))


@pytest.mark.asyncio
async def test_reset_and_adjust_record_signed_deltas(db, customer):
    ledger = LedgerService(db)
    await ledger.assign(customer.id, Decimal("40"))

    reset = await ledger.reset(customer.id, Decimal("15"), "Monthly reset")
    assert reset.entry.amount == Decimal("-25.00")
    assert reset.balance == Decimal("15.00")

    up = await ledger.adjust(customer.id, Decimal("5.50"))
    assert up.balance == Decimal("20.50")
    down = await ledger.adjust(customer.id, Decimal("-0.50"))
    assert down.entry.amount == Decimal("-0.50")
    assert down.balance == Decimal("20.00")

    with pytest.raises(ValidationError):
        await ledger.adjust(customer.id, Decimal("-25"))
    with pytest.raises(ValidationError):
        await ledger.reset(customer.id, Decimal("-1"))


@pytest.mark.asyncio
async def test_refund_credits_without_touching_totals(db, customer):
    ledger = LedgerService(db)
    await ledger.assign(customer.id, Decimal("30"))
    await ledger.withdraw(customer.id, Decimal("12"))
    result = await ledger.refund(customer.id, Decimal("12"), "Refund ORD-1")

    assert result.balance == Decimal("30.00")
    assert result.entry.entry_type == "refund"
    assert result.customer.total_assigned == Decimal("30.00")
    assert result.customer.total_used == Decimal("12.00")


@pytest.mark.asyncio
async def test_history_sums_to_balance(db, customer):
    ledger = LedgerService(db)
    await ledger.assign(customer.id, Decimal("25"))
    await ledger.withdraw(customer.id, Decimal("7.25"))
    await ledger.adjust(customer.id, Decimal("2"))
    await ledger.reset(customer.id, Decimal("100"))
    await ledger.withdraw(customer.id, Decimal("0.99"))

    check = await ledger.verify_ledger(customer)
    assert check.ok
    assert check.entries == 5
    assert check.balance == Decimal("99.01")
    assert check.entries_sum == check.balance
    assert check.broken_entry_ids == []


@pytest.mark.asyncio
async def test_history_filter_by_type(db, customer):
    ledger = LedgerService(db)
    await ledger.assign(customer.id, Decimal("5"))
    await ledger.assign(customer.id, Decimal("5"))
    await ledger.withdraw(customer.id, Decimal("1"))

    assignments = await ledger.list_history(customer, entry_type="assignment")
    assert len(assignments) == 2
    with pytest.raises(ValidationError):
        await ledger.list_history(customer, entry_type="bonus")


@pytest.mark.asyncio
async def test_customer_scope_is_enforced(db, customer):
    ledger = LedgerService(db)
    with pytest.raises(ForbiddenError):
        await ledger.assign(customer.id, Decimal("5"), org_id="another-org")
    with pytest.raises(NotFoundError):
        await ledger.assign("missing", Decimal("5"))


@pytest.mark.asyncio
async def test_admin_metadata_is_stored(db, customer):
    ledger = LedgerService(db)
    result = await ledger.assign(customer.id, Decimal("5"), "Promo",
                                 meta={"kind": "admin", "admin_id": "user-1", "notes": "welcome credit"})
    assert result.entry.meta["kind"] == "admin"
    assert result.entry.meta["admin_id"] == "user-1"
    assert result.entry.created_by is None


@pytest.mark.asyncio
async def test_zero_refund_is_recorded_and_negative_rejected(db, customer):
    ledger = LedgerService(db)
    await ledger.assign(customer.id, Decimal("5"))
    result = await ledger.refund(customer.id, Decimal("0"), "Refund ORD-0")

    assert result.balance == Decimal("5.00")
    assert result.entry.entry_type == "refund"
    assert result.entry.amount == Decimal("0.00")

    with pytest.raises(ValidationError):
        await ledger.refund(customer.id, Decimal("-1"))


@pytest.mark.asyncio
async def test_concurrent_write_raises_stale_data(app, customer):
    async with app.state.session_factory() as first, app.state.session_factory() as second:
        stale = await second.get(Customer, customer.id)
        await LedgerService(first).assign(customer.id, Decimal("10"))

        stale.name = "Ana Maria"
        with pytest.raises(StaleDataError):
            await second.commit()
        await second.rollback()

        fresh = await second.get(Customer, customer.id)
        assert fresh.balance == Decimal("10.00")
        assert fresh.name == "Ana"
