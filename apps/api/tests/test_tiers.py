from decimal import Decimal

import pytest

from prepaid.core import tiers
from prepaid.core.permissions import Permission, has_permission, is_admin, user_permissions


def test_tier_order_and_next_tier():
    assert tiers.TIER_ORDER == ["starter", "growth", "scale", "enterprise"]
    assert tiers.get_next_tier("starter") == "growth"
    assert tiers.get_next_tier("scale") == "enterprise"
    assert tiers.get_next_tier("enterprise") is None
    assert tiers.get_next_tier("platinum") is None


def test_transaction_fee_follows_tier_percentage():
    assert tiers.calculate_transaction_fee("starter", Decimal("100")) == Decimal("4.00")
    assert tiers.calculate_transaction_fee("growth", Decimal("100")) == Decimal("2.00")
    assert tiers.calculate_transaction_fee("enterprise", Decimal("10.00")) == Decimal("0.05")


def test_check_limit_counts_down_and_blocks_at_limit():
    ok = tiers.check_limit("starter", "max_transactions_per_month", 150)
    assert ok == {"allowed": True, "limit": 200, "remaining": 50}

    blocked = tiers.check_limit("starter", "max_transactions_per_month", 200)
    assert blocked["allowed"] is False
    assert blocked["remaining"] == 0


def test_unlimited_tiers_never_block():
    result = tiers.check_limit("scale", "max_transactions_per_month", 10_000_000)
    assert result == {"allowed": True, "limit": "unlimited", "remaining": "unlimited"}
    assert tiers.is_approaching_limit("scale", "max_transactions_per_month", 10_000_000) is False


def test_approaching_limit_threshold():
    assert tiers.is_approaching_limit("starter", "max_transactions_per_month", 159) is False
    assert tiers.is_approaching_limit("starter", "max_transactions_per_month", 160) is True


def test_feature_access_accepts_partial_labels():
    assert tiers.can_access_feature("starter", "api_access") is False
    assert tiers.can_access_feature("growth", "white_label") is True  # "partial"
    assert tiers.can_access_feature("growth", "custom_domain") is False
    assert tiers.can_access_feature("scale", "webhooks") is True  # "advanced"
    assert tiers.can_access_feature("enterprise", "no_such_feature") is False


def test_unknown_tier_and_limit_type_raise():
    with pytest.raises(ValueError):
        tiers.get_tier_info("platinum")
    with pytest.raises(ValueError):
        tiers.check_limit("starter", "max_widgets", 1)


def test_tier_info_serializes_decimals():
    data = tiers.get_tier_info("growth").to_dict()
    assert data["name"] == "Business"
    assert data["features"]["transaction_fee_percentage"] == 2.0
    assert data["features"]["monthly_fee"] == 149.0
    assert len(tiers.all_tiers()) == 4


def test_role_permissions():
    assert has_permission(["admin"], Permission.REFUND_TRANSACTIONS)
    assert has_permission(["operator"], Permission.UPDATE_TRANSACTION_STATUS)
    assert not has_permission(["operator"], Permission.REFUND_TRANSACTIONS)
    assert not has_permission(["viewer"], Permission.EDIT_CUSTOMERS)
    assert not has_permission(["unknown-role"], Permission.VIEW_CUSTOMERS)
    assert Permission.MANAGE_BILLING in user_permissions(["viewer", "admin"])
    assert is_admin(["viewer", "admin"])
    assert not is_admin(["operator"])
