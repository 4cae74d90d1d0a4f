from __future__ import annotations

from enum import Enum
from typing import Iterable


class Role(str, Enum):
    ADMIN = "admin"
    OPERATOR = "operator"
    VIEWER = "viewer"


class Permission(str, Enum):
    VIEW_CUSTOMERS = "view_customers"
    EDIT_CUSTOMERS = "edit_customers"
    ASSIGN_CUSTOMER_BALANCE = "assign_customer_balance"
    ADJUST_CUSTOMER_BALANCE = "adjust_customer_balance"

    VIEW_TRANSACTIONS = "view_transactions"
    PROCESS_TRANSACTIONS = "process_transactions"
    UPDATE_TRANSACTION_STATUS = "update_transaction_status"
    REFUND_TRANSACTIONS = "refund_transactions"

    VIEW_PRICING = "view_pricing"
    MANAGE_PRICING = "manage_pricing"

    VIEW_INTEGRATIONS = "view_integrations"
    MANAGE_INTEGRATIONS = "manage_integrations"

    VIEW_WEBHOOK_LOGS = "view_webhook_logs"
    REPLAY_WEBHOOKS = "replay_webhooks"

    MANAGE_BILLING = "manage_billing"

    VIEW_WALLET = "view_wallet"
    MANAGE_WALLET = "manage_wallet"

    VIEW_STOREFRONT_SETTINGS = "view_storefront_settings"
    MANAGE_STOREFRONT = "manage_storefront"


_VIEW_PERMISSIONS = [
    Permission.VIEW_CUSTOMERS,
    Permission.VIEW_TRANSACTIONS,
    Permission.VIEW_PRICING,
    Permission.VIEW_INTEGRATIONS,
    Permission.VIEW_WEBHOOK_LOGS,
    Permission.VIEW_WALLET,
    Permission.VIEW_STOREFRONT_SETTINGS,
]

ROLE_PERMISSIONS: dict[Role, frozenset[Permission]] = {
    Role.ADMIN: frozenset(Permission),
    Role.OPERATOR: frozenset(_VIEW_PERMISSIONS + [
        Permission.PROCESS_TRANSACTIONS,
        Permission.UPDATE_TRANSACTION_STATUS,
        Permission.EDIT_CUSTOMERS,
    ]),
    Role.VIEWER: frozenset(_VIEW_PERMISSIONS),
}


def _known_roles(roles: Iterable[str]) -> list[Role]:
    out = []
    for r in roles:
        try:
            out.append(Role(r))
        except ValueError:
            continue
    return out


def has_permission(roles: Iterable[str], permission: Permission) -> bool:
    return any(permission in ROLE_PERMISSIONS[r] for r in _known_roles(roles))


def user_permissions(roles: Iterable[str]) -> set[Permission]:
    perms: set[Permission] = set()
    for r in _known_roles(roles):
        perms |= ROLE_PERMISSIONS[r]
    return perms


def is_admin(roles: Iterable[str]) -> bool:
    return Role.ADMIN in _known_roles(roles)
