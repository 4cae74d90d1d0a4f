from prepaid.models.organizations import Organization
from prepaid.models.customers import Customer, BalanceHistoryEntry
from prepaid.models.transactions import Transaction
from prepaid.models.pricing import PricingRule, Discount
from prepaid.models.storefront import Product, StorefrontSettings
from prepaid.models.integrations import Integration, WebhookLog
from prepaid.models.wallets import Wallet, WalletTransaction

__all__ = [
    "Organization",
    "Customer",
    "BalanceHistoryEntry",
    "Transaction",
    "PricingRule",
    "Discount",
    "Product",
    "StorefrontSettings",
    "Integration",
    "WebhookLog",
    "Wallet",
    "WalletTransaction",
]
