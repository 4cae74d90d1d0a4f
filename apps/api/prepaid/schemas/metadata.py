"""Typed metadata stored in the JSON ``metadata`` columns.

Transactions carry a union discriminated by ``payment_type``; balance history
entries carry a union discriminated by ``kind``. Both are validated on the way
in and dumped to plain JSON for storage.
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class _TransactionMetaBase(BaseModel):
    model_config = ConfigDict(extra="forbid")

    retry_count: int = 0
    failure_reason: Optional[str] = None
    product_sku_code: Optional[str] = None
    send_value: Optional[Decimal] = None
    is_variable_value: bool = False
    retried_by: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    discount_code: Optional[str] = None
    needs_review: bool = False


class BalancePaymentMeta(_TransactionMetaBase):
    payment_type: Literal["balance"] = "balance"
    customer_id: str


class GatewayPaymentMeta(_TransactionMetaBase):
    payment_type: Literal["gateway"] = "gateway"
    gateway: str = "stripe"
    payment_id: Optional[str] = None


class AdminAssignedMeta(_TransactionMetaBase):
    payment_type: Literal["admin_assigned"] = "admin_assigned"
    admin_id: str


TransactionMeta = Annotated[
    Union[BalancePaymentMeta, GatewayPaymentMeta, AdminAssignedMeta],
    Field(discriminator="payment_type"),
]


class AdminBalanceMeta(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: Literal["admin"] = "admin"
    admin_id: str
    notes: Optional[str] = None
    expires_at: Optional[datetime] = None


class PurchaseBalanceMeta(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: Literal["purchase"] = "purchase"
    order_id: str
    transaction_id: Optional[str] = None
    phone_number: Optional[str] = None
    product_name: Optional[str] = None


class RefundBalanceMeta(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: Literal["refund"] = "refund"
    order_id: str
    transaction_id: str
    reason: str


BalanceEntryMeta = Annotated[
    Union[AdminBalanceMeta, PurchaseBalanceMeta, RefundBalanceMeta],
    Field(discriminator="kind"),
]

_transaction_meta_adapter: TypeAdapter = TypeAdapter(TransactionMeta)
_balance_meta_adapter: TypeAdapter = TypeAdapter(BalanceEntryMeta)


def parse_transaction_meta(raw: dict | BaseModel):
    if isinstance(raw, BaseModel):
        raw = raw.model_dump()
    return _transaction_meta_adapter.validate_python(raw)


def dump_transaction_meta(meta) -> dict:
    return _transaction_meta_adapter.dump_python(meta, mode="json")


def parse_balance_meta(raw: dict | BaseModel | None):
    if raw is None:
        return None
    if isinstance(raw, BaseModel):
        raw = raw.model_dump()
    return _balance_meta_adapter.validate_python(raw)


def dump_balance_meta(meta) -> dict | None:
    if meta is None:
        return None
    return _balance_meta_adapter.dump_python(meta, mode="json")
