import uuid
from datetime import datetime
from decimal import Decimal

from prepaid.db.base import Base
from sqlalchemy import String, DateTime, Integer, Numeric, Boolean, Text, JSON, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column

WALLET_STATUSES = ("active", "suspended", "frozen")
WALLET_TRANSACTION_TYPES = ("deposit", "withdrawal", "purchase", "refund", "fee", "adjustment")
WALLET_TRANSACTION_STATUSES = ("pending", "completed", "failed", "reversed")
REFERENCE_TYPES = ("order", "payment", "manual", "system")
PAYMENT_PROVIDERS = ("stripe", "paypal", "pgpay", "bank_transfer", "manual")


class Wallet(Base):
    """Organization funds used to pay the top-up provider. One per org."""

    __tablename__ = "wallets"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    org_id: Mapped[str] = mapped_column(String(64), ForeignKey("organizations.id"), unique=True, nullable=False)

    balance: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)
    reserved_balance: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)
    currency: Mapped[str] = mapped_column(String(8), default="USD", nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="active", nullable=False)  # active, suspended, frozen

    low_balance_threshold: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("100"), nullable=False)
    auto_reload_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    auto_reload_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)

    total_deposits: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)
    total_withdrawals: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)
    total_spent: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)
    last_deposit_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_transaction_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    version_id: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow,
                                                 nullable=False)

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def available_balance(self) -> Decimal:
        return Decimal(self.balance or 0) - Decimal(self.reserved_balance or 0)

    @property
    def is_low(self) -> bool:
        return self.available_balance < Decimal(self.low_balance_threshold or 0)


class WalletTransaction(Base):
    """Append-only wallet movement. ``balance_after == balance_before + amount``."""

    __tablename__ = "wallet_transactions"
    __table_args__ = (
        Index("ix_wallet_transactions_org_created", "org_id", "created_at"),
        Index("ix_wallet_transactions_wallet_type", "wallet_id", "type"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    org_id: Mapped[str] = mapped_column(String(64), nullable=False)
    wallet_id: Mapped[str] = mapped_column(String(64), ForeignKey("wallets.id"), nullable=False)

    tx_type: Mapped[str] = mapped_column("type", String(16), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)  # signed
    currency: Mapped[str] = mapped_column(String(8), default="USD", nullable=False)
    balance_before: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    balance_after: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="completed", index=True, nullable=False)

    reference_type: Mapped[str] = mapped_column(String(16), default="manual", nullable=False)
    reference_id: Mapped[str | None] = mapped_column(String(128), index=True, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    payment_provider: Mapped[str | None] = mapped_column(String(32), nullable=True)
    payment_transaction_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    meta: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(128), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
