import uuid
from datetime import datetime
from decimal import Decimal

from prepaid.db.base import Base
from sqlalchemy import String, DateTime, Integer, Numeric, Text, JSON, ForeignKey, UniqueConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column


class Customer(Base):
    __tablename__ = "customers"
    __table_args__ = (
        UniqueConstraint("org_id", "phone_number", name="uq_customers_org_phone"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    org_id: Mapped[str] = mapped_column(String(64), ForeignKey("organizations.id"), index=True, nullable=False)

    phone_number: Mapped[str] = mapped_column(String(32), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    country: Mapped[str | None] = mapped_column(String(2), nullable=True)

    # Prepaid balance; only written by the ledger service
    current_balance: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)
    balance_currency: Mapped[str] = mapped_column(String(8), default="USD", nullable=False)
    total_assigned: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)
    total_used: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)

    # Purchase stats
    total_purchases: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_spent: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)
    last_purchase_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    acquisition_source: Mapped[str | None] = mapped_column(String(64), nullable=True)

    version_id: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow,
                                                 nullable=False)

    __mapper_args__ = {"version_id_col": version_id}


class BalanceHistoryEntry(Base):
    """Append-only ledger entry. ``new_balance == previous_balance + amount``."""

    __tablename__ = "balance_history"
    __table_args__ = (
        Index("ix_balance_history_customer_created", "customer_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    org_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    customer_id: Mapped[str] = mapped_column(String(64), ForeignKey("customers.id"), nullable=False)

    entry_type: Mapped[str] = mapped_column(String(16), nullable=False)  # assignment, usage, reset, adjustment, refund
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)  # signed
    previous_balance: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    new_balance: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(8), default="USD", nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    meta: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(128), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
