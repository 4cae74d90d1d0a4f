import uuid
from datetime import datetime
from decimal import Decimal

from prepaid.db.base import Base
from sqlalchemy import String, DateTime, Numeric, JSON, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column

TRANSACTION_STATUSES = ("pending", "paid", "processing", "completed", "failed", "refunded")
PAYMENT_TYPES = ("balance", "gateway", "admin_assigned")


class Transaction(Base):
    __tablename__ = "transactions"
    __table_args__ = (
        Index("ix_transactions_org_status", "org_id", "status"),
        Index("ix_transactions_org_created", "org_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    order_id: Mapped[str] = mapped_column(String(64), unique=True, index=True, nullable=False)
    org_id: Mapped[str] = mapped_column(String(64), ForeignKey("organizations.id"), nullable=False)
    customer_id: Mapped[str | None] = mapped_column(String(64), index=True, nullable=True)

    product_sku: Mapped[str] = mapped_column(String(128), nullable=False)
    product_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Charged price; cost and markup are the quote that produced it
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    cost: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)
    markup: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)
    discount_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)
    currency: Mapped[str] = mapped_column(String(8), default="USD", nullable=False)

    status: Mapped[str] = mapped_column(String(16), default="pending", index=True, nullable=False)
    payment_type: Mapped[str] = mapped_column(String(16), nullable=False)  # balance, gateway, admin_assigned
    payment_gateway: Mapped[str | None] = mapped_column(String(32), nullable=True)  # stripe, paypal, pgpay
    payment_id: Mapped[str | None] = mapped_column(String(128), index=True, nullable=True)

    provider: Mapped[str] = mapped_column(String(32), default="dingconnect", nullable=False)
    provider_transaction_id: Mapped[str | None] = mapped_column(String(128), index=True, nullable=True)

    recipient_phone: Mapped[str] = mapped_column(String(32), nullable=False)
    recipient_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    recipient_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    operator_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    operator_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    operator_country: Mapped[str] = mapped_column(String(2), nullable=False)

    # Validated by prepaid.schemas.metadata.TransactionMeta
    meta: Mapped[dict] = mapped_column("metadata", JSON, nullable=False, default=dict)

    # Timeline
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    processing_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow,
                                                 nullable=False)
