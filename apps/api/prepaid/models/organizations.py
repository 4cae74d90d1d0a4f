import uuid
from datetime import datetime
from decimal import Decimal

from prepaid.db.base import Base
from sqlalchemy import String, DateTime, Integer, Numeric
from sqlalchemy.orm import Mapped, mapped_column


class Organization(Base):
    __tablename__ = "organizations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(128), unique=True, index=True, nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    currency: Mapped[str] = mapped_column(String(8), default="USD", nullable=False)

    # Subscription
    tier: Mapped[str] = mapped_column(String(32), default="starter", nullable=False)  # starter, growth, scale, enterprise
    subscription_status: Mapped[str] = mapped_column(String(32), default="active",
                                                     nullable=False)  # active, trialing, past_due, canceled
    stripe_customer_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    stripe_subscription_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Usage counters, reset monthly
    transactions_this_month: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    transaction_fees_this_month: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)
    revenue_this_month: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"), nullable=False)
    last_usage_reset: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow,
                                                 nullable=False)
