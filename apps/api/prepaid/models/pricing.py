import uuid
from datetime import datetime
from decimal import Decimal

from prepaid.db.base import Base
from sqlalchemy import String, DateTime, Integer, Numeric, Text, Boolean, JSON, Index
from sqlalchemy.orm import Mapped, mapped_column


class PricingRule(Base):
    __tablename__ = "pricing_rules"
    __table_args__ = (
        Index("ix_pricing_rules_org_active_priority", "org_id", "is_active", "priority"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    org_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Both may be set; they add up
    percentage_markup: Mapped[Decimal | None] = mapped_column(Numeric(7, 3), nullable=True)
    fixed_markup: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)

    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    applicable_countries: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    applicable_regions: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    excluded_countries: Mapped[list] = mapped_column(JSON, default=list, nullable=False)

    min_transaction_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    max_transaction_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow,
                                                 nullable=False)


class Discount(Base):
    __tablename__ = "discounts"
    __table_args__ = (
        Index("uq_discounts_org_code", "org_id", "code", unique=True),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    org_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    code: Mapped[str | None] = mapped_column(String(64), nullable=True)  # stored upper-case

    discount_type: Mapped[str] = mapped_column(String(16), default="percentage", nullable=False)  # percentage, fixed
    value: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    start_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    end_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    min_purchase_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    max_discount_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    applicable_countries: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    applicable_products: Mapped[list] = mapped_column(JSON, default=list, nullable=False)  # sku codes

    usage_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    usage_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow,
                                                 nullable=False)
