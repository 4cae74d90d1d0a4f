import uuid
from datetime import datetime
from decimal import Decimal

from prepaid.db.base import Base
from sqlalchemy import String, DateTime, Numeric, Boolean, JSON, ForeignKey, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column


class Product(Base):
    __tablename__ = "products"
    __table_args__ = (
        UniqueConstraint("org_id", "sku_code", name="uq_products_org_sku"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    org_id: Mapped[str] = mapped_column(String(64), ForeignKey("organizations.id"), index=True, nullable=False)
    sku_code: Mapped[str] = mapped_column(String(128), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    provider: Mapped[str] = mapped_column(String(32), default="dingconnect", nullable=False)
    operator_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    operator_name: Mapped[str] = mapped_column(String(255), nullable=False)
    country: Mapped[str] = mapped_column(String(2), index=True, nullable=False)

    cost: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)  # provider cost
    send_value: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    currency: Mapped[str] = mapped_column(String(8), default="USD", nullable=False)
    is_variable_value: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)


class StorefrontSettings(Base):
    __tablename__ = "storefront_settings"

    org_id: Mapped[str] = mapped_column(String(64), ForeignKey("organizations.id"), primary_key=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Country availability
    enabled_countries: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    disabled_countries: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    all_countries_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Automatic discount
    discount_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    discount_type: Mapped[str] = mapped_column(String(16), default="percentage", nullable=False)
    discount_value: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)
    discount_min_purchase: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    discount_start: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    discount_end: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    discount_countries: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    discount_description: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Branding
    business_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    support_email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow,
                                                 nullable=False)
