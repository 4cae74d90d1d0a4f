import uuid
from datetime import datetime

from prepaid.db.base import Base
from sqlalchemy import String, DateTime, Integer, Text, Boolean, JSON, Index, text
from sqlalchemy.orm import Mapped, mapped_column

TOPUP_PROVIDERS = ("dingconnect", "reloadly")
EMAIL_PROVIDERS = ("zeptomail", "mailgun", "sendgrid", "mailchimp")
INTEGRATION_PROVIDERS = TOPUP_PROVIDERS + EMAIL_PROVIDERS


class Integration(Base):
    __tablename__ = "integrations"
    __table_args__ = (
        # At most one primary email integration per organization
        Index(
            "uq_integrations_primary_email",
            "org_id",
            unique=True,
            postgresql_where=text("is_primary_email"),
            sqlite_where=text("is_primary_email = 1"),
        ),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    org_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="active", nullable=False)  # active, inactive, error
    environment: Mapped[str] = mapped_column(String(16), default="production", nullable=False)  # sandbox, production
    is_primary_email: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    credentials: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow,
                                                 nullable=False)


class WebhookLog(Base):
    __tablename__ = "webhook_logs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    org_id: Mapped[str | None] = mapped_column(String(64), index=True, nullable=True)
    source: Mapped[str] = mapped_column(String(32), nullable=False)  # stripe, dingconnect, reloadly, other
    event: Mapped[str] = mapped_column(String(128), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="pending", nullable=False)  # pending, success, failed
    response_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    transaction_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
