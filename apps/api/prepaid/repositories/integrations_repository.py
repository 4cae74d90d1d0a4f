from __future__ import annotations

from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from prepaid.models.integrations import Integration, WebhookLog, EMAIL_PROVIDERS


class IntegrationsRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, integration_id: str) -> Optional[Integration]:
        result = await self.db.execute(select(Integration).where(Integration.id == integration_id))
        return result.scalar_one_or_none()

    async def list(self, org_id: str) -> Sequence[Integration]:
        result = await self.db.execute(
            select(Integration).where(Integration.org_id == org_id).order_by(Integration.created_at.asc())
        )
        return result.scalars().all()

    async def primary_email_ids(self, org_id: str) -> list[str]:
        result = await self.db.execute(
            select(Integration.id).where(Integration.org_id == org_id, Integration.is_primary_email.is_(True))
        )
        return list(result.scalars().all())

    async def clear_primary_email(self, org_id: str, now: datetime) -> None:
        await self.db.execute(
            update(Integration)
            .where(
                Integration.org_id == org_id,
                Integration.provider.in_(EMAIL_PROVIDERS),
                Integration.is_primary_email.is_(True),
            )
            .values(is_primary_email=False, updated_at=now)
            .execution_options(synchronize_session=False)
        )

    async def set_primary_flag(self, integration_id: str, flag: bool, now: datetime) -> int:
        result = await self.db.execute(
            update(Integration)
            .where(Integration.id == integration_id)
            .values(is_primary_email=flag, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def insert(self, integration: Integration) -> Integration:
        self.db.add(integration)
        await self.db.flush()
        return integration

    async def insert_webhook_log(self, log: WebhookLog) -> WebhookLog:
        self.db.add(log)
        await self.db.flush()
        return log

    async def get_webhook_log(self, log_id: str) -> Optional[WebhookLog]:
        return await self.db.get(WebhookLog, log_id)

    async def list_webhook_logs(self, org_id: str, *, source: str | None = None, status: str | None = None,
                                limit: int = 50) -> Sequence[WebhookLog]:
        stmt = select(WebhookLog).where(WebhookLog.org_id == org_id)
        if source:
            stmt = stmt.where(WebhookLog.source == source)
        if status:
            stmt = stmt.where(WebhookLog.status == status)
        stmt = stmt.order_by(WebhookLog.created_at.desc()).limit(limit)
        result = await self.db.execute(stmt)
        return result.scalars().all()
