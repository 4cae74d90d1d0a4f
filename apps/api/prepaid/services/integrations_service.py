from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from prepaid.core.exceptions import ConflictError, ForbiddenError, NotFoundError, ValidationError
from prepaid.models.integrations import Integration, EMAIL_PROVIDERS, INTEGRATION_PROVIDERS
from prepaid.repositories.integrations_repository import IntegrationsRepository

logger = logging.getLogger(__name__)


@dataclass
class SetPrimaryEmailCommand:
    """Make exactly ``primary_ids`` (zero or one id) the primary email integrations of an org."""

    org_id: str
    primary_ids: list[str] = field(default_factory=list)

    async def execute(self, repo: IntegrationsRepository) -> None:
        now = datetime.utcnow()
        # Clear first so the partial unique index never sees two primaries
        await repo.clear_primary_email(self.org_id, now)
        for integration_id in self.primary_ids:
            await repo.set_primary_flag(integration_id, True, now)

    def inverse(self, previous_ids: list[str]) -> "SetPrimaryEmailCommand":
        return SetPrimaryEmailCommand(org_id=self.org_id, primary_ids=list(previous_ids))


class IntegrationsService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.repo = IntegrationsRepository(db)

    async def get_for_org(self, integration_id: str, org_id: str) -> Integration:
        integration = await self.repo.get(integration_id)
        if integration is None:
            raise NotFoundError("Integration not found")
        if str(integration.org_id) != str(org_id):
            raise ForbiddenError("Integration belongs to a different organization")
        return integration

    async def list(self, org_id: str) -> Sequence[Integration]:
        return await self.repo.list(org_id)

    async def create(self, org_id: str, *, provider: str, environment: str = "production",
                     credentials: dict | None = None, is_primary_email: bool = False) -> Integration:
        if provider not in INTEGRATION_PROVIDERS:
            raise ValidationError(f"Unknown provider: {provider}")
        if environment not in ("sandbox", "production"):
            raise ValidationError("environment must be 'sandbox' or 'production'")
        integration = Integration(
            org_id=org_id,
            provider=provider,
            environment=environment,
            credentials=credentials or {},
            is_primary_email=False,
            created_at=datetime.utcnow(),
            updated_at=datetime.utcnow(),
        )
        await self.repo.insert(integration)
        await self.db.commit()
        if is_primary_email:
            integration = await self.set_primary_email(org_id, integration.id, True)
        return integration

    async def set_primary_email(self, org_id: str, integration_id: str, flag: bool) -> Integration:
        integration = await self.get_for_org(integration_id, org_id)
        if integration.provider not in EMAIL_PROVIDERS:
            raise ValidationError("Only email integrations can be the primary email provider")

        previous = await self.repo.primary_email_ids(org_id)
        target = [integration.id] if flag else [i for i in previous if i != integration.id]
        command = SetPrimaryEmailCommand(org_id=org_id, primary_ids=target)
        await command.execute(self.repo)
        await self.db.commit()

        persisted = await self.repo.primary_email_ids(org_id)
        if sorted(persisted) != sorted(target):
            logger.error(
                "Primary email change did not persist for org=%s (expected %s, found %s), reverting",
                org_id, target, persisted,
            )
            await command.inverse(previous).execute(self.repo)
            await self.db.commit()
            raise ConflictError("Primary email setting was not saved, previous setting restored")

        await self.db.refresh(integration)
        logger.info("Integration %s primary email set to %s for org=%s", integration.id, flag, org_id)
        return integration
