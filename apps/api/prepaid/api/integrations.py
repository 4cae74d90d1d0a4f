from datetime import datetime
from typing import Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from prepaid.api.auth import CurrentUser, require_permission
from prepaid.api.deps_async import get_db_async
from prepaid.core.permissions import Permission
from prepaid.models.integrations import Integration
from prepaid.services.integrations_service import IntegrationsService

router = APIRouter(prefix="/api/v1/integrations", tags=["integrations"])


class IntegrationOut(BaseModel):
    id: str
    provider: str
    status: str
    environment: str
    is_primary_email: bool
    credentials: dict[str, str] = {}
    created_at: datetime


class IntegrationCreate(BaseModel):
    provider: str
    environment: Literal["sandbox", "production"] = "production"
    credentials: dict[str, str] = Field(default_factory=dict)
    is_primary_email: bool = False


class PrimaryEmailIn(BaseModel):
    is_primary_email: bool


def _mask(value: Optional[str]) -> str:
    if not value:
        return ""
    return "****" + value[-4:] if len(value) > 8 else "****"


def _out(integration: Integration) -> IntegrationOut:
    return IntegrationOut(
        id=integration.id,
        provider=integration.provider,
        status=integration.status,
        environment=integration.environment,
        is_primary_email=integration.is_primary_email,
        credentials={k: _mask(str(v)) for k, v in (integration.credentials or {}).items()},
        created_at=integration.created_at,
    )


@router.get("", response_model=list[IntegrationOut])
async def list_integrations(
    db: AsyncSession = Depends(get_db_async),
    current_user: CurrentUser = Depends(require_permission(Permission.VIEW_INTEGRATIONS)),
):
    rows = await IntegrationsService(db).list(current_user.org_id)
    return [_out(r) for r in rows]


@router.post("", response_model=IntegrationOut, status_code=201)
async def create_integration(
    body: IntegrationCreate,
    db: AsyncSession = Depends(get_db_async),
    current_user: CurrentUser = Depends(require_permission(Permission.MANAGE_INTEGRATIONS)),
):
    integration = await IntegrationsService(db).create(
        current_user.org_id,
        provider=body.provider,
        environment=body.environment,
        credentials=body.credentials,
        is_primary_email=body.is_primary_email,
    )
    return _out(integration)


@router.patch("/{integration_id}/primary", response_model=IntegrationOut)
async def set_primary_email(
    integration_id: str,
    body: PrimaryEmailIn,
    db: AsyncSession = Depends(get_db_async),
    current_user: CurrentUser = Depends(require_permission(Permission.MANAGE_INTEGRATIONS)),
):
    integration = await IntegrationsService(db).set_primary_email(
        current_user.org_id, integration_id, body.is_primary_email)
    return _out(integration)
