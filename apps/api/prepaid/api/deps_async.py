from __future__ import annotations

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from prepaid.core.config import Settings
from prepaid.db.async_session import get_async_db as get_db_async  # re-export for clarity
from prepaid.services.notifications import Notifier
from prepaid.services.providers.topup_client import TopupProviderClient
from prepaid.services.transaction_workflow import TransactionWorkflow


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_topup_client(request: Request) -> TopupProviderClient:
    return request.app.state.topup_client


def get_notifier(request: Request) -> Notifier:
    return request.app.state.notifier


def get_workflow(
    db: AsyncSession = Depends(get_db_async),
    settings: Settings = Depends(get_settings),
    topup_client: TopupProviderClient = Depends(get_topup_client),
    notifier: Notifier = Depends(get_notifier),
) -> TransactionWorkflow:
    return TransactionWorkflow(db, settings=settings, topup_client=topup_client, notifier=notifier)


__all__ = [
    "get_db_async",
    "get_settings",
    "get_topup_client",
    "get_notifier",
    "get_workflow",
]
