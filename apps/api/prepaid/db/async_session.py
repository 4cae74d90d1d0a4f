from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from prepaid.core.config import Settings


def _to_async_url(url: str) -> str:
    """Convert a sync SQLAlchemy URL to an async one for Postgres/SQLite.

    - postgresql[+psycopg2]:// -> postgresql+asyncpg://
    - sqlite:/// -> sqlite+aiosqlite:///
    - otherwise: returned unchanged (caller must ensure compatibility)
    """
    if not url:
        return url
    if url.startswith("postgresql+psycopg2://"):
        return "postgresql+asyncpg://" + url[len("postgresql+psycopg2://"):]
    if url.startswith("postgresql://"):
        return "postgresql+asyncpg://" + url[len("postgresql://"):]
    if url.startswith("sqlite:///"):
        return "sqlite+aiosqlite:///" + url[len("sqlite:///"):]
    return url


def create_engine_from_settings(settings: Settings) -> AsyncEngine:
    url = _to_async_url(settings.database_url)
    if url.startswith("postgresql+asyncpg://"):
        # PgBouncer (transaction/statement mode) breaks server-side prepared statements.
        return create_async_engine(
            url,
            pool_pre_ping=True,
            connect_args={"prepared_statement_cache_size": 0, "statement_cache_size": 0},
        )
    return create_async_engine(url)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def get_async_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency that yields an AsyncSession from the app's session factory.

    Usage:
        async def route(db: AsyncSession = Depends(get_async_db)):
            ...
    """
    session_factory: async_sessionmaker[AsyncSession] = request.app.state.session_factory
    async with session_factory() as session:
        yield session
