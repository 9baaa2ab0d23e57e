from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from courier.core.config import get_settings


def engine_kwargs(database_url: str) -> dict[str, Any]:
    settings = get_settings()
    kwargs: dict[str, Any] = {"pool_pre_ping": True}
    if database_url.startswith("sqlite"):
        # Let concurrent writers wait on the file lock instead of failing immediately.
        kwargs["connect_args"] = {"timeout": float(settings.db_sqlite_busy_timeout_s)}
        return kwargs
    # Configure bounded asyncpg pools for predictable latency across many workers.
    kwargs["pool_size"] = max(1, int(settings.db_pool_size))
    kwargs["max_overflow"] = max(0, int(settings.db_max_overflow))
    kwargs["pool_timeout"] = 30
    kwargs["pool_recycle"] = 1800
    if settings.db_statement_timeout_ms > 0:
        kwargs["connect_args"] = {
            "server_settings": {"statement_timeout": str(int(settings.db_statement_timeout_ms))}
        }
    return kwargs


def create_engine(database_url: str | None = None) -> AsyncEngine:
    url = database_url or get_settings().database_url
    return create_async_engine(url, **engine_kwargs(url))


def create_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Keep loaded rows usable after commit; transitions re-read state explicitly.
    return async_sessionmaker(bind, expire_on_commit=False)


engine = create_engine()
SessionLocal = create_session_factory(engine)


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    async with SessionLocal() as session:
        yield session


def is_postgres(session: AsyncSession) -> bool:
    bind = session.get_bind()
    return bind.dialect.name == "postgresql"
