"""Database engine and session management."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from photogen.config.settings import get_settings

SQLITE_BUSY_TIMEOUT = 30.0


def build_engine(database_url: str, **kwargs) -> AsyncEngine:
    """Create an async engine, making sure the SQLite directory exists."""

    if database_url.startswith("sqlite"):
        database = make_url(database_url).database or ""
        if database and database != ":memory:":
            Path(database).parent.mkdir(parents=True, exist_ok=True)
        # Racing writers wait for the lock instead of failing.
        kwargs.setdefault("connect_args", {"timeout": SQLITE_BUSY_TIMEOUT})
    return create_async_engine(database_url, echo=False, **kwargs)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


@lru_cache
def get_engine() -> AsyncEngine:
    """Return the process-wide engine for the configured database."""

    return build_engine(get_settings().database_url)


async def init_db(engine: AsyncEngine | None = None) -> None:
    """Create database tables if they do not exist."""

    from photogen.db import models  # noqa: WPS433

    target = engine or get_engine()
    async with target.begin() as conn:
        await conn.run_sync(models.Base.metadata.create_all)
