"""Engine and session factory.

Postgres (asyncpg) is the production store; SQLite (aiosqlite) backs the test
suite and single-office installs. Seat admission and seat-limit edits
serialize on the license row, so on both backends a competing writer waits
up to ``db_lock_timeout_ms`` instead of failing on first contact.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from timbersync.core.config import Settings, get_settings


def is_sqlite(database_url: str) -> bool:
    return database_url.startswith("sqlite")


def engine_options(settings: Settings) -> dict[str, Any]:
    if is_sqlite(settings.database_url):
        # SQLite has a single writer; the busy timeout is given in seconds.
        return {"connect_args": {"timeout": settings.db_lock_timeout_ms / 1000}}

    server_settings = {"application_name": settings.app_name}
    if settings.db_lock_timeout_ms > 0:
        server_settings["lock_timeout"] = str(int(settings.db_lock_timeout_ms))
    if settings.db_statement_timeout_ms > 0:
        server_settings["statement_timeout"] = str(int(settings.db_statement_timeout_ms))
    return {
        "pool_pre_ping": True,
        "pool_size": max(1, int(settings.db_pool_size)),
        "max_overflow": max(0, int(settings.db_max_overflow)),
        "pool_timeout": 30,
        "pool_recycle": 1800,
        "connect_args": {"server_settings": server_settings},
    }


def build_engine(settings: Settings | None = None) -> AsyncEngine:
    settings = settings or get_settings()
    return create_async_engine(settings.database_url, **engine_options(settings))


engine = build_engine()
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    async with SessionLocal() as session:
        yield session
