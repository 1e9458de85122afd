from __future__ import annotations

import asyncio
import os
from pathlib import Path
import tempfile

# Point settings at a throwaway SQLite database before any timbersync module builds the engine.
_DB_DIR = tempfile.mkdtemp(prefix="timbersync-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{Path(_DB_DIR) / 'timbersync.db'}"
# Keep bcrypt cheap in tests; production uses the configured cost.
os.environ.setdefault("PASSWORD_HASH_ROUNDS", "4")

import pytest  # noqa: E402
from sqlalchemy.ext.asyncio import create_async_engine  # noqa: E402

from timbersync.core.config import get_settings  # noqa: E402
from timbersync.domain.models import Base  # noqa: E402
from timbersync.persistence.db import SessionLocal, engine  # noqa: E402


async def _create_schema() -> None:
    schema_engine = create_async_engine(os.environ["DATABASE_URL"])
    async with schema_engine.begin() as connection:
        await connection.run_sync(Base.metadata.create_all)
    await schema_engine.dispose()


@pytest.fixture(scope="session", autouse=True)
def database_schema() -> None:
    # Build tables once per run on a private loop; tests get their own loops.
    get_settings.cache_clear()
    asyncio.run(_create_schema())
    yield


@pytest.fixture(autouse=True)
async def reset_database_between_tests() -> None:
    # Empty every table so tests never see each other's licenses, grants or logs.
    yield
    async with SessionLocal() as session:
        for table in reversed(Base.metadata.sorted_tables):
            await session.execute(table.delete())
        await session.commit()
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()
