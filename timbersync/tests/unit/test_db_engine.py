from __future__ import annotations

from timbersync.core.config import Settings
from timbersync.persistence.db import engine_options, is_sqlite


def _settings(**overrides) -> Settings:
    values = {
        "app_name": "timbersync",
        "database_url": "postgresql+asyncpg://timbersync:secret@db:5432/timbersync",
        "db_pool_size": 4,
        "db_max_overflow": 2,
        "db_statement_timeout_ms": 15000,
        "db_lock_timeout_ms": 2500,
    }
    values.update(overrides)
    return Settings(**values)


def test_postgres_waits_on_locked_license_rows() -> None:
    options = engine_options(_settings())

    assert options["pool_size"] == 4
    assert options["max_overflow"] == 2
    assert options["connect_args"]["server_settings"] == {
        "application_name": "timbersync",
        "lock_timeout": "2500",
        "statement_timeout": "15000",
    }


def test_zero_timeouts_are_left_unset() -> None:
    options = engine_options(_settings(db_statement_timeout_ms=0, db_lock_timeout_ms=0))

    assert options["connect_args"]["server_settings"] == {"application_name": "timbersync"}


def test_sqlite_uses_busy_timeout_without_pool_sizing() -> None:
    options = engine_options(_settings(database_url="sqlite+aiosqlite:///./timbersync.db"))

    assert is_sqlite("sqlite+aiosqlite:///./timbersync.db")
    assert options == {"connect_args": {"timeout": 2.5}}
