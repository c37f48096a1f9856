from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

import pytest

from src.adapters.clock import FrozenClock
from src.adapters.dev_email import DevEmailAdapter
from src.adapters.sqlite.migrator import SQLiteMigrator
from src.adapters.sqlite_db import SQLiteDatabase
from src.app_shell.config import PROJECT_ROOT
from src.components.newsletter import run_add_subscriber

MIGRATIONS_DIR = PROJECT_ROOT / "migrations"
T0 = datetime(2026, 1, 5, 9, 0, tzinfo=UTC)


@pytest.fixture
def db_path(tmp_path: Path) -> str:
    """Temporary SQLite file with every migration applied."""
    path = str(tmp_path / "newsletter.db")
    SQLiteMigrator(path, str(MIGRATIONS_DIR)).run_migrations()
    return path


@pytest.fixture
def sqlite_db(db_path: str) -> SQLiteDatabase:
    return SQLiteDatabase(db_path, busy_timeout_seconds=5.0, nowait_timeout_seconds=0.05)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(T0)


@pytest.fixture
def dev_email() -> DevEmailAdapter:
    return DevEmailAdapter()


@pytest.fixture
def add_subscribers(sqlite_db: SQLiteDatabase) -> Callable[..., None]:
    """Register subscribers: add_subscribers("a@x.com", ..., confirmed=False)."""

    def _add(*emails: str, confirmed: bool = True) -> None:
        with sqlite_db.begin() as uow:
            for email in emails:
                run_add_subscriber(uow.subscribers, email, confirmed=confirmed, now=T0)
            uow.commit()

    return _add
