"""SQLite engine, timestamps and schema migrations for the run history database."""

from __future__ import annotations

import logging
import sqlite3
from datetime import UTC, datetime
from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import NullPool
from sqlmodel import create_engine

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parents[3]


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def ensure_utc(value: datetime) -> datetime:
    """SQLite drops tzinfo on read; naive values are UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def sqlite_url(db_path: Path) -> str:
    return f"sqlite:///{db_path}"


def create_history_engine(db_path: Path, *, busy_timeout_ms: int = 5000) -> Engine:
    """Unpooled engine: every session opens its own connection."""

    db_path.parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(
        sqlite_url(db_path),
        connect_args={
            "check_same_thread": False,
            "timeout": max(1.0, busy_timeout_ms / 1000.0),
        },
        poolclass=NullPool,
    )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: sqlite3.Connection, _record: object) -> None:
        cursor = dbapi_connection.cursor()
        try:
            cursor.execute("PRAGMA journal_mode = WAL")
            cursor.execute("PRAGMA synchronous = NORMAL")
            cursor.execute(f"PRAGMA busy_timeout = {max(1, busy_timeout_ms)}")
        finally:
            cursor.close()

    return engine


def migrate(db_path: Path, revision: str = "head") -> None:
    """Bring the run history schema at ``db_path`` up to ``revision``."""

    db_path.parent.mkdir(parents=True, exist_ok=True)
    config = Config(str(PROJECT_ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(PROJECT_ROOT / "alembic"))
    config.set_main_option("sqlalchemy.url", sqlite_url(db_path))
    logger.debug("Migrating run history %s to %s", db_path, revision)
    command.upgrade(config, revision)
