"""SQLite engine policy and datetime conversions shared by the FlowMate stores.

DateTime columns hold naive UTC values; everything above the storage layer
works with timezone-aware UTC datetimes.
"""

from __future__ import annotations

import sqlite3
from datetime import UTC, datetime
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import NullPool
from sqlmodel import create_engine

_STATIC_PRAGMAS = ("journal_mode = WAL", "foreign_keys = ON")


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def to_db_datetime(value: datetime) -> datetime:
    """Naive UTC value as stored by SQLite DateTime columns."""

    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def to_utc_aware_datetime(value: datetime) -> datetime:
    """Attach UTC to a naive value read back from SQLite."""

    if value.tzinfo is not None:
        return value.astimezone(UTC)
    return value.replace(tzinfo=UTC)


def build_sqlite_engine(*, db_path: Path, busy_timeout_ms: int = 5000) -> Engine:
    """Engine for the orchestrator's single-writer database (WAL, FK checks on)."""

    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False, "timeout": max(1.0, busy_timeout_ms / 1000)},
        poolclass=NullPool,
    )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: sqlite3.Connection, _record: object) -> None:
        cursor = dbapi_connection.cursor()
        try:
            for pragma in (*_STATIC_PRAGMAS, f"busy_timeout = {max(1, busy_timeout_ms)}"):
                cursor.execute(f"PRAGMA {pragma}")
        finally:
            cursor.close()

    return engine


def connect_sqlite_readonly(db_path: Path) -> sqlite3.Connection:
    """Read-only sqlite3 connection with rows addressable by column name."""

    connection = sqlite3.connect(f"file:{db_path}?mode=ro", uri=True, check_same_thread=False)
    connection.row_factory = sqlite3.Row
    return connection


def to_db_text(value: datetime) -> str:
    """Text form of a DateTime column value, for raw SQL comparisons."""

    return to_db_datetime(value).strftime("%Y-%m-%d %H:%M:%S.%f")


def from_db_text(value: str | None) -> datetime | None:
    """Parse a DateTime column value read through raw sqlite3."""

    if value is None:
        return None
    return to_utc_aware_datetime(datetime.fromisoformat(value))
