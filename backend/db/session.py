"""Engine wiring for ledger persistence."""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.engine import make_url

from backend.db.base import Base

logger = logging.getLogger(__name__)

SQLITE_BUSY_TIMEOUT_SECONDS = 30


def _enable_sqlite_wal(dbapi_connection: Any, connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
    finally:
        cursor.close()


def create_ledger_engine(url: str, *, pool_size: int = 5, echo: bool = False) -> Engine:
    """Create an engine for the ledger store.

    PostgreSQL is the production target (``postgresql+psycopg://``). File-backed
    SQLite is accepted for local runs and tests; it gets WAL journaling and a
    busy timeout so concurrent writers queue on the database lock instead of
    failing immediately.
    """
    parsed = make_url(url)
    if parsed.get_backend_name() == "sqlite":
        engine = create_engine(
            url,
            echo=echo,
            connect_args={"timeout": SQLITE_BUSY_TIMEOUT_SECONDS, "check_same_thread": False},
        )
        event.listen(engine, "connect", _enable_sqlite_wal)
    else:
        engine = create_engine(
            url,
            echo=echo,
            pool_size=pool_size,
            pool_pre_ping=True,
        )
    logger.info("Created ledger engine backend=%s", parsed.get_backend_name())
    return engine


def create_schema(engine: Engine) -> None:
    """Create every ledger table that does not exist yet."""
    Base.metadata.create_all(engine)
