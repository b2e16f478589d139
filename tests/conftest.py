"""Pytest fixtures shared across unit and integration tests."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Iterator

import pytest
from sqlalchemy import Engine, delete
from sqlalchemy.engine import URL

from backend.db import create_ledger_engine, create_schema
from backend.db.base import Base
from tests.utils.clock import MutableClock


@pytest.fixture
def ledger_engine(tmp_path: Path) -> Iterator[Engine]:
    """File-backed SQLite engine with the full ledger schema."""
    engine = create_ledger_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    create_schema(engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock()


@pytest.fixture(scope="session")
def pg_engine() -> Iterator[Engine]:
    """Session-scoped PostgreSQL engine for integration tests."""
    host = os.getenv("TEST_DB_HOST")
    port = os.getenv("TEST_DB_PORT")
    dbname = os.getenv("TEST_DB_NAME")
    user = os.getenv("TEST_DB_USER")
    password = os.getenv("TEST_DB_PASSWORD")

    if not all([host, port, dbname, user, password]):
        pytest.skip("Integration DB env vars are missing; set TEST_DB_HOST/PORT/NAME/USER/PASSWORD")

    url = URL.create(
        "postgresql+psycopg",
        username=user,
        password=password,
        host=host,
        port=int(port),
        database=dbname,
    )
    engine = create_ledger_engine(url.render_as_string(hide_password=False), pool_size=20)
    create_schema(engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture
def clean_pg_engine(pg_engine: Engine) -> Any:
    """PostgreSQL engine with every ledger table emptied before the test."""
    with pg_engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(delete(table))
    return pg_engine
