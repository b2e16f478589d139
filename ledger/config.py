"""Environment-backed configuration for the ledger runtime."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
import logging
import os

from ledger.errors import LedgerConfigError

logger = logging.getLogger(__name__)

_LOG_LEVELS: frozenset[str] = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


@dataclass(frozen=True)
class LedgerConfig:
    """Canonical configuration surface for ledger processes."""

    database_url: str
    processing_stale_seconds: int
    heartbeat_interval_seconds: int
    max_page_size: int
    db_pool_size: int
    db_echo: bool
    log_level: str

    @property
    def processing_stale_after(self) -> timedelta:
        return timedelta(seconds=self.processing_stale_seconds)

    @property
    def heartbeat_interval(self) -> timedelta:
        return timedelta(seconds=self.heartbeat_interval_seconds)


def _read_env(name: str, default: str | None = None) -> str:
    value = os.getenv(name, default)
    if value is None or value.strip() == "":
        raise LedgerConfigError(f"Missing required environment variable: {name}")
    return value.strip()


def _read_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise LedgerConfigError(f"Invalid boolean value for {name}: {raw}")


def _read_positive_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw.strip())
    except ValueError as exc:
        raise LedgerConfigError(f"Invalid integer value for {name}: {raw}") from exc
    if value <= 0:
        raise LedgerConfigError(f"{name} must be positive, got {value}")
    return value


def load_ledger_config(database_url: str | None = None) -> LedgerConfig:
    """Load and validate ledger configuration from the environment.

    ``database_url`` overrides ``LEDGER_DATABASE_URL`` when given.
    """
    log_level = os.getenv("LEDGER_LOG_LEVEL", "INFO").strip().upper()
    if log_level not in _LOG_LEVELS:
        raise LedgerConfigError(f"Invalid LEDGER_LOG_LEVEL: {log_level}")

    stale_seconds = _read_positive_int("LEDGER_PROCESSING_STALE_SECONDS", 300)
    heartbeat_seconds = _read_positive_int("LEDGER_HEARTBEAT_INTERVAL_SECONDS", 30)
    if heartbeat_seconds >= stale_seconds:
        raise LedgerConfigError(
            "LEDGER_HEARTBEAT_INTERVAL_SECONDS must be shorter than LEDGER_PROCESSING_STALE_SECONDS"
        )

    return LedgerConfig(
        database_url=database_url or _read_env("LEDGER_DATABASE_URL"),
        processing_stale_seconds=stale_seconds,
        heartbeat_interval_seconds=heartbeat_seconds,
        max_page_size=_read_positive_int("LEDGER_MAX_PAGE_SIZE", 100),
        db_pool_size=_read_positive_int("LEDGER_DB_POOL_SIZE", 5),
        db_echo=_read_bool("LEDGER_DB_ECHO", False),
        log_level=log_level,
    )
