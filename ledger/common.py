"""Shared helpers for ledger components."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
import uuid


@dataclass(frozen=True)
class LedgerClock:
    """Injectable UTC clock for deterministic testing."""

    def now_utc(self) -> datetime:
        """Return current UTC timestamp."""
        return datetime.now(tz=timezone.utc)


def as_utc(value: Any) -> datetime | None:
    """Coerce a stored timestamp to an aware UTC datetime.

    SQLite hands back naive datetimes; those are stored in UTC.
    """
    if value is None:
        return None
    if not isinstance(value, datetime):
        value = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def new_row_id() -> str:
    """Generate a string primary key for ledger rows."""
    return str(uuid.uuid4())
