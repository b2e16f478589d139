"""Enum contracts for the ledger schema.

Values are stored as text and guarded by CHECK constraints so the same
metadata can be created on PostgreSQL and on SQLite test databases.
"""

from __future__ import annotations

import enum
import logging

logger = logging.getLogger(__name__)


class ExecutionLedgerStatus(str, enum.Enum):
    """Lifecycle of one trade-execution ledger entry."""

    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class TradeType(str, enum.Enum):
    """Settled trade direction reported by the exchange client."""

    BUY = "buy"
    SELL = "sell"


class Category(str, enum.Enum):
    """Allocation category a holding is tracked under."""

    COIN_MAJOR = "coin_major"
    COIN_MINOR = "coin_minor"
    NASDAQ = "nasdaq"


class ExecutionModule(str, enum.Enum):
    """Logical workflow that issued a trade instruction."""

    ALLOCATION = "allocation"
    RISK = "risk"


TERMINAL_STATUSES: frozenset[ExecutionLedgerStatus] = frozenset(
    {ExecutionLedgerStatus.COMPLETED, ExecutionLedgerStatus.FAILED}
)


def check_in(column: str, enum_cls: type[enum.Enum]) -> str:
    """Render a CHECK expression restricting ``column`` to the enum values."""
    values = ", ".join(f"'{member.value}'" for member in enum_cls)
    return f"{column} IN ({values})"
