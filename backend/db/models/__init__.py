"""Model module imports for SQLAlchemy metadata registration."""

from __future__ import annotations

import logging

from backend.db.models.execution_ledger import TradeExecutionLedger
from backend.db.models.holding import HoldingLedger
from backend.db.models.records import AllocationAuditRun, Notify, Recommendation, Trade
from backend.db.models.sequence import LedgerSequence

logger = logging.getLogger(__name__)

__all__ = [
    "AllocationAuditRun",
    "HoldingLedger",
    "LedgerSequence",
    "Notify",
    "Recommendation",
    "Trade",
    "TradeExecutionLedger",
]
