"""Trade-execution idempotency ledger model."""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    PrimaryKeyConstraint,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import expression

from backend.db.base import Base
from backend.db.enums import ExecutionLedgerStatus, check_in

logger = logging.getLogger(__name__)


class TradeExecutionLedger(Base):
    """One row per logical trade instruction, keyed by (module, message_key, user_id)."""

    __tablename__ = "trade_execution_ledger"
    __table_args__ = (
        PrimaryKeyConstraint("id", name="pk_trade_execution_ledger"),
        UniqueConstraint(
            "module",
            "message_key",
            "user_id",
            name="uq_trade_execution_ledger_identity",
        ),
        CheckConstraint(check_in("status", ExecutionLedgerStatus), name="status"),
        CheckConstraint("attempt_count > 0", name="attempt_count_pos"),
        CheckConstraint("length(message_key) > 0", name="message_key_not_blank"),
        CheckConstraint(
            "status = 'processing' OR finished_at IS NOT NULL",
            name="terminal_finished",
        ),
        Index("idx_trade_execution_ledger_status_started", "status", "started_at"),
    )

    id: Mapped[str] = mapped_column(String(36), nullable=False)
    module: Mapped[str] = mapped_column(String(32), nullable=False)
    message_key: Mapped[str] = mapped_column(String(191), nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False)
    payload_hash: Mapped[str] = mapped_column(String(128), nullable=False)
    generated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    error: Mapped[str | None] = mapped_column(Text)
    retryable: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=expression.true())
    result: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
