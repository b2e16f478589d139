"""Sequence-ordered record tables read through the cursor pager."""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    Index,
    Numeric,
    PrimaryKeyConstraint,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from backend.db.base import Base
from backend.db.enums import Category, TradeType, check_in

logger = logging.getLogger(__name__)


class Recommendation(Base):
    """Allocation recommendation emitted by the inference workflow."""

    __tablename__ = "recommendation"
    __table_args__ = (
        PrimaryKeyConstraint("id", name="pk_recommendation"),
        UniqueConstraint("seq", name="uq_recommendation_seq"),
        CheckConstraint(check_in("category", Category), name="category"),
        Index("idx_recommendation_symbol_seq", "symbol", "seq"),
    )

    id: Mapped[str] = mapped_column(String(36), nullable=False)
    seq: Mapped[int] = mapped_column(BigInteger, nullable=False)
    batch_id: Mapped[str | None] = mapped_column(String(36))
    symbol: Mapped[str] = mapped_column(String(255), nullable=False)
    category: Mapped[str] = mapped_column(String(32), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class Trade(Base):
    """Settled trade reported back by the exchange client."""

    __tablename__ = "trade"
    __table_args__ = (
        PrimaryKeyConstraint("id", name="pk_trade"),
        UniqueConstraint("seq", name="uq_trade_seq"),
        CheckConstraint(check_in("type", TradeType), name="type"),
        Index("idx_trade_user_seq", "user_id", "seq"),
    )

    id: Mapped[str] = mapped_column(String(36), nullable=False)
    seq: Mapped[int] = mapped_column(BigInteger, nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    symbol: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[str] = mapped_column(String(8), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    profit: Mapped[Decimal | None] = mapped_column(Numeric(38, 18))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class Notify(Base):
    """User notification."""

    __tablename__ = "notify"
    __table_args__ = (
        PrimaryKeyConstraint("id", name="pk_notify"),
        UniqueConstraint("seq", name="uq_notify_seq"),
        Index("idx_notify_user_seq", "user_id", "seq"),
    )

    id: Mapped[str] = mapped_column(String(36), nullable=False)
    seq: Mapped[int] = mapped_column(BigInteger, nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class AllocationAuditRun(Base):
    """One audit pass over a batch of allocation recommendations."""

    __tablename__ = "allocation_audit_run"
    __table_args__ = (
        PrimaryKeyConstraint("id", name="pk_allocation_audit_run"),
        UniqueConstraint("seq", name="uq_allocation_audit_run_seq"),
        CheckConstraint("status IN ('pending', 'running', 'completed', 'failed')", name="status"),
    )

    id: Mapped[str] = mapped_column(String(36), nullable=False)
    seq: Mapped[int] = mapped_column(BigInteger, nullable=False)
    report_type: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    summary: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
