"""Canonical per-user holdings snapshot model."""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    PrimaryKeyConstraint,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from backend.db.base import Base
from backend.db.enums import Category, check_in

logger = logging.getLogger(__name__)


class HoldingLedger(Base):
    """One owned (symbol, category) pair for one user."""

    __tablename__ = "holding_ledger"
    __table_args__ = (
        PrimaryKeyConstraint("id", name="pk_holding_ledger"),
        UniqueConstraint(
            "user_id",
            "symbol",
            "category",
            name="uq_holding_ledger_identity",
        ),
        CheckConstraint(check_in("category", Category), name="category"),
        CheckConstraint("sort_index >= 0", name="sort_index_nonneg"),
        Index("idx_holding_ledger_user_sort_index", "user_id", "sort_index"),
    )

    id: Mapped[str] = mapped_column(String(36), nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    symbol: Mapped[str] = mapped_column(String(255), nullable=False)
    category: Mapped[str] = mapped_column(String(32), nullable=False)
    sort_index: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
