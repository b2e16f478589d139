"""Global sequence counter backing every sequence-ordered table."""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Identity, Integer, PrimaryKeyConstraint
from sqlalchemy.orm import Mapped, mapped_column

from backend.db.base import Base

logger = logging.getLogger(__name__)

# SQLite only autoincrements INTEGER PRIMARY KEY columns.
SEQUENCE_ID_TYPE = BigInteger().with_variant(Integer(), "sqlite")


class LedgerSequence(Base):
    """One row per issued sequence number; the identity column is the number."""

    __tablename__ = "ledger_sequence"
    __table_args__ = (
        PrimaryKeyConstraint("id", name="pk_ledger_sequence"),
        {"sqlite_autoincrement": True},
    )

    id: Mapped[int] = mapped_column(SEQUENCE_ID_TYPE, Identity(), autoincrement=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
