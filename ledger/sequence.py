"""Store-backed global sequence numbers."""

from __future__ import annotations

import logging

from sqlalchemy import Engine, func, insert, select

from backend.db.models import LedgerSequence
from ledger.common import LedgerClock

logger = logging.getLogger(__name__)

SEQUENCE_BOTTOM = 0


class SequenceGenerator:
    """Issue strictly increasing numbers shared by every sequence-ordered table.

    ``next`` inserts a row into ``ledger_sequence`` and reads back the identity
    the store generated, so uniqueness and ordering hold across independent
    processes. Numbers are never synthesized in-process. Store errors
    propagate unchanged.
    """

    def __init__(self, engine: Engine, clock: LedgerClock | None = None) -> None:
        self._engine = engine
        self._clock = clock or LedgerClock()
        self._table = LedgerSequence.__table__

    def next(self) -> int:
        with self._engine.begin() as conn:
            result = conn.execute(insert(self._table).values(created_at=self._clock.now_utc()))
            value = result.inserted_primary_key[0]
        return int(value)

    def current(self) -> int:
        """Highest number issued so far, or ``SEQUENCE_BOTTOM``.

        Point read for diagnostics and bootstrap; it can be stale as soon as it
        returns and must not drive correctness decisions.
        """
        with self._engine.connect() as conn:
            value = conn.execute(select(func.max(self._table.c.id))).scalar()
        return SEQUENCE_BOTTOM if value is None else int(value)
