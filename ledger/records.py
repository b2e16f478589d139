"""Write path for sequence-ordered record tables."""

from __future__ import annotations

import logging
from typing import Any, Mapping

from sqlalchemy import Engine, Table, insert

from ledger.common import LedgerClock, new_row_id
from ledger.sequence import SequenceGenerator

logger = logging.getLogger(__name__)


class SequencedRecordWriter:
    """Stamp ``id``, ``seq`` and ``created_at`` on rows of sequence-ordered tables.

    Each row consumes exactly one number from the shared generator. A failed
    insert leaves a gap in the sequence; numbers are never handed out twice.
    """

    def __init__(
        self,
        engine: Engine,
        sequence: SequenceGenerator,
        clock: LedgerClock | None = None,
    ) -> None:
        self._engine = engine
        self._sequence = sequence
        self._clock = clock or LedgerClock()

    def insert(self, table: Table, values: Mapping[str, Any]) -> dict[str, Any]:
        if "seq" not in table.c:
            raise ValueError(f"Table {table.name} has no seq column.")

        row = dict(values)
        row.setdefault("id", new_row_id())
        if "created_at" in table.c:
            row.setdefault("created_at", self._clock.now_utc())
        row["seq"] = self._sequence.next()

        with self._engine.begin() as conn:
            conn.execute(insert(table).values(**row))

        logger.debug("Inserted %s row id=%s seq=%s", table.name, row["id"], row["seq"])
        return row

    def insert_many(self, table: Table, rows: list[Mapping[str, Any]]) -> list[dict[str, Any]]:
        """Insert a batch in input order; later rows always get larger numbers."""
        return [self.insert(table, values) for values in rows]
