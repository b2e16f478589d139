"""Persistence of per-user holdings snapshots."""

from __future__ import annotations

import logging
from typing import Iterable, Sequence

from sqlalchemy import Connection, Engine, and_, delete, insert, or_, select

from backend.db.models import HoldingLedger
from ledger.common import LedgerClock, new_row_id
from ledger.holdings import ExecutionRecord, HoldingItem, HoldingKey, HoldingReconciler

logger = logging.getLogger(__name__)


class HoldingLedgerStore:
    """Load, reconcile and atomically replace a user's holdings snapshot.

    Snapshots are replaced wholesale inside one transaction, so readers see
    either the previous or the new snapshot, never a mix. Reconciliation is
    last-writer-wins per user.
    """

    def __init__(
        self,
        engine: Engine,
        reconciler: HoldingReconciler | None = None,
        clock: LedgerClock | None = None,
    ) -> None:
        self._engine = engine
        self._reconciler = reconciler or HoldingReconciler()
        self._clock = clock or LedgerClock()
        self._table = HoldingLedger.__table__

    def _select_user(self, conn: Connection, user_id: str) -> tuple[HoldingItem, ...]:
        table = self._table
        rows = conn.execute(
            select(table.c.symbol, table.c.category, table.c.sort_index)
            .where(table.c.user_id == user_id)
            .order_by(table.c.sort_index.asc(), table.c.symbol.asc())
        ).all()
        return tuple(
            HoldingItem(symbol=row.symbol, category=row.category, index=row.sort_index)
            for row in rows
        )

    def _replace(self, conn: Connection, user_id: str, items: Sequence[HoldingItem]) -> None:
        table = self._table
        conn.execute(delete(table).where(table.c.user_id == user_id))
        if not items:
            return
        now = self._clock.now_utc()
        conn.execute(
            insert(table),
            [
                {
                    "id": new_row_id(),
                    "user_id": user_id,
                    "symbol": item.symbol,
                    "category": item.category.value,
                    "sort_index": item.index,
                    "created_at": now,
                    "updated_at": now,
                }
                for item in items
            ],
        )

    def fetch_holdings(self, user_id: str) -> tuple[HoldingItem, ...]:
        with self._engine.connect() as conn:
            return self._select_user(conn, user_id)

    def fetch_holdings_by_users(self, user_ids: Iterable[str]) -> list[HoldingItem]:
        """Holdings across users, de-duplicated by (symbol, category)."""
        user_ids = list(user_ids)
        if not user_ids:
            return []

        table = self._table
        with self._engine.connect() as conn:
            rows = conn.execute(
                select(table.c.symbol, table.c.category, table.c.sort_index)
                .where(table.c.user_id.in_(user_ids))
                .order_by(table.c.sort_index.asc(), table.c.symbol.asc())
            ).all()

        deduped: dict[HoldingKey, HoldingItem] = {}
        for row in rows:
            item = HoldingItem(symbol=row.symbol, category=row.category, index=row.sort_index)
            deduped.setdefault(item.key, item)
        return list(deduped.values())

    def replace_holdings(self, user_id: str, items: Sequence[HoldingItem]) -> tuple[HoldingItem, ...]:
        items = tuple(items)
        with self._engine.begin() as conn:
            self._replace(conn, user_id, items)
        return items

    def remove_holdings(self, user_id: str, items: Sequence[HoldingItem]) -> int:
        """Delete exact (symbol, category) pairs; indexes of the rest are kept."""
        if not items:
            return 0
        table = self._table
        pairs = [
            and_(table.c.symbol == item.symbol, table.c.category == item.category.value)
            for item in items
        ]
        with self._engine.begin() as conn:
            return conn.execute(
                delete(table).where(table.c.user_id == user_id, or_(*pairs))
            ).rowcount

    def apply_executions(
        self,
        user_id: str,
        executions: Sequence[ExecutionRecord],
    ) -> tuple[HoldingItem, ...]:
        """Run one reconciliation pass for ``user_id`` and persist the result."""
        with self._engine.begin() as conn:
            existing = self._select_user(conn, user_id)
            snapshot = self._reconciler.reconcile(existing, executions)
            self._replace(conn, user_id, snapshot)

        logger.info(
            "Reconciled holdings for user %s: %d executions, %d -> %d items",
            user_id,
            len(executions),
            len(existing),
            len(snapshot),
        )
        return snapshot
