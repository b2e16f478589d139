"""Unit tests for holdings snapshot persistence."""

from __future__ import annotations

import pytest
from sqlalchemy import Engine, func, select
from sqlalchemy.exc import IntegrityError

from backend.db.enums import Category
from backend.db.models import HoldingLedger
from ledger.errors import HoldingsContractError
from ledger.holding_store import HoldingLedgerStore
from ledger.holdings import (
    ExecutionRecord,
    ExecutionRequest,
    HoldingItem,
    HoldingReconciler,
    TradeOutcome,
    WithCategory,
    WithoutCategory,
)
from tests.utils.clock import MutableClock

MAJOR = Category.COIN_MAJOR
MINOR = Category.COIN_MINOR


def _store(engine: Engine, clock: MutableClock, **kwargs) -> HoldingLedgerStore:
    return HoldingLedgerStore(engine, clock=clock, **kwargs)


def _row_count(engine: Engine, user_id: str) -> int:
    table = HoldingLedger.__table__
    with engine.connect() as conn:
        return conn.execute(
            select(func.count()).select_from(table).where(table.c.user_id == user_id)
        ).scalar_one()


def test_replace_and_fetch_round_trip_in_index_order(ledger_engine: Engine, clock: MutableClock) -> None:
    store = _store(ledger_engine, clock)
    items = (HoldingItem("ETH/KRW", MINOR, 1), HoldingItem("BTC/KRW", MAJOR, 0))

    store.replace_holdings("user-1", items)

    assert store.fetch_holdings("user-1") == (
        HoldingItem("BTC/KRW", MAJOR, 0),
        HoldingItem("ETH/KRW", MINOR, 1),
    )
    assert store.fetch_holdings("user-2") == ()


def test_replace_is_wholesale(ledger_engine: Engine, clock: MutableClock) -> None:
    store = _store(ledger_engine, clock)
    store.replace_holdings("user-1", [HoldingItem("BTC/KRW", MAJOR, 0), HoldingItem("ETH/KRW", MINOR, 1)])

    store.replace_holdings("user-1", [HoldingItem("XRP/KRW", MINOR, 0)])

    assert store.fetch_holdings("user-1") == (HoldingItem("XRP/KRW", MINOR, 0),)
    assert _row_count(ledger_engine, "user-1") == 1


def test_replace_with_empty_snapshot_clears_user(ledger_engine: Engine, clock: MutableClock) -> None:
    store = _store(ledger_engine, clock)
    store.replace_holdings("user-1", [HoldingItem("BTC/KRW", MAJOR, 0)])
    store.replace_holdings("user-2", [HoldingItem("BTC/KRW", MAJOR, 0)])

    store.replace_holdings("user-1", [])

    assert store.fetch_holdings("user-1") == ()
    assert _row_count(ledger_engine, "user-2") == 1


def test_failed_replace_keeps_previous_snapshot(ledger_engine: Engine, clock: MutableClock) -> None:
    store = _store(ledger_engine, clock)
    previous = (HoldingItem("BTC/KRW", MAJOR, 0),)
    store.replace_holdings("user-1", previous)

    with pytest.raises(IntegrityError):
        # Duplicate pair trips the unique constraint after the delete ran.
        store.replace_holdings(
            "user-1",
            [HoldingItem("ETH/KRW", MINOR, 0), HoldingItem("ETH/KRW", MINOR, 1)],
        )

    assert store.fetch_holdings("user-1") == previous


def test_fetch_holdings_by_users_deduplicates_pairs(ledger_engine: Engine, clock: MutableClock) -> None:
    store = _store(ledger_engine, clock)
    store.replace_holdings("user-1", [HoldingItem("BTC/KRW", MAJOR, 0), HoldingItem("ETH/KRW", MINOR, 1)])
    store.replace_holdings("user-2", [HoldingItem("BTC/KRW", MAJOR, 0), HoldingItem("SOL/KRW", MINOR, 1)])
    store.replace_holdings("user-3", [HoldingItem("DOGE/KRW", MINOR, 0)])

    items = store.fetch_holdings_by_users(["user-1", "user-2"])

    assert sorted((item.symbol, item.category) for item in items) == [
        ("BTC/KRW", MAJOR),
        ("ETH/KRW", MINOR),
        ("SOL/KRW", MINOR),
    ]
    assert store.fetch_holdings_by_users([]) == []


def test_remove_holdings_deletes_exact_pairs(ledger_engine: Engine, clock: MutableClock) -> None:
    store = _store(ledger_engine, clock)
    store.replace_holdings(
        "user-1",
        [
            HoldingItem("BTC/KRW", MAJOR, 0),
            HoldingItem("BTC/KRW", MINOR, 1),
            HoldingItem("ETH/KRW", MINOR, 2),
        ],
    )

    removed = store.remove_holdings("user-1", [HoldingItem("BTC/KRW", MINOR)])

    assert removed == 1
    assert store.fetch_holdings("user-1") == (
        HoldingItem("BTC/KRW", MAJOR, 0),
        HoldingItem("ETH/KRW", MINOR, 2),
    )
    assert store.remove_holdings("user-1", []) == 0


def test_apply_executions_persists_reconciled_snapshot(ledger_engine: Engine, clock: MutableClock) -> None:
    store = _store(ledger_engine, clock)
    store.replace_holdings("user-1", [HoldingItem("BTC/KRW", MAJOR, 0), HoldingItem("XRP/KRW", MINOR, 1)])

    snapshot = store.apply_executions(
        "user-1",
        [
            ExecutionRecord(
                ExecutionRequest("XRP/KRW", -1, WithoutCategory()),
                TradeOutcome("sell"),
            ),
            ExecutionRecord(
                ExecutionRequest("ETH/KRW", 0.5, WithCategory(MINOR)),
                TradeOutcome("buy"),
            ),
        ],
    )

    assert snapshot == (HoldingItem("BTC/KRW", MAJOR, 0), HoldingItem("ETH/KRW", MINOR, 1))
    assert store.fetch_holdings("user-1") == snapshot


def test_apply_executions_with_custom_labels(ledger_engine: Engine, clock: MutableClock) -> None:
    store = _store(ledger_engine, clock, reconciler=HoldingReconciler(buy_type="bid", sell_type="ask"))

    snapshot = store.apply_executions(
        "user-1",
        [ExecutionRecord(ExecutionRequest("BTC/KRW", 1, WithCategory(MAJOR)), TradeOutcome("bid"))],
    )

    assert snapshot == (HoldingItem("BTC/KRW", MAJOR, 0),)


def test_apply_executions_rejects_corrupt_existing_snapshot(
    ledger_engine: Engine, clock: MutableClock
) -> None:
    class _DuplicatingReconciler(HoldingReconciler):
        def reconcile(self, existing, executions):
            return super().reconcile(tuple(existing) * 2, executions)

    store = _store(ledger_engine, clock, reconciler=_DuplicatingReconciler())
    store.replace_holdings("user-1", [HoldingItem("BTC/KRW", MAJOR, 0)])

    with pytest.raises(HoldingsContractError):
        store.apply_executions("user-1", [])

    assert store.fetch_holdings("user-1") == (HoldingItem("BTC/KRW", MAJOR, 0),)
