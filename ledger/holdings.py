"""Event-sourced holdings reconciliation.

Holdings are rebuilt from discrete execution signals rather than netted
quantities: upstream only reports a direction and a full-liquidation marker,
never an authoritative position size. A holding is therefore either in or out
of position, which is all category-level allocation needs.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import sys
from typing import Iterable, Optional, Sequence, Union

from backend.db.enums import Category, TradeType
from ledger.errors import HoldingsContractError

# ``diff`` is a signed fraction of the prior position; -1 means "sell 100%".
FULL_LIQUIDATION_DIFF = -1.0
FULL_LIQUIDATION_EPSILON = sys.float_info.epsilon

HoldingKey = tuple[str, Category]


def is_full_liquidation(diff: float) -> bool:
    """True when ``diff`` marks a full liquidation, tolerating float rounding."""
    return diff <= FULL_LIQUIDATION_DIFF + FULL_LIQUIDATION_EPSILON


@dataclass(frozen=True)
class HoldingItem:
    symbol: str
    category: Category
    index: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "category", Category(self.category))

    @property
    def key(self) -> HoldingKey:
        return (self.symbol, self.category)


@dataclass(frozen=True)
class WithCategory:
    category: Category

    def __post_init__(self) -> None:
        object.__setattr__(self, "category", Category(self.category))


@dataclass(frozen=True)
class WithoutCategory:
    """Legacy queue items carry no inference; categories come from holdings."""


Inference = Union[WithCategory, WithoutCategory]


@dataclass(frozen=True)
class ExecutionRequest:
    symbol: str
    diff: float
    inference: Inference = field(default_factory=WithoutCategory)


@dataclass(frozen=True)
class TradeOutcome:
    type: str


@dataclass(frozen=True)
class ExecutionRecord:
    """One execution request paired with its settled trade, if any."""

    request: ExecutionRequest
    trade: Optional[TradeOutcome]


def _index_existing(existing: Iterable[HoldingItem]) -> dict[HoldingKey, HoldingItem]:
    indexed: dict[HoldingKey, HoldingItem] = {}
    for item in existing:
        if item.key in indexed:
            raise HoldingsContractError(
                f"Duplicate existing holding {item.symbol}:{item.category.value}."
            )
        indexed[item.key] = item
    return indexed


def _settled_as(record: ExecutionRecord, trade_type: str) -> bool:
    return record.trade is not None and record.trade.type == trade_type


def collect_executed_buys(
    executions: Sequence[ExecutionRecord],
    buy_type: str = TradeType.BUY,
) -> list[HoldingItem]:
    """Pairs bought in this batch; repeated fills of one pair collapse."""
    bought: dict[HoldingKey, HoldingItem] = {}
    for record in executions:
        if not _settled_as(record, buy_type):
            continue
        inference = record.request.inference
        if not isinstance(inference, WithCategory):
            continue
        item = HoldingItem(symbol=record.request.symbol, category=inference.category)
        bought[item.key] = item
    return list(bought.values())


def collect_full_liquidations(
    executions: Sequence[ExecutionRecord],
    sell_type: str = TradeType.SELL,
    existing: Sequence[HoldingItem] = (),
) -> list[HoldingItem]:
    """Pairs fully sold in this batch.

    Without a category, every existing category holding the symbol is removed;
    a symbol may be held under several categories at once.
    """
    categories_by_symbol: dict[str, list[Category]] = {}
    for key in _index_existing(existing):
        categories_by_symbol.setdefault(key[0], []).append(key[1])

    removed: dict[HoldingKey, HoldingItem] = {}
    for record in executions:
        if not _settled_as(record, sell_type):
            continue
        if not is_full_liquidation(record.request.diff):
            continue

        symbol = record.request.symbol
        inference = record.request.inference
        if isinstance(inference, WithCategory):
            categories = [inference.category]
        else:
            categories = categories_by_symbol.get(symbol, [])

        for category in categories:
            item = HoldingItem(symbol=symbol, category=category)
            removed[item.key] = item
    return list(removed.values())


def merge_holdings(
    existing: Sequence[HoldingItem],
    liquidated: Sequence[HoldingItem],
    executed_buys: Sequence[HoldingItem],
) -> tuple[HoldingItem, ...]:
    """Existing minus liquidated, plus bought; ``index`` is reassigned 0..N-1.

    A pair liquidated and bought again in the same batch stays held.
    """
    removed_keys = {item.key for item in liquidated}
    merged: dict[HoldingKey, HoldingItem] = {
        key: item for key, item in _index_existing(existing).items() if key not in removed_keys
    }
    for item in executed_buys:
        merged.setdefault(item.key, item)

    return tuple(
        HoldingItem(symbol=item.symbol, category=item.category, index=index)
        for index, item in enumerate(merged.values())
    )


def reconcile(
    existing: Sequence[HoldingItem],
    executions: Sequence[ExecutionRecord],
    buy_type: str = TradeType.BUY,
    sell_type: str = TradeType.SELL,
) -> tuple[HoldingItem, ...]:
    """Fold one batch of executions into a new holdings snapshot."""
    existing = tuple(existing)
    _index_existing(existing)
    executed_buys = collect_executed_buys(executions, buy_type)
    liquidated = collect_full_liquidations(executions, sell_type, existing)
    return merge_holdings(existing, liquidated, executed_buys)


class HoldingReconciler:
    """Reconciliation pass bound to the exchange client's trade type labels.

    Stateless; the caller must not run two passes for the same user at once.
    """

    def __init__(self, buy_type: str = TradeType.BUY, sell_type: str = TradeType.SELL) -> None:
        self.buy_type = buy_type
        self.sell_type = sell_type

    def reconcile(
        self,
        existing: Sequence[HoldingItem],
        executions: Sequence[ExecutionRecord],
    ) -> tuple[HoldingItem, ...]:
        return reconcile(existing, executions, self.buy_type, self.sell_type)
