"""Trade ledger core: sequencing, pagination, execution idempotency, holdings."""

from ledger.config import LedgerConfig, load_ledger_config
from ledger.errors import (
    HoldingsContractError,
    InvalidPageRequestError,
    LedgerConfigError,
    LedgerEntryNotFoundError,
    LedgerError,
    NonRetryableExecutionError,
)
from ledger.execution_ledger import (
    ClaimResult,
    ClaimValidity,
    ExecutionLedger,
    LedgerEntry,
    NeverReclaim,
    ReclaimPolicy,
    StaleProcessingReclaimPolicy,
)
from ledger.execution_runner import (
    ExecutionDisposition,
    ExecutionReport,
    ExecutionRunner,
    TradeInstruction,
    default_is_retryable,
    execute_trades_sequentially,
    run_claimed_execution,
)
from ledger.hashing import hash_payload
from ledger.holding_store import HoldingLedgerStore
from ledger.holdings import (
    ExecutionRecord,
    ExecutionRequest,
    HoldingItem,
    HoldingReconciler,
    TradeOutcome,
    WithCategory,
    WithoutCategory,
    is_full_liquidation,
    reconcile,
)
from ledger.pagination import CursorItems, CursorPager, PaginatedItems, SortDirection
from ledger.records import SequencedRecordWriter
from ledger.sequence import SequenceGenerator

__all__ = [
    "ClaimResult",
    "ClaimValidity",
    "CursorItems",
    "CursorPager",
    "ExecutionDisposition",
    "ExecutionLedger",
    "ExecutionRecord",
    "ExecutionReport",
    "ExecutionRunner",
    "ExecutionRequest",
    "HoldingItem",
    "HoldingLedgerStore",
    "HoldingReconciler",
    "HoldingsContractError",
    "InvalidPageRequestError",
    "LedgerConfig",
    "LedgerConfigError",
    "LedgerEntry",
    "LedgerEntryNotFoundError",
    "LedgerError",
    "NeverReclaim",
    "NonRetryableExecutionError",
    "PaginatedItems",
    "ReclaimPolicy",
    "SequenceGenerator",
    "SequencedRecordWriter",
    "SortDirection",
    "StaleProcessingReclaimPolicy",
    "TradeInstruction",
    "TradeOutcome",
    "WithCategory",
    "WithoutCategory",
    "default_is_retryable",
    "execute_trades_sequentially",
    "hash_payload",
    "is_full_liquidation",
    "load_ledger_config",
    "reconcile",
    "run_claimed_execution",
]
