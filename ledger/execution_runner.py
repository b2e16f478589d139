"""Caller-side workflow around the execution ledger.

The ledger only records claims and outcomes; this module is the execution
workflow that consults it before touching the exchange.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
import enum
import logging
import threading
from typing import Any, Callable, Generic, Iterator, Mapping, Optional, Sequence, TypeVar

from sqlalchemy import Engine

from backend.db.enums import ExecutionLedgerStatus, ExecutionModule
from ledger.common import LedgerClock
from ledger.config import LedgerConfig
from ledger.errors import NonRetryableExecutionError
from ledger.execution_ledger import (
    ClaimValidity,
    ExecutionLedger,
    LedgerEntry,
    ReclaimPolicy,
    StaleProcessingReclaimPolicy,
)
from ledger.hashing import hash_payload

logger = logging.getLogger(__name__)

T = TypeVar("T")
TRequest = TypeVar("TRequest")
TTrade = TypeVar("TTrade")

EXPIRED_ERROR = "Message expired"
DEFAULT_HEARTBEAT_INTERVAL = timedelta(seconds=30)
HEARTBEAT_JOIN_TIMEOUT = timedelta(seconds=1)

_MODULE_ALIASES: dict[str, ExecutionModule] = {
    ExecutionModule.ALLOCATION.value: ExecutionModule.ALLOCATION,
    "rebalance": ExecutionModule.ALLOCATION,
    ExecutionModule.RISK.value: ExecutionModule.RISK,
    "volatility": ExecutionModule.RISK,
}


class ExecutionDisposition(str, enum.Enum):
    EXECUTED = "executed"
    SKIPPED_IN_FLIGHT = "skipped_in_flight"
    SKIPPED_TERMINAL = "skipped_terminal"
    EXPIRED = "expired"


@dataclass(frozen=True)
class TradeInstruction:
    """One queued trade instruction as delivered to a worker."""

    module: str
    message_key: str
    user_id: str
    payload: Mapping[str, Any] = field(default_factory=dict)
    generated_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    @property
    def payload_hash(self) -> str:
        return hash_payload(dict(self.payload))

    @property
    def validity(self) -> ClaimValidity:
        return ClaimValidity(generated_at=self.generated_at, expires_at=self.expires_at)


@dataclass(frozen=True)
class ExecutionReport(Generic[T]):
    disposition: ExecutionDisposition
    entry: LedgerEntry
    result: Optional[T] = None
    payload_mismatch: bool = False


def resolve_module_key(raw: Optional[str], fallback: ExecutionModule) -> ExecutionModule:
    """Map legacy module names onto the current dedupe module key."""
    if not raw:
        return fallback
    return _MODULE_ALIASES.get(raw, fallback)


@contextmanager
def processing_heartbeat(
    ledger: ExecutionLedger,
    entry: LedgerEntry,
    interval: timedelta,
) -> Iterator[None]:
    """Keep ``entry.started_at`` fresh while a long exchange call runs.

    One heartbeat is sent synchronously on entry; later beats run on a daemon
    thread and only log their failures. Leaving the block waits at most
    ``HEARTBEAT_JOIN_TIMEOUT`` for a beat that is still in flight.
    """
    ledger.heartbeat(entry.id, attempt_count=entry.attempt_count)

    seconds = max(interval.total_seconds(), 0.001)
    stop = threading.Event()

    def _beat() -> None:
        while not stop.wait(seconds):
            try:
                if not ledger.heartbeat(entry.id, attempt_count=entry.attempt_count):
                    logger.warning("Entry %s is no longer processing attempt %d", entry.id, entry.attempt_count)
                    return
            except Exception:
                logger.exception("Heartbeat failed for entry %s", entry.id)

    thread = threading.Thread(target=_beat, name=f"ledger-heartbeat-{entry.id}", daemon=True)
    thread.start()
    try:
        yield
    finally:
        stop.set()
        thread.join(timeout=min(seconds, HEARTBEAT_JOIN_TIMEOUT.total_seconds()))
        if thread.is_alive():
            logger.debug("Heartbeat for entry %s still running after exit", entry.id)


def default_is_retryable(exc: BaseException) -> bool:
    return not isinstance(exc, NonRetryableExecutionError)


def run_claimed_execution(
    ledger: ExecutionLedger,
    instruction: TradeInstruction,
    execute: Callable[[LedgerEntry], T],
    *,
    heartbeat_interval: timedelta = DEFAULT_HEARTBEAT_INTERVAL,
    policy: ReclaimPolicy | None = None,
    result_to_json: Callable[[T], Any] | None = None,
    is_retryable: Callable[[BaseException], bool] = default_is_retryable,
) -> ExecutionReport[T]:
    """Execute ``instruction`` at most once per claim.

    Exceptions from ``execute`` mark the attempt failed and propagate; retry
    and backoff belong to the caller. ``is_retryable`` decides whether the
    failed entry may be claimed again by a later delivery. Expired
    instructions are never retried.
    """
    claim = ledger.claim(
        instruction.module,
        instruction.message_key,
        instruction.user_id,
        instruction.payload_hash,
        instruction.validity,
        policy=policy,
    )
    entry = claim.entry

    if not claim.is_new:
        disposition = (
            ExecutionDisposition.SKIPPED_IN_FLIGHT
            if entry.status is ExecutionLedgerStatus.PROCESSING
            else ExecutionDisposition.SKIPPED_TERMINAL
        )
        logger.info("Skipping %s (%s)", instruction.message_key, disposition.value)
        return ExecutionReport(disposition, entry, payload_mismatch=claim.payload_mismatch)

    if claim.is_stale:
        entry = ledger.fail(entry.id, EXPIRED_ERROR, attempt_count=entry.attempt_count, retryable=False)
        logger.info("Instruction %s expired before execution", instruction.message_key)
        return ExecutionReport(ExecutionDisposition.EXPIRED, entry, payload_mismatch=claim.payload_mismatch)

    try:
        with processing_heartbeat(ledger, entry, heartbeat_interval):
            result = execute(entry)
    except Exception as exc:
        retryable = is_retryable(exc)
        if not retryable:
            logger.warning("Instruction %s failed permanently: %s", instruction.message_key, exc)
        ledger.fail(entry.id, exc, attempt_count=entry.attempt_count, retryable=retryable)
        raise

    stored = result_to_json(result) if result_to_json is not None else None
    entry = ledger.complete(entry.id, stored, attempt_count=entry.attempt_count)
    return ExecutionReport(
        ExecutionDisposition.EXECUTED,
        entry,
        result=result,
        payload_mismatch=claim.payload_mismatch,
    )


class ExecutionRunner:
    """``run_claimed_execution`` bound to one ledger and its timing settings."""

    def __init__(
        self,
        ledger: ExecutionLedger,
        *,
        heartbeat_interval: timedelta = DEFAULT_HEARTBEAT_INTERVAL,
        is_retryable: Callable[[BaseException], bool] = default_is_retryable,
    ) -> None:
        self.ledger = ledger
        self.heartbeat_interval = heartbeat_interval
        self._is_retryable = is_retryable

    @classmethod
    def from_config(
        cls,
        engine: Engine,
        config: LedgerConfig,
        *,
        clock: LedgerClock | None = None,
        is_retryable: Callable[[BaseException], bool] = default_is_retryable,
    ) -> ExecutionRunner:
        """Build a runner whose reclaim window and heartbeat follow ``config``."""
        ledger = ExecutionLedger(
            engine,
            policy=StaleProcessingReclaimPolicy.from_config(config),
            clock=clock,
        )
        return cls(ledger, heartbeat_interval=config.heartbeat_interval, is_retryable=is_retryable)

    def run(
        self,
        instruction: TradeInstruction,
        execute: Callable[[LedgerEntry], T],
        *,
        result_to_json: Callable[[T], Any] | None = None,
    ) -> ExecutionReport[T]:
        return run_claimed_execution(
            self.ledger,
            instruction,
            execute,
            heartbeat_interval=self.heartbeat_interval,
            result_to_json=result_to_json,
            is_retryable=self._is_retryable,
        )


def execute_trades_sequentially(
    requests: Sequence[TRequest],
    execute_trade: Callable[[TRequest], TTrade],
    lock_guard: Callable[[], None] | None = None,
) -> list[tuple[TRequest, TTrade]]:
    """Run trades one at a time, checking the user lock around every call.

    The guard runs before and after each call so a lock lost during a slow
    exchange request stops the batch.
    """
    executions: list[tuple[TRequest, TTrade]] = []
    for request in requests:
        if lock_guard is not None:
            lock_guard()
        trade = execute_trade(request)
        if lock_guard is not None:
            lock_guard()
        executions.append((request, trade))
    return executions
