"""Per-instruction idempotency ledger for exchange calls.

The unique constraint on ``(module, message_key, user_id)`` is the only
arbiter of who executes an instruction: ``claim`` attempts the insert and a
constraint violation means another caller got there first. Workers never
check-then-insert, so the guarantee holds across processes and machines that
share nothing but the store.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
from typing import Any, Mapping, Optional, Protocol

from sqlalchemy import Engine, insert, select, update
from sqlalchemy.exc import IntegrityError

from backend.db.enums import TERMINAL_STATUSES, ExecutionLedgerStatus
from backend.db.models import TradeExecutionLedger
from ledger.common import LedgerClock, as_utc, new_row_id
from ledger.config import LedgerConfig
from ledger.errors import LedgerEntryNotFoundError
from ledger.hashing import canonical_json

logger = logging.getLogger(__name__)

DEFAULT_PROCESSING_STALE_AFTER = timedelta(minutes=5)


@dataclass(frozen=True)
class ClaimValidity:
    """Validity window of the underlying instruction (e.g. a quoted price)."""

    generated_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None


@dataclass(frozen=True)
class LedgerEntry:
    id: str
    module: str
    message_key: str
    user_id: str
    status: ExecutionLedgerStatus
    attempt_count: int
    payload_hash: str
    generated_at: Optional[datetime]
    expires_at: Optional[datetime]
    started_at: Optional[datetime]
    finished_at: Optional[datetime]
    error: Optional[str]
    retryable: bool
    result: Optional[str]
    created_at: datetime
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now


@dataclass(frozen=True)
class ClaimResult:
    """Outcome of ``ExecutionLedger.claim``.

    ``is_new=False`` is a normal outcome: the caller must not repeat the
    exchange call. ``payload_mismatch`` and ``is_stale`` are surfaced for the
    caller to act on; the ledger does not resolve them.
    """

    is_new: bool
    entry: LedgerEntry
    payload_mismatch: bool
    is_stale: bool
    reclaimed: bool = False


class ReclaimPolicy(Protocol):
    """Caller-side decision on whether an existing entry may be attempted again."""

    def should_reclaim(self, entry: LedgerEntry, now: datetime) -> bool:
        """Return True to move the entry back to processing with a new attempt."""


@dataclass(frozen=True)
class NeverReclaim:
    """Every duplicate claim short-circuits."""

    def should_reclaim(self, entry: LedgerEntry, now: datetime) -> bool:
        return False


@dataclass(frozen=True)
class StaleProcessingReclaimPolicy:
    """Retry retryable failures and processing entries that look abandoned.

    A processing entry is abandoned once its instruction expired or its
    ``started_at`` (refreshed by heartbeats) is older than ``stale_after``.
    Entries failed with ``retryable=False`` (expired instructions, permanent
    exchange errors) stay failed.
    """

    stale_after: timedelta = DEFAULT_PROCESSING_STALE_AFTER
    reclaim_failed: bool = True

    @classmethod
    def from_config(cls, config: LedgerConfig) -> StaleProcessingReclaimPolicy:
        return cls(stale_after=config.processing_stale_after)

    def should_reclaim(self, entry: LedgerEntry, now: datetime) -> bool:
        if entry.status is ExecutionLedgerStatus.FAILED:
            return self.reclaim_failed and entry.retryable
        if entry.status is not ExecutionLedgerStatus.PROCESSING:
            return False
        if entry.is_expired(now):
            return True
        if entry.started_at is None:
            return False
        return entry.started_at + self.stale_after <= now


def _describe_error(error: Any) -> str:
    if isinstance(error, BaseException):
        message = str(error)
        return f"{type(error).__name__}: {message}" if message else type(error).__name__
    return str(error)


def _row_to_entry(row: Mapping[str, Any]) -> LedgerEntry:
    return LedgerEntry(
        id=str(row["id"]),
        module=row["module"],
        message_key=row["message_key"],
        user_id=row["user_id"],
        status=ExecutionLedgerStatus(row["status"]),
        attempt_count=int(row["attempt_count"]),
        payload_hash=row["payload_hash"],
        generated_at=as_utc(row["generated_at"]),
        expires_at=as_utc(row["expires_at"]),
        started_at=as_utc(row["started_at"]),
        finished_at=as_utc(row["finished_at"]),
        error=row["error"],
        retryable=bool(row["retryable"]),
        result=row["result"],
        created_at=as_utc(row["created_at"]),
        updated_at=as_utc(row["updated_at"]),
    )


class ExecutionLedger:
    """Store-backed idempotency table for trade instructions."""

    def __init__(
        self,
        engine: Engine,
        *,
        policy: ReclaimPolicy | None = None,
        clock: LedgerClock | None = None,
    ) -> None:
        self._engine = engine
        self._policy: ReclaimPolicy = policy or NeverReclaim()
        self._clock = clock or LedgerClock()
        self._table = TradeExecutionLedger.__table__

    def claim(
        self,
        module: str,
        message_key: str,
        user_id: str,
        payload_hash: str,
        validity: ClaimValidity | None = None,
        *,
        policy: ReclaimPolicy | None = None,
    ) -> ClaimResult:
        validity = validity or ClaimValidity()
        now = self._clock.now_utc()
        row = {
            "id": new_row_id(),
            "module": module,
            "message_key": message_key,
            "user_id": user_id,
            "status": ExecutionLedgerStatus.PROCESSING.value,
            "attempt_count": 1,
            "payload_hash": payload_hash,
            "generated_at": as_utc(validity.generated_at),
            "expires_at": as_utc(validity.expires_at),
            "started_at": now,
            "finished_at": None,
            "error": None,
            "retryable": True,
            "result": None,
            "created_at": now,
            "updated_at": now,
        }

        try:
            with self._engine.begin() as conn:
                conn.execute(insert(self._table).values(**row))
        except IntegrityError:
            existing = self.find(module, message_key, user_id)
            if existing is None:
                # Not an identity collision (e.g. a CHECK constraint); surface it.
                raise
            return self._resolve_existing(existing, payload_hash, validity, policy or self._policy, now)

        entry = _row_to_entry(row)
        logger.debug(
            "Claimed %s/%s for user %s (entry %s)",
            module,
            message_key,
            user_id,
            entry.id,
        )
        return ClaimResult(
            is_new=True,
            entry=entry,
            payload_mismatch=False,
            is_stale=entry.is_expired(now),
        )

    def _resolve_existing(
        self,
        existing: LedgerEntry,
        payload_hash: str,
        validity: ClaimValidity,
        policy: ReclaimPolicy,
        now: datetime,
    ) -> ClaimResult:
        payload_mismatch = existing.payload_hash != payload_hash
        if payload_mismatch:
            logger.warning(
                "Payload hash mismatch for %s/%s user %s (entry %s)",
                existing.module,
                existing.message_key,
                existing.user_id,
                existing.id,
            )

        if policy.should_reclaim(existing, now):
            reclaimed = self._try_reclaim(existing, payload_hash, validity, now)
            if reclaimed is not None:
                logger.info(
                    "Reclaimed entry %s from %s, attempt %d",
                    existing.id,
                    existing.status.value,
                    reclaimed.attempt_count,
                )
                return ClaimResult(
                    is_new=True,
                    entry=reclaimed,
                    payload_mismatch=payload_mismatch,
                    is_stale=reclaimed.is_expired(now),
                    reclaimed=True,
                )
            # Another worker reclaimed or heartbeated first.
            existing = self.find(existing.module, existing.message_key, existing.user_id) or existing

        logger.debug("Duplicate claim for entry %s (status=%s)", existing.id, existing.status.value)
        return ClaimResult(
            is_new=False,
            entry=existing,
            payload_mismatch=payload_mismatch,
            is_stale=existing.is_expired(now),
        )

    def _try_reclaim(
        self,
        existing: LedgerEntry,
        payload_hash: str,
        validity: ClaimValidity,
        now: datetime,
    ) -> Optional[LedgerEntry]:
        table = self._table
        started_at_guard = (
            table.c.started_at.is_(None)
            if existing.started_at is None
            else table.c.started_at == existing.started_at
        )
        statement = (
            update(table)
            .where(
                table.c.id == existing.id,
                table.c.status == existing.status.value,
                table.c.attempt_count == existing.attempt_count,
                started_at_guard,
            )
            .values(
                status=ExecutionLedgerStatus.PROCESSING.value,
                attempt_count=existing.attempt_count + 1,
                payload_hash=payload_hash,
                generated_at=as_utc(validity.generated_at) or existing.generated_at,
                expires_at=as_utc(validity.expires_at) or existing.expires_at,
                error=None,
                retryable=True,
                result=None,
                started_at=now,
                finished_at=None,
                updated_at=now,
            )
        )
        with self._engine.begin() as conn:
            affected = conn.execute(statement).rowcount
        if not affected:
            return None
        return self.get(existing.id)

    def complete(
        self,
        entry_id: str,
        result: Any = None,
        *,
        attempt_count: int | None = None,
    ) -> LedgerEntry:
        """Move a processing entry to completed; a terminal entry is left as is."""
        serialized = None if result is None else canonical_json(result)
        return self._finish(entry_id, ExecutionLedgerStatus.COMPLETED, None, serialized, attempt_count)

    def fail(
        self,
        entry_id: str,
        error: Any,
        *,
        attempt_count: int | None = None,
        retryable: bool = True,
    ) -> LedgerEntry:
        """Move a processing entry to failed; a terminal entry is left as is.

        ``retryable=False`` marks the failure permanent so reclaim policies
        leave the entry alone.
        """
        return self._finish(
            entry_id,
            ExecutionLedgerStatus.FAILED,
            _describe_error(error),
            None,
            attempt_count,
            retryable=retryable,
        )

    def _finish(
        self,
        entry_id: str,
        status: ExecutionLedgerStatus,
        error: Optional[str],
        result: Optional[str],
        attempt_count: int | None,
        *,
        retryable: bool = True,
    ) -> LedgerEntry:
        table = self._table
        now = self._clock.now_utc()
        conditions = [
            table.c.id == entry_id,
            table.c.status == ExecutionLedgerStatus.PROCESSING.value,
        ]
        # A worker whose attempt was reclaimed must not finish the newer attempt.
        if attempt_count is not None:
            conditions.append(table.c.attempt_count == attempt_count)

        with self._engine.begin() as conn:
            affected = conn.execute(
                update(table)
                .where(*conditions)
                .values(
                    status=status.value,
                    error=error,
                    retryable=retryable,
                    result=result,
                    finished_at=now,
                    updated_at=now,
                )
            ).rowcount

        entry = self.get(entry_id)
        if not affected:
            logger.debug(
                "Ignored %s transition for entry %s (status=%s, attempt=%d)",
                status.value,
                entry_id,
                entry.status.value,
                entry.attempt_count,
            )
        return entry

    def heartbeat(self, entry_id: str, *, attempt_count: int | None = None) -> bool:
        """Refresh ``started_at`` of a processing entry; False if it is no longer ours."""
        table = self._table
        now = self._clock.now_utc()
        conditions = [
            table.c.id == entry_id,
            table.c.status == ExecutionLedgerStatus.PROCESSING.value,
        ]
        if attempt_count is not None:
            conditions.append(table.c.attempt_count == attempt_count)
        with self._engine.begin() as conn:
            affected = conn.execute(
                update(table).where(*conditions).values(started_at=now, updated_at=now)
            ).rowcount
        return bool(affected)

    def get(self, entry_id: str) -> LedgerEntry:
        with self._engine.connect() as conn:
            row = conn.execute(
                select(self._table).where(self._table.c.id == entry_id)
            ).mappings().first()
        if row is None:
            raise LedgerEntryNotFoundError(f"No execution ledger entry with id={entry_id}.")
        return _row_to_entry(row)

    def find(self, module: str, message_key: str, user_id: str) -> Optional[LedgerEntry]:
        table = self._table
        with self._engine.connect() as conn:
            row = conn.execute(
                select(table).where(
                    table.c.module == module,
                    table.c.message_key == message_key,
                    table.c.user_id == user_id,
                )
            ).mappings().first()
        return None if row is None else _row_to_entry(row)
