"""Unit tests for the claim-then-execute workflow helpers."""

from __future__ import annotations

from datetime import timedelta
import threading
import time
from typing import Any

import pytest
from sqlalchemy import Engine

from backend.db.enums import ExecutionLedgerStatus, ExecutionModule
from ledger import execution_runner
from ledger.config import load_ledger_config
from ledger.errors import NonRetryableExecutionError
from ledger.execution_ledger import ExecutionLedger, StaleProcessingReclaimPolicy
from ledger.execution_runner import (
    EXPIRED_ERROR,
    ExecutionDisposition,
    ExecutionRunner,
    TradeInstruction,
    execute_trades_sequentially,
    processing_heartbeat,
    resolve_module_key,
    run_claimed_execution,
)
from ledger.hashing import hash_payload
from tests.utils.clock import MutableClock


def _instruction(clock: MutableClock, **overrides: Any) -> TradeInstruction:
    values: dict[str, Any] = {
        "module": ExecutionModule.ALLOCATION.value,
        "message_key": "batch-7:BTC/KRW",
        "user_id": "user-1",
        "payload": {"symbol": "BTC/KRW", "diff": 0.25},
        "generated_at": clock.now_utc(),
        "expires_at": clock.now_utc() + timedelta(minutes=1),
    }
    values.update(overrides)
    return TradeInstruction(**values)


class _Exchange:
    def __init__(self, *, error: Exception | None = None) -> None:
        self.calls: list[str] = []
        self.error = error

    def __call__(self, entry: Any) -> dict[str, Any]:
        self.calls.append(entry.id)
        if self.error is not None:
            raise self.error
        return {"order_id": f"o-{len(self.calls)}"}


def test_instruction_hash_matches_canonical_payload_hash(clock: MutableClock) -> None:
    instruction = _instruction(clock, payload={"b": 2, "a": 1})
    assert instruction.payload_hash == hash_payload({"a": 1, "b": 2})
    assert instruction.validity.expires_at == clock.now_utc() + timedelta(minutes=1)


def test_instruction_executes_once(ledger_engine: Engine, clock: MutableClock) -> None:
    ledger = ExecutionLedger(ledger_engine, clock=clock)
    exchange = _Exchange()
    instruction = _instruction(clock)

    first = run_claimed_execution(ledger, instruction, exchange, result_to_json=lambda result: result)
    second = run_claimed_execution(ledger, instruction, exchange)

    assert first.disposition is ExecutionDisposition.EXECUTED
    assert first.result == {"order_id": "o-1"}
    assert first.entry.status is ExecutionLedgerStatus.COMPLETED
    assert first.entry.result == '{"order_id":"o-1"}'
    assert second.disposition is ExecutionDisposition.SKIPPED_TERMINAL
    assert second.result is None
    assert len(exchange.calls) == 1


def test_in_flight_instruction_is_skipped(ledger_engine: Engine, clock: MutableClock) -> None:
    ledger = ExecutionLedger(ledger_engine, clock=clock)
    instruction = _instruction(clock)
    ledger.claim(
        instruction.module,
        instruction.message_key,
        instruction.user_id,
        instruction.payload_hash,
        instruction.validity,
    )
    exchange = _Exchange()

    report = run_claimed_execution(ledger, instruction, exchange)

    assert report.disposition is ExecutionDisposition.SKIPPED_IN_FLIGHT
    assert exchange.calls == []


def test_changed_payload_is_reported_on_skip(ledger_engine: Engine, clock: MutableClock) -> None:
    ledger = ExecutionLedger(ledger_engine, clock=clock)
    run_claimed_execution(ledger, _instruction(clock), _Exchange())

    report = run_claimed_execution(ledger, _instruction(clock, payload={"symbol": "BTC/KRW", "diff": 0.5}), _Exchange())

    assert report.disposition is ExecutionDisposition.SKIPPED_TERMINAL
    assert report.payload_mismatch is True


def test_expired_instruction_is_failed_without_execution(ledger_engine: Engine, clock: MutableClock) -> None:
    ledger = ExecutionLedger(ledger_engine, clock=clock)
    exchange = _Exchange()
    instruction = _instruction(clock, expires_at=clock.now_utc() - timedelta(seconds=1))

    report = run_claimed_execution(ledger, instruction, exchange)

    assert report.disposition is ExecutionDisposition.EXPIRED
    assert report.entry.status is ExecutionLedgerStatus.FAILED
    assert report.entry.error == EXPIRED_ERROR
    assert exchange.calls == []


def test_exchange_error_fails_entry_and_propagates(ledger_engine: Engine, clock: MutableClock) -> None:
    ledger = ExecutionLedger(ledger_engine, clock=clock)
    instruction = _instruction(clock)

    with pytest.raises(RuntimeError, match="insufficient balance"):
        run_claimed_execution(ledger, instruction, _Exchange(error=RuntimeError("insufficient balance")))

    entry = ledger.find(instruction.module, instruction.message_key, instruction.user_id)
    assert entry is not None
    assert entry.status is ExecutionLedgerStatus.FAILED
    assert entry.error == "RuntimeError: insufficient balance"


def test_failed_instruction_is_retried_under_reclaim_policy(ledger_engine: Engine, clock: MutableClock) -> None:
    ledger = ExecutionLedger(ledger_engine, clock=clock)
    instruction = _instruction(clock)
    with pytest.raises(RuntimeError):
        run_claimed_execution(ledger, instruction, _Exchange(error=RuntimeError("timeout")))

    exchange = _Exchange()
    report = run_claimed_execution(
        ledger,
        instruction,
        exchange,
        policy=StaleProcessingReclaimPolicy(),
    )

    assert report.disposition is ExecutionDisposition.EXECUTED
    assert report.entry.attempt_count == 2
    assert report.entry.status is ExecutionLedgerStatus.COMPLETED
    assert len(exchange.calls) == 1


def test_permanent_exchange_error_is_not_retried(ledger_engine: Engine, clock: MutableClock) -> None:
    ledger = ExecutionLedger(ledger_engine, clock=clock, policy=StaleProcessingReclaimPolicy())
    instruction = _instruction(clock)
    exchange = _Exchange(error=NonRetryableExecutionError("order o-1 not found"))

    with pytest.raises(NonRetryableExecutionError):
        run_claimed_execution(ledger, instruction, exchange)
    clock.advance(timedelta(seconds=5))
    later = [run_claimed_execution(ledger, instruction, exchange) for _ in range(2)]

    assert len(exchange.calls) == 1
    assert [report.disposition for report in later] == [ExecutionDisposition.SKIPPED_TERMINAL] * 2
    assert later[-1].entry.attempt_count == 1
    assert later[-1].entry.retryable is False
    assert later[-1].entry.error == "NonRetryableExecutionError: order o-1 not found"


def test_error_classifier_marks_failures_permanent(ledger_engine: Engine, clock: MutableClock) -> None:
    ledger = ExecutionLedger(ledger_engine, clock=clock, policy=StaleProcessingReclaimPolicy())
    instruction = _instruction(clock)
    exchange = _Exchange(error=LookupError("unknown market"))

    def permanent_lookups(exc: BaseException) -> bool:
        return not isinstance(exc, LookupError)

    with pytest.raises(LookupError):
        run_claimed_execution(ledger, instruction, exchange, is_retryable=permanent_lookups)
    report = run_claimed_execution(ledger, instruction, exchange, is_retryable=permanent_lookups)

    assert report.disposition is ExecutionDisposition.SKIPPED_TERMINAL
    assert len(exchange.calls) == 1


def test_expired_instruction_is_not_retried(ledger_engine: Engine, clock: MutableClock) -> None:
    ledger = ExecutionLedger(ledger_engine, clock=clock, policy=StaleProcessingReclaimPolicy())
    exchange = _Exchange()
    instruction = _instruction(clock, expires_at=clock.now_utc() - timedelta(seconds=1))

    reports = [run_claimed_execution(ledger, instruction, exchange) for _ in range(3)]

    assert [(report.disposition, report.entry.attempt_count) for report in reports] == [
        (ExecutionDisposition.EXPIRED, 1),
        (ExecutionDisposition.SKIPPED_TERMINAL, 1),
        (ExecutionDisposition.SKIPPED_TERMINAL, 1),
    ]
    assert reports[-1].entry.error == EXPIRED_ERROR
    assert exchange.calls == []


def test_runner_from_config_uses_configured_timings(
    ledger_engine: Engine, clock: MutableClock, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("LEDGER_PROCESSING_STALE_SECONDS", "60")
    monkeypatch.setenv("LEDGER_HEARTBEAT_INTERVAL_SECONDS", "5")
    monkeypatch.delenv("LEDGER_LOG_LEVEL", raising=False)
    config = load_ledger_config(database_url="sqlite://")

    runner = ExecutionRunner.from_config(ledger_engine, config, clock=clock)
    assert runner.heartbeat_interval == timedelta(seconds=5)

    instruction = _instruction(clock, expires_at=clock.now_utc() + timedelta(hours=1))
    # A worker that claimed the instruction and then vanished.
    runner.ledger.claim(
        instruction.module,
        instruction.message_key,
        instruction.user_id,
        instruction.payload_hash,
        instruction.validity,
    )
    exchange = _Exchange()

    clock.advance(timedelta(seconds=59))
    assert runner.run(instruction, exchange).disposition is ExecutionDisposition.SKIPPED_IN_FLIGHT

    clock.advance(timedelta(seconds=1))
    report = runner.run(instruction, exchange)
    assert report.disposition is ExecutionDisposition.EXECUTED
    assert report.entry.attempt_count == 2
    assert len(exchange.calls) == 1


class _HeartbeatLedger:
    def __init__(self, *, alive_for: int) -> None:
        self.beats: list[tuple[str, int | None]] = []
        self.alive_for = alive_for
        self.done = threading.Event()

    def heartbeat(self, entry_id: str, *, attempt_count: int | None = None) -> bool:
        self.beats.append((entry_id, attempt_count))
        if len(self.beats) >= self.alive_for:
            self.done.set()
            return False
        return True


def test_processing_heartbeat_beats_until_entry_is_lost(ledger_engine: Engine, clock: MutableClock) -> None:
    entry = ExecutionLedger(ledger_engine, clock=clock).claim("risk", "m-1", "user-1", "h").entry
    fake = _HeartbeatLedger(alive_for=3)

    with processing_heartbeat(fake, entry, timedelta(milliseconds=10)):  # type: ignore[arg-type]
        assert fake.done.wait(timeout=5)

    assert len(fake.beats) == 3
    assert set(fake.beats) == {(entry.id, 1)}


def test_processing_heartbeat_sends_an_immediate_beat(ledger_engine: Engine, clock: MutableClock) -> None:
    entry = ExecutionLedger(ledger_engine, clock=clock).claim("risk", "m-1", "user-1", "h").entry
    fake = _HeartbeatLedger(alive_for=100)

    with processing_heartbeat(fake, entry, timedelta(seconds=30)):  # type: ignore[arg-type]
        pass

    assert fake.beats == [(entry.id, 1)]


class _BlockingHeartbeatLedger:
    def __init__(self) -> None:
        self.in_flight = threading.Event()
        self.release = threading.Event()
        self.beats = 0

    def heartbeat(self, entry_id: str, *, attempt_count: int | None = None) -> bool:
        self.beats += 1
        if self.beats > 1:
            self.in_flight.set()
            self.release.wait(timeout=5)
        return True


def test_processing_heartbeat_exit_does_not_wait_out_a_slow_beat(
    ledger_engine: Engine, clock: MutableClock, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(execution_runner, "HEARTBEAT_JOIN_TIMEOUT", timedelta(milliseconds=50))
    entry = ExecutionLedger(ledger_engine, clock=clock).claim("risk", "m-1", "user-1", "h").entry
    fake = _BlockingHeartbeatLedger()
    interval = timedelta(milliseconds=500)

    try:
        with processing_heartbeat(fake, entry, interval):  # type: ignore[arg-type]
            assert fake.in_flight.wait(timeout=5)
            started = time.monotonic()
        elapsed = time.monotonic() - started
    finally:
        fake.release.set()

    assert elapsed < interval.total_seconds() / 2


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("allocation", ExecutionModule.ALLOCATION),
        ("rebalance", ExecutionModule.ALLOCATION),
        ("risk", ExecutionModule.RISK),
        ("volatility", ExecutionModule.RISK),
        ("unknown", ExecutionModule.RISK),
        (None, ExecutionModule.ALLOCATION),
        ("", ExecutionModule.RISK),
    ],
)
def test_resolve_module_key(raw: str | None, expected: ExecutionModule) -> None:
    fallback = ExecutionModule.ALLOCATION if raw is None else ExecutionModule.RISK
    assert resolve_module_key(raw, fallback) is expected


def test_sequential_execution_checks_lock_around_each_trade() -> None:
    events: list[str] = []

    def guard() -> None:
        events.append("guard")

    def trade(symbol: str) -> str:
        events.append(symbol)
        return f"filled:{symbol}"

    executions = execute_trades_sequentially(["BTC", "ETH"], trade, guard)

    assert executions == [("BTC", "filled:BTC"), ("ETH", "filled:ETH")]
    assert events == ["guard", "BTC", "guard", "guard", "ETH", "guard"]


def test_sequential_execution_stops_when_lock_is_lost() -> None:
    traded: list[str] = []
    state = {"checks": 0}

    def guard() -> None:
        state["checks"] += 1
        if state["checks"] > 2:
            raise RuntimeError("lock lost")

    with pytest.raises(RuntimeError, match="lock lost"):
        execute_trades_sequentially(["BTC", "ETH"], lambda symbol: traded.append(symbol), guard)

    assert traded == ["BTC"]


def test_sequential_execution_without_guard() -> None:
    assert execute_trades_sequentially([1, 2], lambda value: value * 10) == [(1, 10), (2, 20)]
