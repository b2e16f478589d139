#!/usr/bin/env python3
"""Operator CLI for inspecting and bootstrapping the trade ledger store."""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
import sys
from typing import Any, Optional, Sequence

# Ensure repository root is importable when script is executed by path.
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from backend.db import create_ledger_engine, create_schema
from backend.db.models import Notify
from ledger.config import LedgerConfig, load_ledger_config
from ledger.errors import InvalidPageRequestError, LedgerConfigError
from ledger.execution_ledger import ExecutionLedger, LedgerEntry
from ledger.hashing import normalize_timestamp
from ledger.holding_store import HoldingLedgerStore
from ledger.pagination import CursorPager, SortDirection
from ledger.sequence import SequenceGenerator

logger = logging.getLogger("ledger_cli")


def _entry_payload(entry: LedgerEntry) -> dict[str, Any]:
    def _ts(value: Any) -> Optional[str]:
        return normalize_timestamp(value) if value is not None else None

    return {
        "id": entry.id,
        "module": entry.module,
        "message_key": entry.message_key,
        "user_id": entry.user_id,
        "status": entry.status.value,
        "attempt_count": entry.attempt_count,
        "payload_hash": entry.payload_hash,
        "generated_at": _ts(entry.generated_at),
        "expires_at": _ts(entry.expires_at),
        "started_at": _ts(entry.started_at),
        "finished_at": _ts(entry.finished_at),
        "error": entry.error,
        "retryable": entry.retryable,
    }


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Trade ledger operator CLI")
    parser.add_argument("--database-url", help="SQLAlchemy URL (defaults to LEDGER_DATABASE_URL)")

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init-schema", help="Create missing ledger tables from ORM metadata")
    subparsers.add_parser("sequence-current", help="Print the highest issued sequence number")
    subparsers.add_parser("sequence-next", help="Issue and print one sequence number")

    holdings_cmd = subparsers.add_parser("holdings", help="Print a user's holdings snapshot")
    holdings_cmd.add_argument("--user-id", required=True)

    entry_cmd = subparsers.add_parser("ledger-entry", help="Look up one execution ledger entry")
    entry_cmd.add_argument("--module", required=True)
    entry_cmd.add_argument("--message-key", required=True)
    entry_cmd.add_argument("--user-id", required=True)

    notify_cmd = subparsers.add_parser("notifications", help="Page a user's notifications by cursor")
    notify_cmd.add_argument("--user-id", required=True)
    notify_cmd.add_argument("--cursor", default=None)
    notify_cmd.add_argument("--limit", type=int, default=10)
    notify_cmd.add_argument("--sort", choices=("asc", "desc"), default="desc")

    return parser


def _load_config(args: argparse.Namespace) -> LedgerConfig:
    try:
        return load_ledger_config(database_url=args.database_url)
    except LedgerConfigError as exc:
        raise SystemExit(str(exc)) from exc


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    config = _load_config(args)
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    engine = create_ledger_engine(config.database_url, pool_size=config.db_pool_size, echo=config.db_echo)

    try:
        if args.command == "init-schema":
            create_schema(engine)
            print(json.dumps({"status": "ok"}, sort_keys=True))
            return 0

        if args.command in ("sequence-current", "sequence-next"):
            sequence = SequenceGenerator(engine)
            value = sequence.current() if args.command == "sequence-current" else sequence.next()
            print(json.dumps({"sequence": value}, sort_keys=True))
            return 0

        if args.command == "holdings":
            items = HoldingLedgerStore(engine).fetch_holdings(args.user_id)
            payload = {
                "user_id": args.user_id,
                "items": [
                    {"symbol": item.symbol, "category": item.category.value, "index": item.index}
                    for item in items
                ],
            }
            print(json.dumps(payload, sort_keys=True))
            return 0

        if args.command == "ledger-entry":
            entry = ExecutionLedger(engine).find(args.module, args.message_key, args.user_id)
            if entry is None:
                print(json.dumps({"found": False}, sort_keys=True))
                return 1
            print(json.dumps({"found": True, "entry": _entry_payload(entry)}, sort_keys=True))
            return 0

        pager: CursorPager[dict[str, Any]] = CursorPager(
            engine,
            Notify.__table__,
            max_page_size=config.max_page_size,
        )
        try:
            page = pager.cursor(
                filters={"user_id": args.user_id},
                sort=SortDirection(args.sort),
                cursor=args.cursor,
                limit=args.limit,
            )
        except InvalidPageRequestError as exc:
            raise SystemExit(str(exc)) from exc
        payload = {
            "items": [
                {"id": item["id"], "seq": item["seq"], "message": item["message"]}
                for item in page.items
            ],
            "has_next_page": page.has_next_page,
            "next_cursor": page.next_cursor,
        }
        print(json.dumps(payload, sort_keys=True))
        return 0
    finally:
        engine.dispose()


if __name__ == "__main__":
    raise SystemExit(main())
