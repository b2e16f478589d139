"""Canonical payload hashing for idempotency checks."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from hashlib import sha256
import json
from typing import Any


def normalize_timestamp(value: datetime) -> str:
    """Normalize timestamps to UTC RFC3339 without subsecond truncation."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return normalize_timestamp(value)
    if isinstance(value, Decimal):
        return format(value.normalize(), "f") if value != 0 else "0"
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=str)
    raise TypeError(f"Unsupported payload value type: {type(value).__name__}")


def canonical_json(payload: Any) -> str:
    """Serialize a payload with sorted keys and no insignificant whitespace."""
    return json.dumps(
        payload,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=_json_default,
    )


def hash_payload(payload: Any) -> str:
    """SHA256 hex digest of the canonical payload; ``None`` hashes as ``{}``."""
    body = canonical_json({} if payload is None else payload)
    return sha256(body.encode("utf-8")).hexdigest()
