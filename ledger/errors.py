"""Exception types raised by the ledger core.

Store failures are never wrapped: ``sqlalchemy.exc.SQLAlchemyError`` reaches
the caller unchanged so retry/backoff stays a caller decision.
"""

from __future__ import annotations


class LedgerError(RuntimeError):
    """Base class for ledger contract violations."""


class LedgerConfigError(LedgerError):
    """Raised when environment configuration is missing or malformed."""


class LedgerEntryNotFoundError(LedgerError, LookupError):
    """Raised when an execution-ledger entry id does not resolve to a row."""


class InvalidPageRequestError(LedgerError, ValueError):
    """Raised for out-of-range page, limit or unknown filter columns."""


class HoldingsContractError(LedgerError, ValueError):
    """Raised when reconciliation input breaks the caller contract."""


class NonRetryableExecutionError(LedgerError):
    """Raised by an execute callback when a retry cannot succeed (e.g. unknown order)."""
