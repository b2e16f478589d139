"""Steady-state schema for the trade ledger core."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from alembic import op

logger = logging.getLogger(__name__)

# revision identifiers, used by Alembic.
revision: str = "0001_ledger_schema"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


TABLE_DDL: tuple[str, ...] = (
    """
    CREATE TABLE ledger_sequence (
        id BIGINT GENERATED BY DEFAULT AS IDENTITY,
        created_at TIMESTAMPTZ NOT NULL,
        CONSTRAINT pk_ledger_sequence PRIMARY KEY (id)
    );
    """,
    """
    CREATE TABLE trade_execution_ledger (
        id VARCHAR(36) NOT NULL,
        module VARCHAR(32) NOT NULL,
        message_key VARCHAR(191) NOT NULL,
        user_id VARCHAR(64) NOT NULL,
        status VARCHAR(16) NOT NULL,
        attempt_count INTEGER NOT NULL,
        payload_hash VARCHAR(128) NOT NULL,
        generated_at TIMESTAMPTZ,
        expires_at TIMESTAMPTZ,
        started_at TIMESTAMPTZ,
        finished_at TIMESTAMPTZ,
        error TEXT,
        retryable BOOLEAN NOT NULL DEFAULT TRUE,
        result TEXT,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL,
        CONSTRAINT pk_trade_execution_ledger PRIMARY KEY (id),
        CONSTRAINT uq_trade_execution_ledger_identity UNIQUE (module, message_key, user_id),
        CONSTRAINT ck_trade_execution_ledger_status CHECK (status IN ('processing', 'completed', 'failed')),
        CONSTRAINT ck_trade_execution_ledger_attempt_count_pos CHECK (attempt_count > 0),
        CONSTRAINT ck_trade_execution_ledger_message_key_not_blank CHECK (length(message_key) > 0),
        CONSTRAINT ck_trade_execution_ledger_terminal_finished CHECK (status = 'processing' OR finished_at IS NOT NULL)
    );
    """,
    """
    CREATE TABLE holding_ledger (
        id VARCHAR(36) NOT NULL,
        user_id VARCHAR(64) NOT NULL,
        symbol VARCHAR(255) NOT NULL,
        category VARCHAR(32) NOT NULL,
        sort_index INTEGER NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL,
        CONSTRAINT pk_holding_ledger PRIMARY KEY (id),
        CONSTRAINT uq_holding_ledger_identity UNIQUE (user_id, symbol, category),
        CONSTRAINT ck_holding_ledger_category CHECK (category IN ('coin_major', 'coin_minor', 'nasdaq')),
        CONSTRAINT ck_holding_ledger_sort_index_nonneg CHECK (sort_index >= 0)
    );
    """,
    """
    CREATE TABLE recommendation (
        id VARCHAR(36) NOT NULL,
        seq BIGINT NOT NULL,
        batch_id VARCHAR(36),
        symbol VARCHAR(255) NOT NULL,
        category VARCHAR(32) NOT NULL,
        reason TEXT,
        created_at TIMESTAMPTZ NOT NULL,
        CONSTRAINT pk_recommendation PRIMARY KEY (id),
        CONSTRAINT uq_recommendation_seq UNIQUE (seq),
        CONSTRAINT ck_recommendation_category CHECK (category IN ('coin_major', 'coin_minor', 'nasdaq'))
    );
    """,
    """
    CREATE TABLE trade (
        id VARCHAR(36) NOT NULL,
        seq BIGINT NOT NULL,
        user_id VARCHAR(64) NOT NULL,
        symbol VARCHAR(255) NOT NULL,
        type VARCHAR(8) NOT NULL,
        amount NUMERIC(38,18) NOT NULL,
        profit NUMERIC(38,18),
        created_at TIMESTAMPTZ NOT NULL,
        CONSTRAINT pk_trade PRIMARY KEY (id),
        CONSTRAINT uq_trade_seq UNIQUE (seq),
        CONSTRAINT ck_trade_type CHECK (type IN ('buy', 'sell'))
    );
    """,
    """
    CREATE TABLE notify (
        id VARCHAR(36) NOT NULL,
        seq BIGINT NOT NULL,
        user_id VARCHAR(64) NOT NULL,
        message TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        CONSTRAINT pk_notify PRIMARY KEY (id),
        CONSTRAINT uq_notify_seq UNIQUE (seq)
    );
    """,
    """
    CREATE TABLE allocation_audit_run (
        id VARCHAR(36) NOT NULL,
        seq BIGINT NOT NULL,
        report_type VARCHAR(32) NOT NULL,
        status VARCHAR(16) NOT NULL,
        summary TEXT,
        created_at TIMESTAMPTZ NOT NULL,
        CONSTRAINT pk_allocation_audit_run PRIMARY KEY (id),
        CONSTRAINT uq_allocation_audit_run_seq UNIQUE (seq),
        CONSTRAINT ck_allocation_audit_run_status CHECK (status IN ('pending', 'running', 'completed', 'failed'))
    );
    """,
)

INDEX_DDL: tuple[str, ...] = (
    "CREATE INDEX idx_trade_execution_ledger_status_started ON trade_execution_ledger (status, started_at);",
    "CREATE INDEX idx_holding_ledger_user_sort_index ON holding_ledger (user_id, sort_index);",
    "CREATE INDEX idx_recommendation_symbol_seq ON recommendation (symbol, seq);",
    "CREATE INDEX idx_trade_user_seq ON trade (user_id, seq);",
    "CREATE INDEX idx_notify_user_seq ON notify (user_id, seq);",
)

# Terminal ledger rows are immutable; only processing rows may be updated.
TERMINAL_GUARD_DDL: tuple[str, ...] = (
    """
    CREATE OR REPLACE FUNCTION fn_trade_execution_ledger_terminal_guard()
    RETURNS trigger
    LANGUAGE plpgsql
    AS $$
    BEGIN
        IF OLD.status <> 'processing' AND NEW.status <> 'processing' THEN
            RAISE EXCEPTION 'trade_execution_ledger row % is terminal (status=%)', OLD.id, OLD.status;
        END IF;
        RETURN NEW;
    END;
    $$;
    """,
    """
    CREATE TRIGGER trg_trade_execution_ledger_terminal_guard
    BEFORE UPDATE ON trade_execution_ledger
    FOR EACH ROW EXECUTE FUNCTION fn_trade_execution_ledger_terminal_guard();
    """,
)


def _execute_all(statements: Sequence[str]) -> None:
    """Execute an ordered sequence of SQL statements."""

    for statement in statements:
        try:
            op.execute(statement)
        except Exception:
            logger.exception("Migration statement failed.")
            raise


def upgrade() -> None:
    """Apply the ledger schema."""

    logger.info("Starting ledger schema migration upgrade.")
    _execute_all(TABLE_DDL)
    _execute_all(INDEX_DDL)
    _execute_all(TERMINAL_GUARD_DDL)
    logger.info("Completed ledger schema migration upgrade.")


def downgrade() -> None:
    """Revert the ledger schema."""

    logger.info("Starting ledger schema migration downgrade.")
    _execute_all(
        (
            "DROP TRIGGER IF EXISTS trg_trade_execution_ledger_terminal_guard ON trade_execution_ledger;",
            "DROP FUNCTION IF EXISTS fn_trade_execution_ledger_terminal_guard();",
            "DROP TABLE IF EXISTS allocation_audit_run;",
            "DROP TABLE IF EXISTS notify;",
            "DROP TABLE IF EXISTS trade;",
            "DROP TABLE IF EXISTS recommendation;",
            "DROP TABLE IF EXISTS holding_ledger;",
            "DROP TABLE IF EXISTS trade_execution_ledger;",
            "DROP TABLE IF EXISTS ledger_sequence;",
        )
    )
    logger.info("Completed ledger schema migration downgrade.")
