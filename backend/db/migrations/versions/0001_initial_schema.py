"""Initial schema for investment accrual, ledger and job-run tracking."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from alembic import op

logger = logging.getLogger(__name__)

# revision identifiers, used by Alembic.
revision: str = "0001_initial_schema"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


TABLE_DDL: tuple[str, ...] = (
    """
    CREATE TABLE users (
        id BIGINT GENERATED BY DEFAULT AS IDENTITY,
        email TEXT NOT NULL,
        balance NUMERIC(38,18) NOT NULL DEFAULT 0,
        active_deposits NUMERIC(38,18) NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT pk_users PRIMARY KEY (id),
        CONSTRAINT uq_users_email UNIQUE (email),
        CONSTRAINT ck_users_balance_nonneg CHECK (balance >= 0),
        CONSTRAINT ck_users_active_deposits_nonneg CHECK (active_deposits >= 0)
    );
    """,
    """
    CREATE TABLE investments (
        id BIGINT GENERATED BY DEFAULT AS IDENTITY,
        user_id BIGINT NOT NULL,
        transaction_id BIGINT NOT NULL,
        plan_name TEXT NOT NULL,
        plan_duration INTEGER NOT NULL,
        daily_profit NUMERIC(38,18) NOT NULL,
        profit_basis TEXT NOT NULL DEFAULT 'PERCENT',
        principal_amount NUMERIC(38,18) NOT NULL,
        total_return NUMERIC(38,18) NOT NULL,
        start_date TIMESTAMPTZ NOT NULL,
        end_date TIMESTAMPTZ NOT NULL,
        status TEXT NOT NULL DEFAULT 'active',
        days_elapsed INTEGER NOT NULL DEFAULT 0,
        total_earned NUMERIC(38,18) NOT NULL DEFAULT 0,
        last_return_applied TIMESTAMPTZ,
        first_profit_date TIMESTAMPTZ,
        credit_on_completion BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT pk_investments PRIMARY KEY (id),
        CONSTRAINT uq_investments_transaction UNIQUE (transaction_id),
        CONSTRAINT ck_investments_status CHECK (status IN ('active', 'completed')),
        CONSTRAINT ck_investments_profit_basis CHECK (profit_basis IN ('PERCENT', 'FIXED')),
        CONSTRAINT ck_investments_duration_pos CHECK (plan_duration > 0),
        CONSTRAINT ck_investments_daily_profit_pos CHECK (daily_profit > 0),
        CONSTRAINT ck_investments_principal_pos CHECK (principal_amount > 0),
        CONSTRAINT ck_investments_total_return_pos CHECK (total_return > 0),
        CONSTRAINT ck_investments_days_elapsed_range CHECK (days_elapsed >= 0 AND days_elapsed <= plan_duration),
        CONSTRAINT ck_investments_total_earned_range CHECK (total_earned >= 0 AND total_earned <= total_return),
        CONSTRAINT ck_investments_end_after_start CHECK (end_date >= start_date),
        CONSTRAINT fk_investments_user FOREIGN KEY (user_id)
            REFERENCES users (id)
            ON UPDATE RESTRICT
            ON DELETE RESTRICT
    );
    """,
    """
    CREATE TABLE investment_returns (
        id BIGINT GENERATED ALWAYS AS IDENTITY,
        investment_id BIGINT NOT NULL,
        user_id BIGINT NOT NULL,
        amount NUMERIC(38,18) NOT NULL,
        return_date TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT pk_investment_returns PRIMARY KEY (id),
        CONSTRAINT uq_investment_returns_investment_day UNIQUE (investment_id, return_date),
        CONSTRAINT ck_investment_returns_amount_nonneg CHECK (amount >= 0),
        CONSTRAINT ck_investment_returns_day_aligned CHECK (date_trunc('day', return_date AT TIME ZONE 'UTC') = return_date AT TIME ZONE 'UTC'),
        CONSTRAINT fk_investment_returns_investment FOREIGN KEY (investment_id)
            REFERENCES investments (id)
            ON UPDATE RESTRICT
            ON DELETE RESTRICT,
        CONSTRAINT fk_investment_returns_user FOREIGN KEY (user_id)
            REFERENCES users (id)
            ON UPDATE RESTRICT
            ON DELETE RESTRICT
    );
    """,
    """
    CREATE TABLE completed_investments (
        id BIGINT GENERATED ALWAYS AS IDENTITY,
        original_investment_id BIGINT NOT NULL,
        user_id BIGINT NOT NULL,
        plan_name TEXT NOT NULL,
        daily_profit NUMERIC(38,18) NOT NULL,
        profit_basis TEXT NOT NULL,
        duration INTEGER NOT NULL,
        days_elapsed INTEGER NOT NULL,
        principal_amount NUMERIC(38,18) NOT NULL,
        total_return NUMERIC(38,18) NOT NULL,
        total_earned NUMERIC(38,18) NOT NULL,
        start_date TIMESTAMPTZ NOT NULL,
        end_date TIMESTAMPTZ NOT NULL,
        completed_at TIMESTAMPTZ NOT NULL,
        CONSTRAINT pk_completed_investments PRIMARY KEY (id),
        CONSTRAINT uq_completed_investments_original UNIQUE (original_investment_id),
        CONSTRAINT ck_completed_investments_principal_pos CHECK (principal_amount > 0),
        CONSTRAINT ck_completed_investments_earned_nonneg CHECK (total_earned >= 0),
        CONSTRAINT fk_completed_investments_investment FOREIGN KEY (original_investment_id)
            REFERENCES investments (id)
            ON UPDATE RESTRICT
            ON DELETE RESTRICT,
        CONSTRAINT fk_completed_investments_user FOREIGN KEY (user_id)
            REFERENCES users (id)
            ON UPDATE RESTRICT
            ON DELETE RESTRICT
    );
    """,
    """
    CREATE TABLE financial_ledger (
        id BIGINT GENERATED ALWAYS AS IDENTITY,
        user_id BIGINT NOT NULL,
        ledger_seq BIGINT NOT NULL,
        entry_type TEXT NOT NULL,
        reference_table TEXT,
        reference_id BIGINT,
        amount_delta NUMERIC(38,18) NOT NULL,
        active_deposits_delta NUMERIC(38,18) NOT NULL,
        balance_after NUMERIC(38,18) NOT NULL,
        active_deposits_after NUMERIC(38,18) NOT NULL,
        metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
        previous_hash CHAR(64),
        entry_hash CHAR(64) NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        CONSTRAINT pk_financial_ledger PRIMARY KEY (id),
        CONSTRAINT uq_financial_ledger_user_seq UNIQUE (user_id, ledger_seq),
        CONSTRAINT ck_financial_ledger_entry_type CHECK (
            entry_type IN (
                'deposit',
                'withdrawal',
                'investment_lock',
                'return_applied',
                'earnings_credited',
                'principal_unlocked'
            )
        ),
        CONSTRAINT ck_financial_ledger_seq_pos CHECK (ledger_seq >= 1),
        CONSTRAINT ck_financial_ledger_prev_hash_presence CHECK (
            (ledger_seq = 1 AND previous_hash IS NULL) OR (ledger_seq > 1 AND previous_hash IS NOT NULL)
        ),
        CONSTRAINT ck_financial_ledger_balance_nonneg CHECK (balance_after >= 0),
        CONSTRAINT ck_financial_ledger_active_deposits_nonneg CHECK (active_deposits_after >= 0),
        CONSTRAINT fk_financial_ledger_user FOREIGN KEY (user_id)
            REFERENCES users (id)
            ON UPDATE RESTRICT
            ON DELETE RESTRICT
    );
    """,
    """
    CREATE TABLE job_runs (
        id BIGINT GENERATED ALWAYS AS IDENTITY,
        job_name TEXT NOT NULL,
        run_date DATE NOT NULL,
        source TEXT NOT NULL,
        dry_run BOOLEAN NOT NULL DEFAULT FALSE,
        started_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        finished_at TIMESTAMPTZ,
        success BOOLEAN,
        processed_count INTEGER NOT NULL DEFAULT 0,
        completed_count INTEGER NOT NULL DEFAULT 0,
        failed_count INTEGER NOT NULL DEFAULT 0,
        total_applied NUMERIC(38,18) NOT NULL DEFAULT 0,
        error_text TEXT,
        meta JSONB NOT NULL DEFAULT '{}'::jsonb,
        CONSTRAINT pk_job_runs PRIMARY KEY (id),
        CONSTRAINT ck_job_runs_source CHECK (source IN ('cron', 'manual', 'api')),
        CONSTRAINT ck_job_runs_finished_after_started CHECK (finished_at IS NULL OR finished_at >= started_at),
        CONSTRAINT ck_job_runs_counts_nonneg CHECK (processed_count >= 0 AND completed_count >= 0 AND failed_count >= 0)
    );
    """,
)

INDEX_DDL: tuple[str, ...] = (
    "CREATE INDEX idx_investments_status_last_return ON investments (status, last_return_applied);",
    "CREATE INDEX idx_investments_user ON investments (user_id);",
    "CREATE INDEX idx_investment_returns_user_day_desc ON investment_returns (user_id, return_date DESC);",
    "CREATE INDEX idx_financial_ledger_user_id ON financial_ledger (user_id, id);",
    "CREATE INDEX idx_job_runs_name_run_date ON job_runs (job_name, run_date);",
    "CREATE INDEX idx_job_runs_name_started_desc ON job_runs (job_name, started_at DESC);",
)

APPEND_ONLY_DDL: tuple[str, ...] = (
    """
    CREATE OR REPLACE FUNCTION fn_enforce_append_only()
    RETURNS TRIGGER
    LANGUAGE plpgsql
    AS $$
    BEGIN
        RAISE EXCEPTION 'append-only violation on table %, operation % is not allowed', TG_TABLE_NAME, TG_OP;
    END;
    $$;
    """,
    """
    CREATE TRIGGER trg_investment_returns_append_only
    BEFORE UPDATE OR DELETE ON investment_returns
    FOR EACH ROW EXECUTE FUNCTION fn_enforce_append_only();
    """,
    """
    CREATE TRIGGER trg_completed_investments_append_only
    BEFORE UPDATE OR DELETE ON completed_investments
    FOR EACH ROW EXECUTE FUNCTION fn_enforce_append_only();
    """,
    """
    CREATE TRIGGER trg_financial_ledger_append_only
    BEFORE UPDATE OR DELETE ON financial_ledger
    FOR EACH ROW EXECUTE FUNCTION fn_enforce_append_only();
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
    """Apply the initial schema migration."""

    logger.info("Starting initial schema migration upgrade.")
    _execute_all(TABLE_DDL)
    _execute_all(INDEX_DDL)
    _execute_all(APPEND_ONLY_DDL)
    logger.info("Completed initial schema migration upgrade.")


def downgrade() -> None:
    """Revert the initial schema migration."""

    logger.info("Starting initial schema migration downgrade.")
    _execute_all(
        (
            "DROP TRIGGER IF EXISTS trg_financial_ledger_append_only ON financial_ledger;",
            "DROP TRIGGER IF EXISTS trg_completed_investments_append_only ON completed_investments;",
            "DROP TRIGGER IF EXISTS trg_investment_returns_append_only ON investment_returns;",
            "DROP FUNCTION IF EXISTS fn_enforce_append_only();",
            "DROP TABLE IF EXISTS job_runs;",
            "DROP TABLE IF EXISTS financial_ledger;",
            "DROP TABLE IF EXISTS completed_investments;",
            "DROP TABLE IF EXISTS investment_returns;",
            "DROP TABLE IF EXISTS investments;",
            "DROP TABLE IF EXISTS users;",
        )
    )
    logger.info("Completed initial schema migration downgrade.")
