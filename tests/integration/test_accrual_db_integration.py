"""DB-backed integration tests for accrual against a migrated schema."""

from __future__ import annotations

from dataclasses import replace
from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from accrual.canonical import UtcClock, utc_day_start
from accrual.config import AccrualConfig
from accrual.db import PsycopgAccrualDB
from accrual.funding import open_investment
from accrual.ledger_verification import assert_balance_continuity, verify_user_chain
from accrual.runner import AccrualJobRunner


def _create_user(db: PsycopgAccrualDB) -> int:
    db.begin()
    row = db.fetch_one(
        "INSERT INTO users (email) VALUES (:email) RETURNING id",
        {"email": f"accrual-{uuid4().hex}@example.test"},
    )
    db.commit()
    assert row is not None
    return int(row["id"])


def _config(job_name: str) -> AccrualConfig:
    return AccrualConfig(
        database_url=None,
        db_host=None,
        db_port=None,
        db_name=None,
        db_user=None,
        db_password=None,
        job_name=job_name,
    )


def test_final_day_run_is_idempotent_and_chain_verifies(accrual_db: PsycopgAccrualDB) -> None:
    user_id = _create_user(accrual_db)
    opened = open_investment(
        accrual_db,
        user_id=user_id,
        transaction_id=int(uuid4().int % 9_000_000_000_000),
        plan_key="starter",
        amount=Decimal("100"),
    )

    today = utc_day_start(UtcClock().now_utc())
    accrual_db.begin()
    accrual_db.execute(
        """
        UPDATE investments
        SET start_date = :start_date,
            end_date = :end_date,
            first_profit_date = NULL,
            days_elapsed = 2,
            total_earned = 4,
            last_return_applied = :last_return_applied
        WHERE id = :investment_id
        """,
        {
            "investment_id": opened.investment_id,
            "start_date": today - timedelta(days=3),
            "end_date": today,
            "last_return_applied": today - timedelta(days=1),
        },
    )
    accrual_db.commit()

    config = _config(f"it-{uuid4().hex[:12]}")
    first = AccrualJobRunner(accrual_db, config).run()
    assert first.success is True

    investment = accrual_db.fetch_one(
        "SELECT status, days_elapsed, total_earned FROM investments WHERE id = :investment_id",
        {"investment_id": opened.investment_id},
    )
    user = accrual_db.fetch_one(
        "SELECT balance, active_deposits FROM users WHERE id = :user_id",
        {"user_id": user_id},
    )
    accrual_db.rollback()
    assert investment is not None and user is not None
    assert investment["status"] == "completed"
    assert investment["days_elapsed"] == 3
    assert Decimal(investment["total_earned"]) == Decimal("6")
    assert Decimal(user["balance"]) == Decimal("102")
    assert Decimal(user["active_deposits"]) == Decimal("0")

    second = AccrualJobRunner(accrual_db, config).run()
    assert second.skipped is True

    rerun = AccrualJobRunner(accrual_db, replace(config, job_name=f"{config.job_name}-b")).run()
    assert rerun.success is True

    report = verify_user_chain(accrual_db, user_id)
    assert_balance_continuity(accrual_db, user_id)
    accrual_db.rollback()
    assert report.ok is True
    assert report.checked == 3


def test_ledger_rows_are_append_only(accrual_db: PsycopgAccrualDB) -> None:
    user_id = _create_user(accrual_db)
    open_investment(
        accrual_db,
        user_id=user_id,
        transaction_id=int(uuid4().int % 9_000_000_000_000),
        plan_key="starter",
        amount=Decimal("100"),
    )

    accrual_db.begin()
    with pytest.raises(Exception):
        accrual_db.execute(
            "UPDATE financial_ledger SET amount_delta = 1 WHERE user_id = :user_id",
            {"user_id": user_id},
        )
    accrual_db.rollback()


def test_return_day_uniqueness_is_enforced(accrual_db: PsycopgAccrualDB) -> None:
    user_id = _create_user(accrual_db)
    opened = open_investment(
        accrual_db,
        user_id=user_id,
        transaction_id=int(uuid4().int % 9_000_000_000_000),
        plan_key="starter",
        amount=Decimal("100"),
    )
    day = utc_day_start(UtcClock().now_utc())
    insert = """
        INSERT INTO investment_returns (investment_id, user_id, amount, return_date)
        VALUES (:investment_id, :user_id, 2, :return_date)
        ON CONFLICT (investment_id, return_date) DO NOTHING
        RETURNING id
    """
    params = {"investment_id": opened.investment_id, "user_id": user_id, "return_date": day}

    accrual_db.begin()
    assert accrual_db.fetch_one(insert, params) is not None
    assert accrual_db.fetch_one(insert, params) is None
    accrual_db.rollback()
