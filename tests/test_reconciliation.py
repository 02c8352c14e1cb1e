"""Unit tests for the read-only reconciliation reports."""

from __future__ import annotations

from datetime import date, timedelta
from decimal import Decimal
import logging

import pytest

from accrual.reconciliation import (
    BEFORE_FIRST_ELIGIBLE_DAY,
    CREATED_BEFORE_DAY,
    audit_early_returns,
    reconcile_active_deposits,
    verify_day_returns,
)
from tests.utils.accrual_db import AccrualFakeDB, utc


def _seed_deposits(db: AccrualFakeDB) -> None:
    db.add_user(1, active_deposits=Decimal("1000"))
    db.add_investment(1, 1, principal_amount=Decimal("1000"))
    db.add_user(2, active_deposits=Decimal("500"))
    db.add_investment(2, 2, principal_amount=Decimal("1000"))
    db.add_investment(3, 2, principal_amount=Decimal("300"), status="completed")
    db.add_user(3)


def test_deposits_matching_active_principal_report_no_drift(fake_db: AccrualFakeDB) -> None:
    fake_db.add_user(1, active_deposits=Decimal("1000"))
    fake_db.add_investment(1, 1, principal_amount=Decimal("600"))
    fake_db.add_investment(2, 1, principal_amount=Decimal("400"))

    report = reconcile_active_deposits(fake_db)

    assert report.ok is True
    assert report.checked == 1
    assert report.drifts == ()


def test_deposit_drift_ignores_completed_principal(
    fake_db: AccrualFakeDB, caplog: pytest.LogCaptureFixture
) -> None:
    _seed_deposits(fake_db)

    with caplog.at_level(logging.WARNING, logger="accrual.reconciliation"):
        report = reconcile_active_deposits(fake_db)

    assert report.ok is False
    assert report.checked == 3
    assert len(report.drifts) == 1
    drift = report.drifts[0]
    assert drift.user_id == 2
    assert drift.recorded == Decimal("500")
    assert drift.expected == Decimal("1000")
    assert drift.drift == Decimal("500")
    assert drift.active_investments == 1
    assert "Active deposit drift" in caplog.text


def test_deposit_reconciliation_can_target_one_user(fake_db: AccrualFakeDB) -> None:
    _seed_deposits(fake_db)

    assert reconcile_active_deposits(fake_db, user_id=1).ok is True
    report = reconcile_active_deposits(fake_db, user_id=2)
    assert report.checked == 1
    assert [drift.user_id for drift in report.drifts] == [2]


def test_early_returns_are_flagged_by_reason(fake_db: AccrualFakeDB) -> None:
    fake_db.add_user(1)
    fake_db.add_investment(1, 1, start_date=utc(2025, 9, 1, 10))
    fake_db.add_return(1, utc(2025, 8, 30), Decimal("35"))
    before_start = fake_db.add_return(1, utc(2025, 9, 1), Decimal("35"))
    fake_db.add_return(1, utc(2025, 9, 2), Decimal("35"))
    written_early = fake_db.add_return(1, utc(2025, 9, 3), Decimal("35"))
    written_early["created_at"] = utc(2025, 9, 2, 20)
    slightly_early = fake_db.add_return(1, utc(2025, 9, 4), Decimal("35"))
    slightly_early["created_at"] = utc(2025, 9, 3, 23, 30)

    report = audit_early_returns(fake_db, since=utc(2025, 9, 1))

    assert report.ok is False
    assert report.checked == 4
    assert [(item.return_id, item.reason) for item in report.early] == [
        (before_start["id"], BEFORE_FIRST_ELIGIBLE_DAY),
        (written_early["id"], CREATED_BEFORE_DAY),
    ]
    assert report.early[0].first_eligible_day == utc(2025, 9, 2)
    assert report.early[1].amount == Decimal("35")


def test_early_return_threshold_is_configurable(fake_db: AccrualFakeDB) -> None:
    fake_db.add_user(1)
    fake_db.add_investment(1, 1, start_date=utc(2025, 9, 1, 10))
    row = fake_db.add_return(1, utc(2025, 9, 4), Decimal("35"))
    row["created_at"] = utc(2025, 9, 3, 23, 30)

    assert audit_early_returns(fake_db, since=utc(2025, 9, 1)).ok is True
    report = audit_early_returns(fake_db, since=utc(2025, 9, 1), threshold=timedelta(minutes=15))
    assert [item.reason for item in report.early] == [CREATED_BEFORE_DAY]


def _add_running(db: AccrualFakeDB, investment_id: int, **overrides: object) -> None:
    db.add_user(investment_id)
    values: dict[str, object] = {
        "start_date": utc(2025, 9, 1, 10),
        "plan_duration": 100,
        "total_return": Decimal("3500"),
        "days_elapsed": 29,
        "total_earned": Decimal("1015"),
        "last_return_applied": utc(2025, 9, 30),
    }
    values.update(overrides)
    db.add_investment(investment_id, investment_id, **values)


def test_day_with_every_due_return_recorded_is_ok(fake_db: AccrualFakeDB) -> None:
    _add_running(fake_db, 1)
    fake_db.add_return(1, utc(2025, 10, 1), Decimal("35"))

    report = verify_day_returns(fake_db, date(2025, 10, 1))

    assert report.ok is True
    assert report.run_date == date(2025, 10, 1)
    assert report.active == 1
    assert report.due == 1
    assert report.recorded_count == 1
    assert report.recorded_amount == Decimal("35")
    assert report.missing == ()


def test_day_report_lists_missing_returns_and_malformed_rows(
    fake_db: AccrualFakeDB, caplog: pytest.LogCaptureFixture
) -> None:
    _add_running(fake_db, 1)
    fake_db.add_return(1, utc(2025, 10, 1), Decimal("35"))
    _add_running(fake_db, 2, last_return_applied=utc(2025, 9, 28), days_elapsed=27)
    _add_running(fake_db, 3, start_date=utc(2025, 10, 1, 8), days_elapsed=0, total_earned=Decimal("0"), last_return_applied=None)
    _add_running(fake_db, 4, days_elapsed=100, total_earned=Decimal("3500"))
    _add_running(fake_db, 5, daily_profit=Decimal("0"))
    _add_running(fake_db, 6, status="completed")

    with caplog.at_level(logging.WARNING, logger="accrual.reconciliation"):
        report = verify_day_returns(fake_db, utc(2025, 10, 1, 14))

    assert report.ok is False
    assert report.active == 5
    assert report.due == 2
    assert report.recorded_count == 1
    assert [(item.investment_id, item.pending_days) for item in report.missing] == [(2, 3)]
    assert report.missing[0].last_return_applied == utc(2025, 9, 28)
    assert report.invalid == (5,)
    assert "Returns missing for run_date=2025-10-01" in caplog.text


def test_day_outside_plan_window_is_not_due(fake_db: AccrualFakeDB) -> None:
    _add_running(fake_db, 1, plan_duration=7, total_return=Decimal("245"), days_elapsed=7)

    report = verify_day_returns(fake_db, date(2025, 10, 1))

    assert report.ok is True
    assert report.active == 1
    assert report.due == 0
