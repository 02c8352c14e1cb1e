"""Read-only reconciliation reports over escrow, return timing and daily coverage."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
import logging
from typing import Optional

from accrual.canonical import ZERO, as_decimal, normalize_decimal, utc_day_start
from accrual.records import (
    INVESTMENT_COLUMNS,
    AccrualDatabase,
    InvestmentRecord,
    InvestmentValidationError,
)
from accrual.return_calculator import (
    eligible_day,
    first_eligible_day,
    is_matured,
    next_due_day,
    validate_investment,
)
from backend.db.enums import InvestmentStatus

logger = logging.getLogger(__name__)

BEFORE_FIRST_ELIGIBLE_DAY = "BEFORE_FIRST_ELIGIBLE_DAY"
CREATED_BEFORE_DAY = "CREATED_BEFORE_DAY"


@dataclass(frozen=True)
class DepositDrift:
    """A user whose escrow total disagrees with their active principals."""

    user_id: int
    recorded: Decimal
    expected: Decimal
    active_investments: int

    @property
    def drift(self) -> Decimal:
        return normalize_decimal(self.expected - self.recorded)


@dataclass(frozen=True)
class DepositReconciliationReport:
    ok: bool
    checked: int
    drifts: tuple[DepositDrift, ...]


@dataclass(frozen=True)
class EarlyReturn:
    """An investment_returns row attributed to a day it could not have earned."""

    return_id: int
    investment_id: int
    user_id: int
    amount: Decimal
    return_date: datetime
    created_at: datetime
    first_eligible_day: datetime
    reason: str


@dataclass(frozen=True)
class EarlyReturnsReport:
    ok: bool
    checked: int
    since: datetime
    early: tuple[EarlyReturn, ...]


@dataclass(frozen=True)
class MissingReturn:
    """An active investment owed a return for the day that has none recorded."""

    investment_id: int
    user_id: int
    last_return_applied: Optional[datetime]
    pending_days: int


@dataclass(frozen=True)
class DayReturnsReport:
    """Coverage of one UTC day by investment_returns rows."""

    ok: bool
    run_date: date
    active: int
    due: int
    recorded_count: int
    recorded_amount: Decimal
    missing: tuple[MissingReturn, ...]
    invalid: tuple[int, ...]


def reconcile_active_deposits(db: AccrualDatabase, user_id: Optional[int] = None) -> DepositReconciliationReport:
    """Compare ``users.active_deposits`` with the principal of each user's active investments."""
    user_filter = "WHERE u.id = :user_id" if user_id is not None else ""
    rows = db.fetch_all(
        f"""
        SELECT
            u.id AS user_id,
            u.active_deposits,
            COALESCE(SUM(i.principal_amount), 0) AS active_principal,
            COUNT(i.id) AS active_investments
        FROM users u
        LEFT JOIN investments i
          ON i.user_id = u.id
         AND i.status = :active_status
        {user_filter}
        GROUP BY u.id, u.active_deposits
        ORDER BY u.id ASC
        """,
        {"active_status": InvestmentStatus.ACTIVE.value, "user_id": user_id},
    )

    drifts: list[DepositDrift] = []
    for row in rows:
        recorded = normalize_decimal(as_decimal(row["active_deposits"]))
        expected = normalize_decimal(as_decimal(row["active_principal"]))
        if recorded != expected:
            drifts.append(
                DepositDrift(
                    user_id=int(row["user_id"]),
                    recorded=recorded,
                    expected=expected,
                    active_investments=int(row["active_investments"]),
                )
            )

    if drifts:
        logger.warning(
            "Active deposit drift detected users=%s first_user_id=%s",
            len(drifts),
            drifts[0].user_id,
        )
    return DepositReconciliationReport(ok=not drifts, checked=len(rows), drifts=tuple(drifts))


def audit_early_returns(
    db: AccrualDatabase,
    since: datetime,
    threshold: timedelta = timedelta(minutes=60),
) -> EarlyReturnsReport:
    """Flag returns dated before the first eligible day or written before their day began.

    ``threshold`` is how far ``created_at`` may precede ``return_date`` before the
    row counts as written early.
    """
    rows = db.fetch_all(
        """
        SELECT
            r.id,
            r.investment_id,
            r.user_id,
            r.amount,
            r.return_date,
            r.created_at,
            i.start_date,
            i.first_profit_date
        FROM investment_returns r
        JOIN investments i ON i.id = r.investment_id
        WHERE r.return_date >= :since
        ORDER BY r.id ASC
        """,
        {"since": since},
    )

    early: list[EarlyReturn] = []
    for row in rows:
        first_day = eligible_day(row["start_date"], row["first_profit_date"])
        return_date = row["return_date"]
        reason: Optional[str] = None
        if utc_day_start(return_date) < first_day:
            reason = BEFORE_FIRST_ELIGIBLE_DAY
        elif return_date - row["created_at"] >= threshold:
            reason = CREATED_BEFORE_DAY
        if reason is None:
            continue
        early.append(
            EarlyReturn(
                return_id=int(row["id"]),
                investment_id=int(row["investment_id"]),
                user_id=int(row["user_id"]),
                amount=normalize_decimal(as_decimal(row["amount"])),
                return_date=return_date,
                created_at=row["created_at"],
                first_eligible_day=first_day,
                reason=reason,
            )
        )

    if early:
        logger.warning("Early returns found count=%s since=%s", len(early), since.isoformat())
    return EarlyReturnsReport(ok=not early, checked=len(rows), since=since, early=tuple(early))


def verify_day_returns(db: AccrualDatabase, run_date: date | datetime) -> DayReturnsReport:
    """Report active investments owed a return for ``run_date`` that have no row for it."""
    run_day = utc_day_start(run_date)
    totals = db.fetch_one(
        """
        SELECT COUNT(*) AS row_count, COALESCE(SUM(amount), 0) AS total_amount
        FROM investment_returns
        WHERE return_date = :run_day
        """,
        {"run_day": run_day},
    )
    rows = db.fetch_all(
        f"""
        SELECT
            {INVESTMENT_COLUMNS},
            EXISTS (
                SELECT 1
                FROM investment_returns r
                WHERE r.investment_id = investments.id
                  AND r.return_date = :run_day
            ) AS has_return
        FROM investments
        WHERE status = :active_status
        ORDER BY id ASC
        """,
        {"active_status": InvestmentStatus.ACTIVE.value, "run_day": run_day},
    )

    recorded_count = int(totals["row_count"]) if totals is not None else 0
    recorded_amount = normalize_decimal(as_decimal(totals["total_amount"])) if totals is not None else ZERO
    due = 0
    missing: list[MissingReturn] = []
    invalid: list[int] = []
    for row in rows:
        try:
            investment = InvestmentRecord.from_row(row)
            validate_investment(investment)
        except InvestmentValidationError as exc:
            logger.warning("Skipping malformed investment investment_id=%s error=%s", row["id"], exc)
            invalid.append(int(row["id"]))
            continue

        first_day = first_eligible_day(investment)
        if run_day < first_day or (run_day - first_day).days >= investment.plan_duration:
            continue
        if row["has_return"]:
            due += 1
            continue
        if is_matured(investment):
            continue
        due += 1
        missing.append(
            MissingReturn(
                investment_id=investment.investment_id,
                user_id=investment.user_id,
                last_return_applied=investment.last_return_applied,
                pending_days=max((run_day - next_due_day(investment)).days + 1, 0),
            )
        )

    if missing:
        logger.warning(
            "Returns missing for run_date=%s count=%s",
            run_day.date().isoformat(),
            len(missing),
        )
    return DayReturnsReport(
        ok=not missing and not invalid,
        run_date=run_day.date(),
        active=len(rows),
        due=due,
        recorded_count=recorded_count,
        recorded_amount=recorded_amount,
        missing=tuple(missing),
        invalid=tuple(invalid),
    )
