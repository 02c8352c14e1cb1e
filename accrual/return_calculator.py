"""Pure daily return and completion decisions for one investment."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta
from decimal import Decimal
import logging
from typing import Optional, Sequence

from accrual.canonical import ZERO, normalize_decimal, utc_day_start
from accrual.records import InvestmentRecord, InvestmentValidationError
from backend.db.enums import InvestmentStatus, ProfitBasis

logger = logging.getLogger(__name__)

_ONE_DAY = timedelta(days=1)
_HUNDRED = Decimal("100")


@dataclass(frozen=True)
class ReturnResult:
    """Outcome of evaluating one investment for one calendar day."""

    investment_id: int
    return_date: datetime
    due: bool
    amount: Decimal
    new_days_elapsed: int
    new_total_earned: Decimal
    completes: bool
    clamped: bool = False
    already_applied: bool = False


def validate_investment(investment: InvestmentRecord) -> None:
    """Reject investment state that cannot be accrued."""
    if investment.status != InvestmentStatus.ACTIVE.value:
        raise InvestmentValidationError(
            f"Investment {investment.investment_id} is not active (status={investment.status})."
        )
    if investment.plan_duration <= 0:
        raise InvestmentValidationError(
            f"Investment {investment.investment_id} has non-positive plan_duration."
        )
    if investment.daily_profit <= ZERO:
        raise InvestmentValidationError(
            f"Investment {investment.investment_id} has non-positive daily_profit."
        )
    if investment.principal_amount <= ZERO:
        raise InvestmentValidationError(
            f"Investment {investment.investment_id} has non-positive principal_amount."
        )
    if investment.total_return <= ZERO:
        raise InvestmentValidationError(
            f"Investment {investment.investment_id} has non-positive total_return."
        )
    if investment.days_elapsed < 0 or investment.total_earned < ZERO:
        raise InvestmentValidationError(
            f"Investment {investment.investment_id} has negative accrual aggregates."
        )
    if investment.profit_basis not in {basis.value for basis in ProfitBasis}:
        raise InvestmentValidationError(
            f"Investment {investment.investment_id} has unknown profit_basis {investment.profit_basis}."
        )


def daily_amount(investment: InvestmentRecord) -> Decimal:
    """Return the unclamped profit owed for one accrual day."""
    if investment.profit_basis == ProfitBasis.FIXED.value:
        return normalize_decimal(investment.daily_profit)
    return normalize_decimal(investment.principal_amount * investment.daily_profit / _HUNDRED)


def eligible_day(start_date: datetime, first_profit_date: Optional[datetime]) -> datetime:
    start_day = utc_day_start(start_date)
    if first_profit_date is None:
        return start_day + _ONE_DAY
    return max(utc_day_start(first_profit_date), start_day)


def first_eligible_day(investment: InvestmentRecord) -> datetime:
    """Return the first UTC day on which a return may be attributed."""
    return eligible_day(investment.start_date, investment.first_profit_date)


def next_due_day(investment: InvestmentRecord) -> datetime:
    """Return the earliest day not yet covered by an applied return."""
    candidate = first_eligible_day(investment)
    if investment.last_return_applied is not None:
        candidate = max(candidate, utc_day_start(investment.last_return_applied) + _ONE_DAY)
    return candidate


def is_matured(investment: InvestmentRecord) -> bool:
    return (
        investment.days_elapsed >= investment.plan_duration
        or investment.total_earned >= investment.total_return
    )


def compute_return(
    investment: InvestmentRecord,
    as_of: datetime | date,
    *,
    recorded_amount: Decimal | None = None,
) -> ReturnResult:
    """Decide whether a return is due on the UTC day of ``as_of``.

    Matured investments that are still active yield a completion-only result.
    ``recorded_amount`` is the amount of an investment_returns row that already
    exists for the day. That day is consumed without a new credit: it counts
    toward the term and its recorded amount toward ``total_earned``.
    """
    validate_investment(investment)
    day = utc_day_start(as_of)
    total_earned = normalize_decimal(investment.total_earned)

    if is_matured(investment):
        return ReturnResult(
            investment_id=investment.investment_id,
            return_date=day,
            due=False,
            amount=ZERO,
            new_days_elapsed=investment.days_elapsed,
            new_total_earned=total_earned,
            completes=True,
        )

    if day < next_due_day(investment):
        return ReturnResult(
            investment_id=investment.investment_id,
            return_date=day,
            due=False,
            amount=ZERO,
            new_days_elapsed=investment.days_elapsed,
            new_total_earned=total_earned,
            completes=False,
        )

    already_applied = recorded_amount is not None
    amount = normalize_decimal(recorded_amount) if already_applied else daily_amount(investment)
    remaining = normalize_decimal(investment.total_return - total_earned)
    clamped = False
    if amount > remaining:
        logger.warning(
            "Clamping accrual to remaining total_return investment_id=%s requested=%s remaining=%s",
            investment.investment_id,
            amount,
            remaining,
        )
        amount = remaining
        clamped = True

    new_days_elapsed = investment.days_elapsed + 1
    new_total_earned = normalize_decimal(total_earned + amount)
    completes = new_days_elapsed >= investment.plan_duration or new_total_earned >= investment.total_return
    return ReturnResult(
        investment_id=investment.investment_id,
        return_date=day,
        due=not already_applied,
        amount=ZERO if already_applied else amount,
        new_days_elapsed=new_days_elapsed,
        new_total_earned=new_total_earned,
        completes=completes,
        clamped=clamped,
        already_applied=already_applied,
    )


def apply_result(investment: InvestmentRecord, result: ReturnResult) -> InvestmentRecord:
    """Project the investment state after ``result`` has been applied."""
    if not (result.due or result.already_applied):
        return investment
    return replace(
        investment,
        days_elapsed=result.new_days_elapsed,
        total_earned=result.new_total_earned,
        last_return_applied=result.return_date,
    )


def plan_accruals(
    investment: InvestmentRecord,
    run_date: datetime | date,
    max_catchup_days: int,
) -> Sequence[ReturnResult]:
    """Plan every missed accrual day up to ``run_date``, oldest first.

    At most ``max_catchup_days`` due days are planned; later days stay due and
    are picked up by the next run. Planning stops at the completing day.
    """
    if max_catchup_days < 1:
        raise ValueError("max_catchup_days must be >= 1")
    validate_investment(investment)
    run_day = utc_day_start(run_date)

    if is_matured(investment):
        return (compute_return(investment, run_day),)

    planned: list[ReturnResult] = []
    state = investment
    day = next_due_day(investment)
    while day <= run_day and len(planned) < max_catchup_days:
        result = compute_return(state, day)
        if result.due:
            planned.append(result)
            state = apply_result(state, result)
            if result.completes:
                break
        day += _ONE_DAY
    return tuple(planned)
