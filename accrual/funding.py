"""Plan catalogue and opening investments from confirmed funding."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from decimal import Decimal
import logging
from typing import Optional

from accrual.canonical import UtcClock, next_utc_midnight, normalize_decimal
from accrual.ledger import AppendedLedgerEntry, FinancialLedgerAppender, LedgerEntry
from accrual.records import (
    AccrualConflictError,
    AccrualDatabase,
    InvestmentValidationError,
    lock_user_balance,
    store_user_balance,
)
from backend.db.enums import InvestmentStatus, LedgerEntryType, ProfitBasis

logger = logging.getLogger(__name__)

_HUNDRED = Decimal("100")


@dataclass(frozen=True)
class InvestmentPlan:
    """Catalogue entry; rates are percent of principal."""

    plan_id: str
    name: str
    min_amount: Decimal
    max_amount: Optional[Decimal]
    daily_profit: Decimal
    duration: int
    total_return_percent: Decimal

    def expected_profit(self, principal: Decimal) -> Decimal:
        """Total profit owed over the plan term, excluding principal."""
        return normalize_decimal(principal * (self.total_return_percent - _HUNDRED) / _HUNDRED)


INVESTMENT_PLANS: tuple[InvestmentPlan, ...] = (
    InvestmentPlan("starter", "STARTER PLAN", Decimal("50"), Decimal("999"), Decimal("2"), 3, Decimal("106")),
    InvestmentPlan("premium", "PREMIUM PLAN", Decimal("1000"), Decimal("4999"), Decimal("3.5"), 7, Decimal("124.5")),
    InvestmentPlan("delux", "DELUX PLAN", Decimal("5000"), Decimal("19999"), Decimal("5"), 10, Decimal("150")),
    InvestmentPlan("luxury", "LUXURY PLAN", Decimal("20000"), None, Decimal("7.5"), 30, Decimal("325")),
)


@dataclass(frozen=True)
class OpenedInvestment:
    investment_id: int
    user_id: int
    plan: InvestmentPlan
    principal_amount: Decimal
    total_return: Decimal
    start_date: datetime
    end_date: datetime
    first_profit_date: datetime
    ledger_entry: AppendedLedgerEntry


def resolve_plan(plan_key: str) -> InvestmentPlan:
    """Find a plan by id or display name."""
    normalized = plan_key.strip()
    for plan in INVESTMENT_PLANS:
        if normalized.lower() == plan.plan_id or normalized.upper() == plan.name:
            return plan
    raise InvestmentValidationError(f"Unknown investment plan: {plan_key}")


def validate_amount(plan: InvestmentPlan, amount: Decimal) -> None:
    if amount < plan.min_amount or (plan.max_amount is not None and amount > plan.max_amount):
        raise InvestmentValidationError(
            f"Amount {amount} is outside {plan.name} limits "
            f"({plan.min_amount}..{plan.max_amount if plan.max_amount is not None else 'unbounded'})."
        )


def open_investment(
    db: AccrualDatabase,
    *,
    user_id: int,
    transaction_id: int,
    plan_key: str,
    amount: Decimal,
    credit_on_completion: bool = False,
    clock: UtcClock | None = None,
) -> OpenedInvestment:
    """Create an active investment and escrow its principal in one transaction.

    The funding transaction id is unique per investment, so replays of the
    same confirmation raise ``AccrualConflictError`` without side effects.
    """
    clock = clock or UtcClock()
    plan = resolve_plan(plan_key)
    principal = normalize_decimal(amount)
    validate_amount(plan, principal)

    started_at = clock.now_utc()
    end_date = started_at + timedelta(days=plan.duration)
    first_profit_date = next_utc_midnight(started_at)
    total_return = plan.expected_profit(principal)

    db.begin()
    try:
        balance = lock_user_balance(db, user_id)
        inserted = db.fetch_one(
            """
            INSERT INTO investments (
                user_id, transaction_id, plan_name, plan_duration, daily_profit, profit_basis,
                principal_amount, total_return, start_date, end_date, status, days_elapsed,
                total_earned, first_profit_date, credit_on_completion, created_at, updated_at
            ) VALUES (
                :user_id, :transaction_id, :plan_name, :plan_duration, :daily_profit, :profit_basis,
                :principal_amount, :total_return, :start_date, :end_date, :status, 0,
                0, :first_profit_date, :credit_on_completion, :created_at, :created_at
            )
            ON CONFLICT (transaction_id) DO NOTHING
            RETURNING id
            """,
            {
                "user_id": user_id,
                "transaction_id": transaction_id,
                "plan_name": plan.name,
                "plan_duration": plan.duration,
                "daily_profit": plan.daily_profit,
                "profit_basis": ProfitBasis.PERCENT.value,
                "principal_amount": principal,
                "total_return": total_return,
                "start_date": started_at,
                "end_date": end_date,
                "status": InvestmentStatus.ACTIVE.value,
                "first_profit_date": first_profit_date,
                "credit_on_completion": credit_on_completion,
                "created_at": started_at,
            },
        )
        if inserted is None:
            raise AccrualConflictError(f"Funding transaction {transaction_id} already opened an investment.")
        investment_id = int(inserted["id"])

        balance = replace(balance, active_deposits=normalize_decimal(balance.active_deposits + principal))
        entry = FinancialLedgerAppender(db, clock=clock).append(
            LedgerEntry(
                user_id=user_id,
                entry_type=LedgerEntryType.INVESTMENT_LOCK.value,
                amount_delta=Decimal("0"),
                active_deposits_delta=principal,
                balance_after=balance.balance,
                active_deposits_after=balance.active_deposits,
                reference_table="investments",
                reference_id=investment_id,
                metadata={"plan_name": plan.name, "transaction_id": transaction_id},
            )
        )
        store_user_balance(db, balance, started_at)
    except Exception:
        db.rollback()
        raise
    db.commit()

    logger.info(
        "Opened investment investment_id=%s user_id=%s plan=%s principal=%s",
        investment_id,
        user_id,
        plan.plan_id,
        principal,
    )
    return OpenedInvestment(
        investment_id=investment_id,
        user_id=user_id,
        plan=plan,
        principal_amount=principal,
        total_return=total_return,
        start_date=started_at,
        end_date=end_date,
        first_profit_date=first_profit_date,
        ledger_entry=entry,
    )
