"""Archive matured investments and release their escrowed principal."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
import logging

from accrual.canonical import ZERO, normalize_decimal
from accrual.ledger import AppendedLedgerEntry, FinancialLedgerAppender, LedgerEntry
from accrual.records import (
    AccrualConflictError,
    AccrualDatabase,
    InvestmentRecord,
    InvestmentValidationError,
    UserBalance,
    store_user_balance,
)
from backend.db.enums import InvestmentStatus, LedgerEntryType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompletionResult:
    """Writes performed while completing one investment."""

    investment_id: int
    user_id: int
    completed_investment_id: int
    principal_unlocked: Decimal
    earnings_credited: Decimal
    balance: UserBalance
    ledger_entries: tuple[AppendedLedgerEntry, ...]


class CompletionMigrator:
    """Moves one investment out of the active set inside the caller's transaction.

    The caller must hold row locks on the investment and its user. The
    completed_investments unique key and the one-way status update make the
    principal release happen at most once per investment.
    """

    def __init__(self, db: AccrualDatabase, ledger: FinancialLedgerAppender) -> None:
        self._db = db
        self._ledger = ledger

    def complete(
        self,
        investment: InvestmentRecord,
        balance: UserBalance,
        *,
        completed_at: datetime,
    ) -> CompletionResult:
        principal = normalize_decimal(investment.principal_amount)
        if balance.user_id != investment.user_id:
            raise InvestmentValidationError(
                f"Balance row {balance.user_id} does not own investment {investment.investment_id}."
            )

        archived = self._db.fetch_one(
            """
            INSERT INTO completed_investments (
                original_investment_id, user_id, plan_name, daily_profit, profit_basis, duration,
                days_elapsed, principal_amount, total_return, total_earned, start_date, end_date,
                completed_at
            ) VALUES (
                :original_investment_id, :user_id, :plan_name, :daily_profit, :profit_basis, :duration,
                :days_elapsed, :principal_amount, :total_return, :total_earned, :start_date, :end_date,
                :completed_at
            )
            ON CONFLICT (original_investment_id) DO NOTHING
            RETURNING id
            """,
            {
                "original_investment_id": investment.investment_id,
                "user_id": investment.user_id,
                "plan_name": investment.plan_name,
                "daily_profit": investment.daily_profit,
                "profit_basis": investment.profit_basis,
                "duration": investment.plan_duration,
                "days_elapsed": investment.days_elapsed,
                "principal_amount": principal,
                "total_return": investment.total_return,
                "total_earned": normalize_decimal(investment.total_earned),
                "start_date": investment.start_date,
                "end_date": investment.end_date,
                "completed_at": completed_at,
            },
        )
        if archived is None:
            raise AccrualConflictError(
                f"Investment {investment.investment_id} is already archived."
            )

        flipped = self._db.fetch_one(
            """
            UPDATE investments
            SET status = :completed_status,
                updated_at = :updated_at
            WHERE id = :investment_id
              AND status = :active_status
            RETURNING id
            """,
            {
                "investment_id": investment.investment_id,
                "completed_status": InvestmentStatus.COMPLETED.value,
                "active_status": InvestmentStatus.ACTIVE.value,
                "updated_at": completed_at,
            },
        )
        if flipped is None:
            raise AccrualConflictError(
                f"Investment {investment.investment_id} is no longer active."
            )

        # Repeat completions must surface as conflicts before the escrow check.
        if principal > balance.active_deposits:
            raise InvestmentValidationError(
                f"Investment {investment.investment_id} principal {principal} exceeds escrowed "
                f"active_deposits {balance.active_deposits} for user {investment.user_id}."
            )

        entries: list[AppendedLedgerEntry] = []
        earnings = ZERO
        current = balance
        if investment.credit_on_completion and investment.total_earned > ZERO:
            earnings = normalize_decimal(investment.total_earned)
            current = replace(current, balance=normalize_decimal(current.balance + earnings))
            entries.append(
                self._ledger.append(
                    LedgerEntry(
                        user_id=investment.user_id,
                        entry_type=LedgerEntryType.EARNINGS_CREDITED.value,
                        amount_delta=earnings,
                        active_deposits_delta=ZERO,
                        balance_after=current.balance,
                        active_deposits_after=current.active_deposits,
                        reference_table="investments",
                        reference_id=investment.investment_id,
                        metadata={"plan_name": investment.plan_name, "total_earned": earnings},
                    )
                )
            )

        current = replace(
            current,
            balance=normalize_decimal(current.balance + principal),
            active_deposits=normalize_decimal(current.active_deposits - principal),
        )
        entries.append(
            self._ledger.append(
                LedgerEntry(
                    user_id=investment.user_id,
                    entry_type=LedgerEntryType.PRINCIPAL_UNLOCKED.value,
                    amount_delta=principal,
                    active_deposits_delta=-principal,
                    balance_after=current.balance,
                    active_deposits_after=current.active_deposits,
                    reference_table="completed_investments",
                    reference_id=int(archived["id"]),
                    metadata={
                        "investment_id": investment.investment_id,
                        "plan_name": investment.plan_name,
                        "days_elapsed": investment.days_elapsed,
                    },
                )
            )
        )
        store_user_balance(self._db, current, completed_at)

        logger.info(
            "Completed investment investment_id=%s user_id=%s principal=%s earnings_credited=%s",
            investment.investment_id,
            investment.user_id,
            principal,
            earnings,
        )
        return CompletionResult(
            investment_id=investment.investment_id,
            user_id=investment.user_id,
            completed_investment_id=int(archived["id"]),
            principal_unlocked=principal,
            earnings_credited=earnings,
            balance=current,
            ledger_entries=tuple(entries),
        )
