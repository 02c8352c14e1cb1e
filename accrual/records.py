"""Store protocol, typed row records and error taxonomy for accrual."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Mapping, Optional, Protocol, Sequence

from accrual.canonical import as_decimal


class AccrualAbortError(RuntimeError):
    """Raised when a run-level precondition or the data store fails."""


class DataStoreUnavailableError(AccrualAbortError):
    """Raised when the data store connection is lost or unreachable."""


class InvestmentValidationError(ValueError):
    """Raised when investment state is malformed or contradictory."""


class AccrualConflictError(RuntimeError):
    """Raised when an idempotent write finds its work already done."""


class AccrualDatabase(Protocol):
    """Minimal transactional database protocol used by accrual modules."""

    def fetch_one(
        self,
        sql: str,
        params: Mapping[str, Any],
    ) -> Optional[Mapping[str, Any]]:
        """Fetch one row."""

    def fetch_all(
        self,
        sql: str,
        params: Mapping[str, Any],
    ) -> Sequence[Mapping[str, Any]]:
        """Fetch all rows in query order."""

    def execute(self, sql: str, params: Mapping[str, Any]) -> None:
        """Execute a write statement."""

    def begin(self) -> None:
        """Open a transaction."""

    def commit(self) -> None:
        """Commit the open transaction."""

    def rollback(self) -> None:
        """Roll back the open transaction."""


def _require(row: Mapping[str, Any], key: str) -> Any:
    if key not in row or row[key] is None:
        raise InvestmentValidationError(f"Missing required field {key}.")
    return row[key]


def _as_utc_datetime(value: Any, field_name: str) -> datetime:
    if not isinstance(value, datetime):
        raise InvestmentValidationError(f"Field {field_name} must be a timestamp.")
    if value.tzinfo is None:
        raise InvestmentValidationError(f"Field {field_name} must be timezone-aware.")
    return value


def _optional_datetime(value: Any, field_name: str) -> Optional[datetime]:
    if value is None:
        return None
    return _as_utc_datetime(value, field_name)


def _decimal_field(row: Mapping[str, Any], key: str) -> Decimal:
    value = _require(row, key)
    try:
        return as_decimal(value)
    except (ArithmeticError, TypeError, ValueError) as exc:
        raise InvestmentValidationError(f"Field {key} is not a decimal: {value!r}") from exc


def _int_field(row: Mapping[str, Any], key: str) -> int:
    value = _require(row, key)
    if isinstance(value, bool):
        raise InvestmentValidationError(f"Field {key} is not an integer: {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise InvestmentValidationError(f"Field {key} is not an integer: {value!r}") from exc


@dataclass(frozen=True)
class InvestmentRecord:
    """Investment state as loaded from the investments table."""

    investment_id: int
    user_id: int
    plan_name: str
    plan_duration: int
    daily_profit: Decimal
    profit_basis: str
    principal_amount: Decimal
    total_return: Decimal
    start_date: datetime
    end_date: datetime
    status: str
    days_elapsed: int
    total_earned: Decimal
    last_return_applied: Optional[datetime]
    first_profit_date: Optional[datetime]
    credit_on_completion: bool

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "InvestmentRecord":
        return cls(
            investment_id=_int_field(row, "id"),
            user_id=_int_field(row, "user_id"),
            plan_name=str(_require(row, "plan_name")),
            plan_duration=_int_field(row, "plan_duration"),
            daily_profit=_decimal_field(row, "daily_profit"),
            profit_basis=str(_require(row, "profit_basis")),
            principal_amount=_decimal_field(row, "principal_amount"),
            total_return=_decimal_field(row, "total_return"),
            start_date=_as_utc_datetime(_require(row, "start_date"), "start_date"),
            end_date=_as_utc_datetime(_require(row, "end_date"), "end_date"),
            status=str(_require(row, "status")),
            days_elapsed=_int_field(row, "days_elapsed"),
            total_earned=_decimal_field(row, "total_earned"),
            last_return_applied=_optional_datetime(row.get("last_return_applied"), "last_return_applied"),
            first_profit_date=_optional_datetime(row.get("first_profit_date"), "first_profit_date"),
            credit_on_completion=bool(row.get("credit_on_completion") or False),
        )


@dataclass(frozen=True)
class UserBalance:
    """Balance projection of one user row."""

    user_id: int
    balance: Decimal
    active_deposits: Decimal

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "UserBalance":
        return cls(
            user_id=_int_field(row, "id"),
            balance=_decimal_field(row, "balance"),
            active_deposits=_decimal_field(row, "active_deposits"),
        )


INVESTMENT_COLUMNS = (
    "id, user_id, plan_name, plan_duration, daily_profit, profit_basis, principal_amount, "
    "total_return, start_date, end_date, status, days_elapsed, total_earned, "
    "last_return_applied, first_profit_date, credit_on_completion"
)


def lock_user_balance(db: AccrualDatabase, user_id: int) -> UserBalance:
    """Lock and load one user balance row inside the caller transaction."""
    row = db.fetch_one(
        """
        SELECT id, balance, active_deposits
        FROM users
        WHERE id = :user_id
        FOR UPDATE
        """,
        {"user_id": user_id},
    )
    if row is None:
        raise InvestmentValidationError(f"User {user_id} does not exist.")
    return UserBalance.from_row(row)


def store_user_balance(db: AccrualDatabase, balance: UserBalance, updated_at: datetime) -> None:
    db.execute(
        """
        UPDATE users
        SET balance = :balance,
            active_deposits = :active_deposits,
            updated_at = :updated_at
        WHERE id = :user_id
        """,
        {
            "user_id": balance.user_id,
            "balance": balance.balance,
            "active_deposits": balance.active_deposits,
            "updated_at": updated_at,
        },
    )
