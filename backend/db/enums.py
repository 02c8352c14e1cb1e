"""Value contracts shared by the accrual schema and runtime."""

from __future__ import annotations

import enum
import logging

logger = logging.getLogger(__name__)


class InvestmentStatus(str, enum.Enum):
    """Investment lifecycle status. Transitions are one-way."""

    ACTIVE = "active"
    COMPLETED = "completed"


class ProfitBasis(str, enum.Enum):
    """How daily_profit is interpreted."""

    PERCENT = "PERCENT"
    FIXED = "FIXED"


class LedgerEntryType(str, enum.Enum):
    """Balance-affecting event kinds recorded in financial_ledger."""

    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    INVESTMENT_LOCK = "investment_lock"
    RETURN_APPLIED = "return_applied"
    EARNINGS_CREDITED = "earnings_credited"
    PRINCIPAL_UNLOCKED = "principal_unlocked"


class JobSource(str, enum.Enum):
    """Origin of a job run invocation."""

    CRON = "cron"
    MANUAL = "manual"
    API = "api"


def sql_values(enum_cls: type[enum.Enum]) -> str:
    """Render enum values as a SQL IN-list body."""
    return ", ".join(f"'{member.value}'" for member in enum_cls)
