"""Model module imports for SQLAlchemy metadata registration."""

from __future__ import annotations

import logging

from backend.db.models.investment import CompletedInvestment, Investment, InvestmentReturn
from backend.db.models.job_run import JobRun
from backend.db.models.ledger import FinancialLedgerEntry
from backend.db.models.user import User

logger = logging.getLogger(__name__)

__all__ = [
    "CompletedInvestment",
    "FinancialLedgerEntry",
    "Investment",
    "InvestmentReturn",
    "JobRun",
    "User",
]
