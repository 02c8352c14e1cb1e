"""Daily investment-return accrual, completion and hash-chained ledger package."""

from accrual.completion import CompletionMigrator, CompletionResult
from accrual.config import AccrualConfig, load_accrual_config
from accrual.funding import INVESTMENT_PLANS, InvestmentPlan, OpenedInvestment, open_investment
from accrual.job_runs import JobRunRecord, JobStatus, list_job_runs, load_job_status
from accrual.ledger import AppendedLedgerEntry, FinancialLedgerAppender, LedgerEntry, compute_entry_hash
from accrual.ledger_verification import (
    LedgerVerificationReport,
    assert_balance_continuity,
    verify_ledger,
    verify_user_chain,
)
from accrual.reconciliation import (
    DayReturnsReport,
    DepositReconciliationReport,
    EarlyReturnsReport,
    audit_early_returns,
    reconcile_active_deposits,
    verify_day_returns,
)
from accrual.records import (
    AccrualAbortError,
    AccrualConflictError,
    DataStoreUnavailableError,
    InvestmentRecord,
    InvestmentValidationError,
)
from accrual.return_calculator import ReturnResult, compute_return, plan_accruals
from accrual.runner import AccrualJobRunner, AccrualRunSummary

__all__ = [
    "AccrualAbortError",
    "AccrualConfig",
    "AccrualConflictError",
    "AccrualJobRunner",
    "AccrualRunSummary",
    "AppendedLedgerEntry",
    "CompletionMigrator",
    "CompletionResult",
    "DataStoreUnavailableError",
    "DayReturnsReport",
    "DepositReconciliationReport",
    "EarlyReturnsReport",
    "FinancialLedgerAppender",
    "INVESTMENT_PLANS",
    "InvestmentPlan",
    "InvestmentRecord",
    "InvestmentValidationError",
    "JobRunRecord",
    "JobStatus",
    "LedgerEntry",
    "LedgerVerificationReport",
    "OpenedInvestment",
    "ReturnResult",
    "assert_balance_continuity",
    "audit_early_returns",
    "compute_entry_hash",
    "compute_return",
    "list_job_runs",
    "load_accrual_config",
    "load_job_status",
    "open_investment",
    "plan_accruals",
    "reconcile_active_deposits",
    "verify_day_returns",
    "verify_ledger",
    "verify_user_chain",
]
