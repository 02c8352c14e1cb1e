#!/usr/bin/env python3
"""Operator CLI for the daily accrual job, ledger verification, reconciliation reports and job status."""

from __future__ import annotations

import argparse
from dataclasses import replace
from datetime import date, timedelta
from decimal import Decimal, InvalidOperation
import json
import logging
from pathlib import Path
import sys
from typing import Any, Optional

import psycopg

# Ensure repository root is importable when script is executed by path.
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from accrual.canonical import UtcClock, normalize_decimal, normalize_timestamp, utc_day_start
from accrual.config import AccrualConfig, load_accrual_config
from accrual.db import PsycopgAccrualDB, connect
from accrual.funding import open_investment
from accrual.job_runs import JobRunRecord, list_job_runs, load_job_status
from accrual.ledger_verification import LedgerVerificationReport, verify_ledger, verify_user_chain
from accrual.reconciliation import (
    DayReturnsReport,
    DepositReconciliationReport,
    EarlyReturnsReport,
    audit_early_returns,
    reconcile_active_deposits,
    verify_day_returns,
)
from accrual.records import AccrualAbortError, AccrualConflictError, InvestmentValidationError
from accrual.runner import AccrualJobRunner
from backend.db.enums import JobSource

logger = logging.getLogger("accrual_cli")


def _parse_run_date(value: str) -> date:
    try:
        return date.fromisoformat(value.strip())
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid run date (expected YYYY-MM-DD): {value}") from exc


def _parse_amount(value: str) -> Decimal:
    try:
        amount = Decimal(value.strip())
    except InvalidOperation as exc:
        raise argparse.ArgumentTypeError(f"Invalid amount: {value}") from exc
    if not amount.is_finite() or amount <= 0:
        raise argparse.ArgumentTypeError(f"Amount must be positive: {value}")
    return amount


def _positive_int(value: str) -> int:
    try:
        parsed = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid integer: {value}") from exc
    if parsed <= 0:
        raise argparse.ArgumentTypeError(f"Value must be positive: {value}")
    return parsed


def _resolve_connection(args: argparse.Namespace, config: AccrualConfig) -> psycopg.Connection[Any]:
    if args.dsn:
        return connect(config, dsn=args.dsn)

    resolved = replace(
        config,
        db_host=args.host or config.db_host,
        db_port=args.port or config.db_port,
        db_name=args.dbname or config.db_name,
        db_user=args.user or config.db_user,
        db_password=args.password or config.db_password,
    )
    if resolved.database_url:
        return connect(resolved)

    missing = [
        key
        for key, value in (
            ("host", resolved.db_host),
            ("port", resolved.db_port),
            ("dbname", resolved.db_name),
            ("user", resolved.db_user),
            ("password", resolved.db_password),
        )
        if not value
    ]
    if missing:
        raise SystemExit(
            "Missing DB connection args. Provide --dsn, set ACCRUAL_DATABASE_URL or "
            f"--host/--port/--dbname/--user/--password (missing: {', '.join(missing)})."
        )
    return connect(resolved)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Daily investment accrual CLI")
    parser.add_argument("--dsn", help="PostgreSQL DSN (optional)")
    parser.add_argument("--host", help="DB host")
    parser.add_argument("--port", help="DB port")
    parser.add_argument("--dbname", help="DB name")
    parser.add_argument("--user", help="DB user")
    parser.add_argument("--password", help="DB password")

    subparsers = parser.add_subparsers(dest="command", required=True)

    run_cmd = subparsers.add_parser("run-daily", help="Apply due returns and completions for one UTC day")
    run_cmd.add_argument("--run-date", type=_parse_run_date, default=None)
    run_cmd.add_argument(
        "--source",
        choices=tuple(source.value for source in JobSource),
        default=JobSource.CRON.value,
    )
    run_cmd.add_argument("--dry-run", action="store_true")

    verify_cmd = subparsers.add_parser("verify-ledger", help="Recompute ledger hashes over an id range")
    verify_cmd.add_argument("--from-id", type=_positive_int, default=None)
    verify_cmd.add_argument("--to-id", type=_positive_int, default=None)
    verify_cmd.add_argument("--sample", type=_positive_int, default=None)
    verify_cmd.add_argument("--chunk-size", type=_positive_int, default=None)

    chain_cmd = subparsers.add_parser("verify-user-chain", help="Walk one user's ledger chain")
    chain_cmd.add_argument("--user-id", required=True, type=int)
    chain_cmd.add_argument("--limit", type=_positive_int, default=None)

    subparsers.add_parser("job-status", help="Report freshness of the latest job run")

    runs_cmd = subparsers.add_parser("job-runs", help="List recent job runs")
    runs_cmd.add_argument("--limit", type=_positive_int, default=20)
    runs_cmd.add_argument("--offset", type=int, default=0)

    open_cmd = subparsers.add_parser("open-investment", help="Open an investment from a confirmed funding transaction")
    open_cmd.add_argument("--user-id", required=True, type=int)
    open_cmd.add_argument("--transaction-id", required=True, type=int)
    open_cmd.add_argument("--plan", required=True)
    open_cmd.add_argument("--amount", required=True, type=_parse_amount)
    open_cmd.add_argument("--credit-on-completion", action="store_true")

    deposits_cmd = subparsers.add_parser(
        "reconcile-deposits", help="Compare users.active_deposits with active investment principal"
    )
    deposits_cmd.add_argument("--user-id", type=int, default=None)

    early_cmd = subparsers.add_parser("audit-early-returns", help="List returns recorded before their day")
    early_cmd.add_argument("--days", type=_positive_int, default=14)
    early_cmd.add_argument("--threshold-minutes", type=_positive_int, default=60)

    day_cmd = subparsers.add_parser("verify-day-returns", help="List active investments missing a return for a day")
    day_cmd.add_argument("--run-date", type=_parse_run_date, default=None)

    return parser


def _verification_payload(report: LedgerVerificationReport) -> dict[str, Any]:
    return {
        "ok": report.ok,
        "checked": report.checked,
        "brokenAt": report.broken_at,
        "mismatchCount": report.mismatch_count,
        "failures": [
            {
                "ledgerId": failure.ledger_id,
                "userId": failure.user_id,
                "ledgerSeq": failure.ledger_seq,
                "code": failure.failure_code,
                "expected": failure.expected,
                "actual": failure.actual,
            }
            for failure in report.failures
        ],
    }


def _job_run_payload(record: Optional[JobRunRecord]) -> Optional[dict[str, Any]]:
    if record is None:
        return None
    return {
        "id": record.job_run_id,
        "jobName": record.job_name,
        "runDate": record.run_date.isoformat(),
        "source": record.source,
        "dryRun": record.dry_run,
        "startedAt": normalize_timestamp(record.started_at),
        "finishedAt": normalize_timestamp(record.finished_at) if record.finished_at else None,
        "success": record.success,
        "processedCount": record.processed_count,
        "completedCount": record.completed_count,
        "failedCount": record.failed_count,
        "totalApplied": format(normalize_decimal(record.total_applied), "f"),
        "errorText": record.error_text,
    }


def _amount(value: Decimal) -> str:
    return format(normalize_decimal(value), "f")


def _deposits_payload(report: DepositReconciliationReport) -> dict[str, Any]:
    return {
        "ok": report.ok,
        "checked": report.checked,
        "drifts": [
            {
                "userId": drift.user_id,
                "recorded": _amount(drift.recorded),
                "expected": _amount(drift.expected),
                "drift": _amount(drift.drift),
                "activeInvestments": drift.active_investments,
            }
            for drift in report.drifts
        ],
    }


def _early_returns_payload(report: EarlyReturnsReport) -> dict[str, Any]:
    return {
        "ok": report.ok,
        "checked": report.checked,
        "since": normalize_timestamp(report.since),
        "early": [
            {
                "returnId": item.return_id,
                "investmentId": item.investment_id,
                "userId": item.user_id,
                "amount": _amount(item.amount),
                "returnDate": normalize_timestamp(item.return_date),
                "createdAt": normalize_timestamp(item.created_at),
                "firstEligibleDay": normalize_timestamp(item.first_eligible_day),
                "reason": item.reason,
            }
            for item in report.early
        ],
    }


def _day_returns_payload(report: DayReturnsReport) -> dict[str, Any]:
    return {
        "ok": report.ok,
        "runDate": report.run_date.isoformat(),
        "active": report.active,
        "due": report.due,
        "recordedCount": report.recorded_count,
        "recordedAmount": _amount(report.recorded_amount),
        "missing": [
            {
                "investmentId": item.investment_id,
                "userId": item.user_id,
                "lastReturnApplied": (
                    normalize_timestamp(item.last_return_applied) if item.last_return_applied else None
                ),
                "pendingDays": item.pending_days,
            }
            for item in report.missing
        ],
        "invalid": list(report.invalid),
    }


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()

    config = load_accrual_config()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    try:
        conn = _resolve_connection(args, config)
    except AccrualAbortError as exc:
        print(json.dumps({"error": str(exc)}, sort_keys=True))
        return 2
    db = PsycopgAccrualDB(conn)
    clock = UtcClock()

    try:
        if args.command == "run-daily":
            summary = AccrualJobRunner(db, config, clock=clock).run(
                run_date=args.run_date,
                source=args.source,
                dry_run=args.dry_run,
            )
            print(json.dumps(summary.as_payload(), sort_keys=True))
            return 0 if summary.success else 2

        if args.command == "verify-ledger":
            report = verify_ledger(
                db,
                from_id=args.from_id,
                to_id=args.to_id,
                sample=args.sample,
                chunk_size=args.chunk_size or config.ledger_verify_chunk_size,
            )
            db.rollback()
            print(json.dumps(_verification_payload(report), sort_keys=True))
            return 0 if report.ok else 2

        if args.command == "verify-user-chain":
            report = verify_user_chain(db, args.user_id, limit=args.limit)
            db.rollback()
            payload = _verification_payload(report)
            payload["userId"] = args.user_id
            print(json.dumps(payload, sort_keys=True))
            return 0 if report.ok else 2

        if args.command == "job-status":
            status = load_job_status(db, config.job_name, clock.now_utc())
            db.rollback()
            payload = {
                "last": _job_run_payload(status.last),
                "stale": status.stale,
                "cooldownSeconds": status.cooldown_seconds,
                "nextRunUtc": normalize_timestamp(status.next_run_utc) if status.next_run_utc else None,
                "now": normalize_timestamp(status.now),
            }
            print(json.dumps(payload, sort_keys=True))
            return 0

        if args.command == "job-runs":
            records = list_job_runs(db, config.job_name, limit=args.limit, offset=args.offset)
            db.rollback()
            payload = {
                "runs": [_job_run_payload(record) for record in records],
                "limit": args.limit,
                "offset": args.offset,
            }
            print(json.dumps(payload, sort_keys=True))
            return 0

        if args.command == "reconcile-deposits":
            deposits = reconcile_active_deposits(db, user_id=args.user_id)
            db.rollback()
            print(json.dumps(_deposits_payload(deposits), sort_keys=True))
            return 0 if deposits.ok else 2

        if args.command == "audit-early-returns":
            since = utc_day_start(clock.now_utc()) - timedelta(days=args.days)
            early = audit_early_returns(db, since, threshold=timedelta(minutes=args.threshold_minutes))
            db.rollback()
            print(json.dumps(_early_returns_payload(early), sort_keys=True))
            return 0 if early.ok else 2

        if args.command == "verify-day-returns":
            day_report = verify_day_returns(db, args.run_date or clock.now_utc())
            db.rollback()
            print(json.dumps(_day_returns_payload(day_report), sort_keys=True))
            return 0 if day_report.ok else 2

        try:
            opened = open_investment(
                db,
                user_id=args.user_id,
                transaction_id=args.transaction_id,
                plan_key=args.plan,
                amount=args.amount,
                credit_on_completion=args.credit_on_completion,
                clock=clock,
            )
        except (AccrualConflictError, InvestmentValidationError) as exc:
            print(json.dumps({"error": str(exc)}, sort_keys=True))
            return 2
        payload = {
            "investmentId": opened.investment_id,
            "userId": opened.user_id,
            "plan": opened.plan.plan_id,
            "principalAmount": format(opened.principal_amount, "f"),
            "totalReturn": format(opened.total_return, "f"),
            "startDate": normalize_timestamp(opened.start_date),
            "endDate": normalize_timestamp(opened.end_date),
            "firstProfitDate": normalize_timestamp(opened.first_profit_date),
            "ledgerSeq": opened.ledger_entry.ledger_seq,
        }
        print(json.dumps(payload, sort_keys=True))
        return 0
    except AccrualAbortError as exc:
        logger.error("Command %s aborted: %s", args.command, exc)
        print(json.dumps({"error": str(exc)}, sort_keys=True))
        return 2
    finally:
        conn.close()


if __name__ == "__main__":
    raise SystemExit(main())
