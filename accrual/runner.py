"""Daily accrual batch: one guarded pass over active investments."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
from decimal import Decimal
import logging
from typing import Any, Callable, Mapping, Optional, Sequence, TypeVar

from accrual.canonical import ZERO, UtcClock, as_decimal, normalize_decimal, normalize_timestamp, utc_day_start
from accrual.completion import CompletionMigrator, CompletionResult
from accrual.config import AccrualConfig
from accrual.job_runs import (
    RunCounts,
    checkpoint_run,
    finalize_run,
    find_running_run,
    find_successful_run,
    start_run,
)
from accrual.ledger import FinancialLedgerAppender, LedgerEntry
from accrual.notifications import (
    COMPLETED,
    INCREMENT,
    InvestmentNotification,
    InvestmentNotifier,
    LoggingNotifier,
    notify_best_effort,
)
from accrual.records import (
    INVESTMENT_COLUMNS,
    AccrualAbortError,
    AccrualConflictError,
    AccrualDatabase,
    InvestmentRecord,
    lock_user_balance,
    store_user_balance,
)
from accrual.return_calculator import (
    ReturnResult,
    apply_result,
    compute_return,
    is_matured,
    next_due_day,
    plan_accruals,
)
from backend.db.enums import InvestmentStatus, JobSource, LedgerEntryType

logger = logging.getLogger(__name__)

_T = TypeVar("_T")

TIME_BUDGET_EXCEEDED = "time budget exceeded"


@dataclass(frozen=True)
class AccrualRunSummary:
    """Counters and outcome of one runner invocation."""

    run_date: date
    processed: int = 0
    completed: int = 0
    failed: int = 0
    total_applied: Decimal = ZERO
    errors: tuple[Mapping[str, Any], ...] = ()
    skipped: bool = False
    job_run_id: Optional[int] = None
    aborted: bool = False
    dry_run: bool = False
    success: bool = True
    error_text: Optional[str] = None

    def as_payload(self) -> dict[str, Any]:
        return {
            "runDate": self.run_date.isoformat(),
            "processed": self.processed,
            "completed": self.completed,
            "failed": self.failed,
            "totalApplied": format(normalize_decimal(self.total_applied), "f"),
            "errors": [dict(error) for error in self.errors],
            "skipped": self.skipped,
            "jobRunId": self.job_run_id,
            "aborted": self.aborted,
            "dryRun": self.dry_run,
            "success": self.success,
            "errorText": self.error_text,
        }


@dataclass
class _InvestmentOutcome:
    investment_id: int
    applied: tuple[ReturnResult, ...] = ()
    already_applied: tuple[ReturnResult, ...] = ()
    completion: Optional[CompletionResult] = None
    completes: bool = False
    clamped: bool = False
    notifications: list[InvestmentNotification] = field(default_factory=list)

    @property
    def amount(self) -> Decimal:
        return sum((result.amount for result in self.applied), ZERO)


@dataclass
class _RunProgress:
    processed: int = 0
    completed: int = 0
    failed: int = 0
    conflicts: int = 0
    idle: int = 0
    total_applied: Decimal = ZERO
    errors: list[dict[str, Any]] = field(default_factory=list)
    already_applied: list[dict[str, Any]] = field(default_factory=list)
    clamped: list[int] = field(default_factory=list)

    def counts(self) -> RunCounts:
        return RunCounts(
            processed=self.processed,
            completed=self.completed,
            failed=self.failed,
            total_applied=self.total_applied,
        )


class AccrualJobRunner:
    """Applies due returns and completions, one transaction per investment.

    The ``(investment_id, return_date)`` unique key and row locks make reruns
    and overlapping runs safe; the job_runs guard only avoids pointless work.
    """

    def __init__(
        self,
        db: AccrualDatabase,
        config: AccrualConfig,
        notifier: InvestmentNotifier | None = None,
        clock: UtcClock | None = None,
    ) -> None:
        self._db = db
        self._config = config
        self._notifier = notifier or LoggingNotifier()
        self._clock = clock or UtcClock()
        self._ledger = FinancialLedgerAppender(db, clock=self._clock)
        self._migrator = CompletionMigrator(db, self._ledger)

    def run(
        self,
        run_date: date | datetime | None = None,
        source: str = JobSource.CRON.value,
        dry_run: bool = False,
    ) -> AccrualRunSummary:
        if source not in {item.value for item in JobSource}:
            raise ValueError(f"Unsupported job source: {source}")
        started_at = self._clock.now_utc()
        run_day = utc_day_start(run_date if run_date is not None else started_at)
        if run_day > utc_day_start(started_at):
            raise ValueError(f"run_date {run_day.date().isoformat()} is in the future")
        run_date_value = run_day.date()

        logger.info(
            "Accrual run starting job=%s run_date=%s source=%s dry_run=%s",
            self._config.job_name,
            run_date_value.isoformat(),
            source,
            dry_run,
        )

        meta: dict[str, Any] = {
            "dryRun": dry_run,
            "maxCatchupDays": self._config.max_catchup_days,
            "sendIncrementNotifications": self._config.send_increment_notifications,
            "sendCompletionNotifications": self._config.send_completion_notifications,
        }
        progress = _RunProgress()

        try:
            if not dry_run:
                previous = self._in_transaction(
                    lambda: find_successful_run(self._db, self._config.job_name, run_date_value)
                )
                if previous is not None:
                    logger.info(
                        "Accrual run skipped; run_date already succeeded job_run_id=%s run_date=%s",
                        previous.job_run_id,
                        run_date_value.isoformat(),
                    )
                    return AccrualRunSummary(
                        run_date=run_date_value,
                        skipped=True,
                        job_run_id=previous.job_run_id,
                    )
                running = self._in_transaction(
                    lambda: find_running_run(
                        self._db,
                        self._config.job_name,
                        run_date_value,
                        started_at - timedelta(seconds=self._config.time_budget_seconds),
                    )
                )
                if running is not None:
                    logger.warning(
                        "Accrual run skipped; run_date in progress job_run_id=%s started_at=%s",
                        running.job_run_id,
                        normalize_timestamp(running.started_at),
                    )
                    return AccrualRunSummary(
                        run_date=run_date_value,
                        skipped=True,
                        job_run_id=running.job_run_id,
                    )

            job_run_id = self._in_transaction(
                lambda: start_run(
                    self._db,
                    job_name=self._config.job_name,
                    run_date=run_date_value,
                    source=source,
                    dry_run=dry_run,
                    started_at=started_at,
                    meta=meta,
                )
            )
        except AccrualAbortError as exc:
            logger.error("Accrual run aborted before start: %s", exc)
            return AccrualRunSummary(
                run_date=run_date_value,
                aborted=True,
                dry_run=dry_run,
                success=False,
                error_text=str(exc),
            )

        try:
            candidate_ids = self._in_transaction(lambda: self._load_candidate_ids(run_day))
        except AccrualAbortError as exc:
            logger.error("Accrual run aborted loading candidates job_run_id=%s error=%s", job_run_id, exc)
            self._finalize_best_effort(
                job_run_id,
                progress,
                success=False,
                error_text=str(exc),
                meta=self._run_meta(meta, progress),
            )
            return AccrualRunSummary(
                run_date=run_date_value,
                job_run_id=job_run_id,
                aborted=True,
                dry_run=dry_run,
                success=False,
                error_text=str(exc),
            )

        meta["candidates"] = len(candidate_ids)
        logger.info("Accrual candidates loaded count=%s job_run_id=%s", len(candidate_ids), job_run_id)

        abort_error: Optional[str] = None
        budget_exceeded = False
        for index, investment_id in enumerate(candidate_ids):
            if self._budget_exceeded(started_at):
                budget_exceeded = True
                logger.warning(
                    "Accrual time budget exceeded after %s of %s candidates job_run_id=%s",
                    index,
                    len(candidate_ids),
                    job_run_id,
                )
                break

            try:
                outcome = self._process_investment(investment_id, run_day, dry_run)
            except AccrualAbortError as exc:
                logger.error("Accrual run aborted investment_id=%s error=%s", investment_id, exc)
                abort_error = str(exc)
                break
            except AccrualConflictError as exc:
                progress.conflicts += 1
                logger.info("Accrual conflict; skipping investment_id=%s detail=%s", investment_id, exc)
                continue
            except Exception as exc:
                progress.failed += 1
                progress.errors.append({"investment_id": investment_id, "error": str(exc)})
                logger.exception("Accrual failed investment_id=%s", investment_id)
                continue

            self._record_outcome(progress, outcome)
            for notification in outcome.notifications:
                notify_best_effort(self._notifier, notification)

            if (index + 1) % self._config.checkpoint_every == 0:
                try:
                    self._in_transaction(
                        lambda: checkpoint_run(self._db, job_run_id, progress.counts(), self._run_meta(meta, progress))
                    )
                except AccrualAbortError as exc:
                    logger.error("Accrual checkpoint failed; aborting run job_run_id=%s error=%s", job_run_id, exc)
                    abort_error = str(exc)
                    break

        error_text: Optional[str] = None
        if abort_error is not None:
            error_text = abort_error
        elif budget_exceeded:
            error_text = TIME_BUDGET_EXCEEDED
        elif progress.failed:
            error_text = f"{progress.failed} investment(s) failed: " + "; ".join(
                f"{error['investment_id']}: {error['error']}" for error in progress.errors[:5]
            )
        success = error_text is None

        self._finalize_best_effort(
            job_run_id,
            progress,
            success=success,
            error_text=error_text,
            meta=self._run_meta(meta, progress),
        )
        logger.info(
            "Accrual run finished job_run_id=%s processed=%s completed=%s failed=%s total_applied=%s success=%s",
            job_run_id,
            progress.processed,
            progress.completed,
            progress.failed,
            format(normalize_decimal(progress.total_applied), "f"),
            success,
        )
        return AccrualRunSummary(
            run_date=run_date_value,
            processed=progress.processed,
            completed=progress.completed,
            failed=progress.failed,
            total_applied=normalize_decimal(progress.total_applied),
            errors=tuple(progress.errors),
            job_run_id=job_run_id,
            aborted=abort_error is not None,
            dry_run=dry_run,
            success=success,
            error_text=error_text,
        )

    def _load_candidate_ids(self, run_day: datetime) -> list[int]:
        rows = self._db.fetch_all(
            """
            SELECT id
            FROM investments
            WHERE status = :active_status
              AND (last_return_applied IS NULL OR last_return_applied < :run_day)
            ORDER BY id ASC
            """,
            {"active_status": InvestmentStatus.ACTIVE.value, "run_day": run_day},
        )
        return [int(row["id"]) for row in rows]

    def _load_investment(self, investment_id: int, *, lock: bool) -> Optional[Mapping[str, Any]]:
        lock_clause = "FOR UPDATE" if lock else ""
        return self._db.fetch_one(
            f"""
            SELECT {INVESTMENT_COLUMNS}
            FROM investments
            WHERE id = :investment_id
            {lock_clause}
            """,
            {"investment_id": investment_id},
        )

    def _process_investment(self, investment_id: int, run_day: datetime, dry_run: bool) -> _InvestmentOutcome:
        self._db.begin()
        try:
            outcome = self._apply_investment(investment_id, run_day, dry_run)
        except Exception:
            self._rollback_quietly(investment_id)
            raise
        if dry_run or not (outcome.applied or outcome.already_applied or outcome.completes):
            self._db.rollback()
        else:
            self._db.commit()
        return outcome

    def _apply_investment(self, investment_id: int, run_day: datetime, dry_run: bool) -> _InvestmentOutcome:
        row = self._load_investment(investment_id, lock=not dry_run)
        outcome = _InvestmentOutcome(investment_id=investment_id)
        if row is None or row["status"] != InvestmentStatus.ACTIVE.value:
            return outcome

        investment = InvestmentRecord.from_row(row)
        plan = plan_accruals(investment, run_day, self._config.max_catchup_days)
        if not plan:
            return outcome

        if dry_run:
            outcome.applied = tuple(result for result in plan if result.due)
            outcome.completes = plan[-1].completes
            outcome.clamped = any(result.clamped for result in outcome.applied)
            return outcome

        now = self._clock.now_utc()
        balance = lock_user_balance(self._db, investment.user_id)
        state = investment
        applied: list[ReturnResult] = []
        already_applied: list[ReturnResult] = []
        pending = [result for result in plan if result.due]
        while pending:
            result = pending.pop(0)
            inserted = self._insert_return(investment, result, now)
            if inserted is None:
                recorded = self._recorded_return_amount(investment.investment_id, result.return_date)
                result = compute_return(state, result.return_date, recorded_amount=recorded)
                state = apply_result(state, result)
                already_applied.append(result)
                logger.warning(
                    "Return already recorded; advancing past day without credit investment_id=%s return_date=%s",
                    investment.investment_id,
                    result.return_date.date().isoformat(),
                )
                # Later days were planned against the pre-conflict state.
                budget = self._config.max_catchup_days - len(applied) - len(already_applied)
                pending = []
                if not result.completes and budget > 0:
                    pending = [item for item in plan_accruals(state, run_day, budget) if item.due]
                continue

            state = apply_result(state, result)
            applied.append(result)
            if not investment.credit_on_completion:
                balance = replace(balance, balance=normalize_decimal(balance.balance + result.amount))
                self._ledger.append(
                    LedgerEntry(
                        user_id=investment.user_id,
                        entry_type=LedgerEntryType.RETURN_APPLIED.value,
                        amount_delta=result.amount,
                        active_deposits_delta=ZERO,
                        balance_after=balance.balance,
                        active_deposits_after=balance.active_deposits,
                        reference_table="investment_returns",
                        reference_id=int(inserted["id"]),
                        metadata={
                            "investment_id": investment.investment_id,
                            "return_date": result.return_date,
                            "day": result.new_days_elapsed,
                            "clamped": result.clamped,
                        },
                    )
                )

        outcome.applied = tuple(applied)
        outcome.already_applied = tuple(already_applied)
        outcome.completes = is_matured(state)
        outcome.clamped = any(result.clamped for result in applied)

        if applied or already_applied:
            self._db.execute(
                """
                UPDATE investments
                SET days_elapsed = :days_elapsed,
                    total_earned = :total_earned,
                    last_return_applied = :last_return_applied,
                    updated_at = :updated_at
                WHERE id = :investment_id
                """,
                {
                    "investment_id": investment.investment_id,
                    "days_elapsed": state.days_elapsed,
                    "total_earned": state.total_earned,
                    "last_return_applied": state.last_return_applied,
                    "updated_at": now,
                },
            )
        if applied:
            store_user_balance(self._db, balance, now)

        if outcome.completes:
            outcome.completion = self._migrator.complete(state, balance, completed_at=now)

        outcome.notifications = self._build_notifications(state, outcome.applied, outcome.completion, now)
        return outcome

    def _insert_return(
        self,
        investment: InvestmentRecord,
        result: ReturnResult,
        now: datetime,
    ) -> Optional[Mapping[str, Any]]:
        return self._db.fetch_one(
            """
            INSERT INTO investment_returns (
                investment_id, user_id, amount, return_date, created_at
            ) VALUES (
                :investment_id, :user_id, :amount, :return_date, :created_at
            )
            ON CONFLICT (investment_id, return_date) DO NOTHING
            RETURNING id
            """,
            {
                "investment_id": investment.investment_id,
                "user_id": investment.user_id,
                "amount": result.amount,
                "return_date": result.return_date,
                "created_at": now,
            },
        )

    def _recorded_return_amount(self, investment_id: int, return_date: datetime) -> Decimal:
        row = self._db.fetch_one(
            """
            SELECT amount
            FROM investment_returns
            WHERE investment_id = :investment_id
              AND return_date = :return_date
            """,
            {"investment_id": investment_id, "return_date": return_date},
        )
        if row is None:
            raise AccrualConflictError(
                f"Return for investment {investment_id} on {return_date.date().isoformat()} "
                "conflicted but is not visible."
            )
        return normalize_decimal(as_decimal(row["amount"]))

    def _build_notifications(
        self,
        state: InvestmentRecord,
        applied: Sequence[ReturnResult],
        completion: Optional[CompletionResult],
        now: datetime,
    ) -> list[InvestmentNotification]:
        notifications: list[InvestmentNotification] = []
        if self._config.send_increment_notifications and not state.credit_on_completion:
            next_accrual = None if completion is not None else next_due_day(state)
            for result in applied:
                notifications.append(
                    InvestmentNotification(
                        kind=INCREMENT,
                        user_id=state.user_id,
                        investment_id=state.investment_id,
                        plan_name=state.plan_name,
                        day=result.new_days_elapsed,
                        duration=state.plan_duration,
                        amount=result.amount,
                        total_earned=result.new_total_earned,
                        principal=state.principal_amount,
                        occurred_at=now,
                        next_accrual_utc=next_accrual,
                    )
                )
        if completion is not None and self._config.send_completion_notifications:
            notifications.append(
                InvestmentNotification(
                    kind=COMPLETED,
                    user_id=state.user_id,
                    investment_id=state.investment_id,
                    plan_name=state.plan_name,
                    day=state.days_elapsed,
                    duration=state.plan_duration,
                    amount=completion.principal_unlocked,
                    total_earned=state.total_earned,
                    principal=state.principal_amount,
                    occurred_at=now,
                )
            )
        return notifications

    def _record_outcome(self, progress: _RunProgress, outcome: _InvestmentOutcome) -> None:
        if outcome.applied:
            progress.processed += 1
            progress.total_applied = normalize_decimal(progress.total_applied + outcome.amount)
        if outcome.completes:
            progress.completed += 1
        if outcome.clamped:
            progress.clamped.append(outcome.investment_id)
        for result in outcome.already_applied:
            progress.conflicts += 1
            progress.already_applied.append(
                {"investment_id": outcome.investment_id, "return_date": result.return_date.date().isoformat()}
            )
        if not (outcome.applied or outcome.already_applied or outcome.completes):
            progress.idle += 1

    def _run_meta(self, meta: Mapping[str, Any], progress: _RunProgress) -> dict[str, Any]:
        return {
            **meta,
            "conflicts": progress.conflicts,
            "alreadyApplied": list(progress.already_applied),
            "idle": progress.idle,
            "clamped": list(progress.clamped),
            "failures": list(progress.errors),
            "updatedAt": normalize_timestamp(self._clock.now_utc()),
        }

    def _budget_exceeded(self, started_at: datetime) -> bool:
        elapsed = (self._clock.now_utc() - started_at).total_seconds()
        return elapsed >= self._config.time_budget_seconds

    def _in_transaction(self, work: Callable[[], _T]) -> _T:
        self._db.begin()
        try:
            result = work()
        except Exception:
            self._rollback_quietly(None)
            raise
        self._db.commit()
        return result

    def _rollback_quietly(self, investment_id: Optional[int]) -> None:
        try:
            self._db.rollback()
        except AccrualAbortError:
            logger.exception("Rollback failed investment_id=%s", investment_id)

    def _finalize_best_effort(
        self,
        job_run_id: int,
        progress: _RunProgress,
        *,
        success: bool,
        error_text: Optional[str],
        meta: Mapping[str, Any],
    ) -> None:
        try:
            self._in_transaction(
                lambda: finalize_run(
                    self._db,
                    job_run_id,
                    progress.counts(),
                    finished_at=self._clock.now_utc(),
                    success=success,
                    error_text=error_text,
                    meta=meta,
                )
            )
        except AccrualAbortError:
            logger.exception("Failed to finalize job run job_run_id=%s", job_run_id)
