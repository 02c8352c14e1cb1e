"""Job run rows: duplicate-run guard, checkpoints and operator status."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
import logging
from typing import Any, Mapping, Optional, Sequence

from accrual.canonical import (
    ZERO,
    as_decimal,
    canonical_serialize,
    next_utc_midnight,
    normalize_decimal,
    utc_day_start,
)
from accrual.records import AccrualDatabase

logger = logging.getLogger(__name__)

STALE_AFTER = timedelta(hours=26)

_JOB_RUN_COLUMNS = (
    "id, job_name, run_date, source, dry_run, started_at, finished_at, success, processed_count, "
    "completed_count, failed_count, total_applied, error_text, meta"
)


@dataclass(frozen=True)
class JobRunRecord:
    """One stored job_runs row."""

    job_run_id: int
    job_name: str
    run_date: date
    source: str
    dry_run: bool
    started_at: datetime
    finished_at: Optional[datetime]
    success: Optional[bool]
    processed_count: int
    completed_count: int
    failed_count: int
    total_applied: Decimal
    error_text: Optional[str]
    meta: Mapping[str, Any]

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "JobRunRecord":
        run_date = row["run_date"]
        if isinstance(run_date, datetime):
            run_date = run_date.date()
        return cls(
            job_run_id=int(row["id"]),
            job_name=str(row["job_name"]),
            run_date=run_date,
            source=str(row["source"]),
            dry_run=bool(row["dry_run"]),
            started_at=row["started_at"],
            finished_at=row["finished_at"],
            success=row["success"],
            processed_count=int(row["processed_count"] or 0),
            completed_count=int(row["completed_count"] or 0),
            failed_count=int(row["failed_count"] or 0),
            total_applied=as_decimal(row["total_applied"] if row["total_applied"] is not None else ZERO),
            error_text=row["error_text"],
            meta=dict(row["meta"] or {}),
        )


@dataclass(frozen=True)
class JobStatus:
    """Freshness of the most recent run as seen by operators."""

    last: Optional[JobRunRecord]
    stale: bool
    cooldown_seconds: int
    next_run_utc: Optional[datetime]
    now: datetime


@dataclass(frozen=True)
class RunCounts:
    processed: int
    completed: int
    failed: int
    total_applied: Decimal


def find_successful_run(db: AccrualDatabase, job_name: str, run_date: date) -> Optional[JobRunRecord]:
    """Return the successful non-dry run for ``run_date`` if one exists."""
    row = db.fetch_one(
        f"""
        SELECT {_JOB_RUN_COLUMNS}
        FROM job_runs
        WHERE job_name = :job_name
          AND run_date = :run_date
          AND success IS TRUE
          AND dry_run IS FALSE
        ORDER BY id DESC
        LIMIT 1
        """,
        {"job_name": job_name, "run_date": run_date},
    )
    return None if row is None else JobRunRecord.from_row(row)


def find_running_run(
    db: AccrualDatabase,
    job_name: str,
    run_date: date,
    started_after: datetime,
) -> Optional[JobRunRecord]:
    """Return an unfinished non-dry run for ``run_date`` started after ``started_after``.

    Older unfinished rows belong to crashed processes and do not block a rerun.
    """
    row = db.fetch_one(
        f"""
        SELECT {_JOB_RUN_COLUMNS}
        FROM job_runs
        WHERE job_name = :job_name
          AND run_date = :run_date
          AND success IS NULL
          AND dry_run IS FALSE
          AND started_at >= :started_after
        ORDER BY id DESC
        LIMIT 1
        """,
        {"job_name": job_name, "run_date": run_date, "started_after": started_after},
    )
    return None if row is None else JobRunRecord.from_row(row)


def start_run(
    db: AccrualDatabase,
    *,
    job_name: str,
    run_date: date,
    source: str,
    dry_run: bool,
    started_at: datetime,
    meta: Mapping[str, Any],
) -> int:
    row = db.fetch_one(
        """
        INSERT INTO job_runs (
            job_name, run_date, source, dry_run, started_at, meta
        ) VALUES (
            :job_name, :run_date, :source, :dry_run, :started_at, CAST(:meta AS JSONB)
        )
        RETURNING id
        """,
        {
            "job_name": job_name,
            "run_date": run_date,
            "source": source,
            "dry_run": dry_run,
            "started_at": started_at,
            "meta": canonical_serialize(meta),
        },
    )
    if row is None:
        raise RuntimeError("job_runs insert returned no id")
    return int(row["id"])


def checkpoint_run(
    db: AccrualDatabase,
    job_run_id: int,
    counts: RunCounts,
    meta: Mapping[str, Any],
) -> None:
    """Persist progress counters without finalizing the run."""
    db.execute(
        """
        UPDATE job_runs
        SET processed_count = :processed_count,
            completed_count = :completed_count,
            failed_count = :failed_count,
            total_applied = :total_applied,
            meta = CAST(:meta AS JSONB)
        WHERE id = :job_run_id
        """,
        {
            "job_run_id": job_run_id,
            "processed_count": counts.processed,
            "completed_count": counts.completed,
            "failed_count": counts.failed,
            "total_applied": normalize_decimal(counts.total_applied),
            "meta": canonical_serialize(meta),
        },
    )


def finalize_run(
    db: AccrualDatabase,
    job_run_id: int,
    counts: RunCounts,
    *,
    finished_at: datetime,
    success: bool,
    error_text: Optional[str],
    meta: Mapping[str, Any],
) -> None:
    db.execute(
        """
        UPDATE job_runs
        SET finished_at = :finished_at,
            success = :success,
            processed_count = :processed_count,
            completed_count = :completed_count,
            failed_count = :failed_count,
            total_applied = :total_applied,
            error_text = :error_text,
            meta = CAST(:meta AS JSONB)
        WHERE id = :job_run_id
        """,
        {
            "job_run_id": job_run_id,
            "finished_at": finished_at,
            "success": success,
            "processed_count": counts.processed,
            "completed_count": counts.completed,
            "failed_count": counts.failed,
            "total_applied": normalize_decimal(counts.total_applied),
            "error_text": error_text,
            "meta": canonical_serialize(meta),
        },
    )


def list_job_runs(
    db: AccrualDatabase,
    job_name: str,
    *,
    limit: int = 20,
    offset: int = 0,
) -> Sequence[JobRunRecord]:
    if limit <= 0 or limit > 200:
        raise ValueError("limit must be within 1..200")
    if offset < 0:
        raise ValueError("offset must be >= 0")
    rows = db.fetch_all(
        f"""
        SELECT {_JOB_RUN_COLUMNS}
        FROM job_runs
        WHERE job_name = :job_name
        ORDER BY started_at DESC, id DESC
        LIMIT :limit
        OFFSET :offset
        """,
        {"job_name": job_name, "limit": limit, "offset": offset},
    )
    return [JobRunRecord.from_row(row) for row in rows]


def load_job_status(db: AccrualDatabase, job_name: str, now: datetime) -> JobStatus:
    """Report whether the latest run covers today's UTC day.

    A run is stale when it started more than 26 hours ago, targeted another
    UTC day, or failed. A fresh non-dry run reports the next UTC midnight as
    the earliest useful rerun.
    """
    runs = list_job_runs(db, job_name, limit=1)
    last = runs[0] if runs else None
    if last is None:
        return JobStatus(last=None, stale=True, cooldown_seconds=0, next_run_utc=None, now=now)

    same_utc_day = last.run_date == utc_day_start(now).date()
    fresh = now - last.started_at < STALE_AFTER and same_utc_day and last.success is not False
    next_run_utc: Optional[datetime] = None
    cooldown_seconds = 0
    if fresh and not last.dry_run:
        next_run_utc = next_utc_midnight(now)
        cooldown_seconds = max(0, int((next_run_utc - now).total_seconds()))
    return JobStatus(
        last=last,
        stale=not fresh,
        cooldown_seconds=cooldown_seconds,
        next_run_utc=next_run_utc,
        now=now,
    )
