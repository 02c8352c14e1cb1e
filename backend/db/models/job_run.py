"""Accrual job run observability and duplicate-run guard model."""

from __future__ import annotations

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Identity,
    Index,
    Integer,
    Numeric,
    PrimaryKeyConstraint,
    Text,
    desc,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from backend.db.base import Base
from backend.db.enums import JobSource, sql_values

logger = logging.getLogger(__name__)


class JobRun(Base):
    """One invocation of the accrual batch."""

    __tablename__ = "job_runs"
    __table_args__ = (
        PrimaryKeyConstraint("id", name="pk_job_runs"),
        CheckConstraint(f"source IN ({sql_values(JobSource)})", name="ck_job_runs_source"),
        CheckConstraint(
            "finished_at IS NULL OR finished_at >= started_at",
            name="ck_job_runs_finished_after_started",
        ),
        CheckConstraint(
            "processed_count >= 0 AND completed_count >= 0 AND failed_count >= 0",
            name="ck_job_runs_counts_nonneg",
        ),
        Index("idx_job_runs_name_run_date", "job_name", "run_date"),
        Index("idx_job_runs_name_started_desc", "job_name", desc("started_at")),
    )

    id: Mapped[int] = mapped_column(BigInteger, Identity(always=True), nullable=False)
    job_name: Mapped[str] = mapped_column(Text, nullable=False)
    run_date: Mapped[date] = mapped_column(Date, nullable=False)
    source: Mapped[str] = mapped_column(Text, nullable=False)
    dry_run: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=text("false"))
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("now()"),
    )
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    success: Mapped[bool | None] = mapped_column(Boolean)
    processed_count: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    completed_count: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    failed_count: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    total_applied: Mapped[Decimal] = mapped_column(
        Numeric(38, 18),
        nullable=False,
        server_default=text("0"),
    )
    error_text: Mapped[str | None] = mapped_column(Text)
    meta: Mapped[dict[str, Any]] = mapped_column(
        JSONB,
        nullable=False,
        server_default=text("'{}'::jsonb"),
    )
