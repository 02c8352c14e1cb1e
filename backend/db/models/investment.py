"""Investment position, daily return and completion archive models."""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Identity,
    Index,
    Integer,
    Numeric,
    PrimaryKeyConstraint,
    Text,
    UniqueConstraint,
    desc,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from backend.db.base import Base
from backend.db.enums import InvestmentStatus, ProfitBasis, sql_values

logger = logging.getLogger(__name__)


class Investment(Base):
    """One funded investment position accruing daily profit."""

    __tablename__ = "investments"
    __table_args__ = (
        PrimaryKeyConstraint("id", name="pk_investments"),
        UniqueConstraint("transaction_id", name="uq_investments_transaction"),
        CheckConstraint(
            f"status IN ({sql_values(InvestmentStatus)})",
            name="ck_investments_status",
        ),
        CheckConstraint(
            f"profit_basis IN ({sql_values(ProfitBasis)})",
            name="ck_investments_profit_basis",
        ),
        CheckConstraint("plan_duration > 0", name="ck_investments_duration_pos"),
        CheckConstraint("daily_profit > 0", name="ck_investments_daily_profit_pos"),
        CheckConstraint("principal_amount > 0", name="ck_investments_principal_pos"),
        CheckConstraint("total_return > 0", name="ck_investments_total_return_pos"),
        CheckConstraint(
            "days_elapsed >= 0 AND days_elapsed <= plan_duration",
            name="ck_investments_days_elapsed_range",
        ),
        CheckConstraint(
            "total_earned >= 0 AND total_earned <= total_return",
            name="ck_investments_total_earned_range",
        ),
        CheckConstraint("end_date >= start_date", name="ck_investments_end_after_start"),
        Index("idx_investments_status_last_return", "status", "last_return_applied"),
        Index("idx_investments_user", "user_id"),
    )

    id: Mapped[int] = mapped_column(BigInteger, Identity(always=False), nullable=False)
    user_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey(
            "users.id",
            name="fk_investments_user",
            onupdate="RESTRICT",
            ondelete="RESTRICT",
        ),
        nullable=False,
    )
    transaction_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    plan_name: Mapped[str] = mapped_column(Text, nullable=False)
    plan_duration: Mapped[int] = mapped_column(Integer, nullable=False)
    daily_profit: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    profit_basis: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        server_default=text("'PERCENT'"),
    )
    principal_amount: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    total_return: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        server_default=text("'active'"),
    )
    days_elapsed: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    total_earned: Mapped[Decimal] = mapped_column(
        Numeric(38, 18),
        nullable=False,
        server_default=text("0"),
    )
    last_return_applied: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    first_profit_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    credit_on_completion: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        server_default=text("false"),
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("now()"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("now()"),
    )


class InvestmentReturn(Base):
    """Append-only profit application for one investment and calendar day."""

    __tablename__ = "investment_returns"
    __table_args__ = (
        PrimaryKeyConstraint("id", name="pk_investment_returns"),
        UniqueConstraint(
            "investment_id",
            "return_date",
            name="uq_investment_returns_investment_day",
        ),
        CheckConstraint("amount >= 0", name="ck_investment_returns_amount_nonneg"),
        CheckConstraint(
            "date_trunc('day', return_date AT TIME ZONE 'UTC') = return_date AT TIME ZONE 'UTC'",
            name="ck_investment_returns_day_aligned",
        ),
        Index("idx_investment_returns_user_day_desc", "user_id", desc("return_date")),
    )

    id: Mapped[int] = mapped_column(BigInteger, Identity(always=True), nullable=False)
    investment_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey(
            "investments.id",
            name="fk_investment_returns_investment",
            onupdate="RESTRICT",
            ondelete="RESTRICT",
        ),
        nullable=False,
    )
    user_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey(
            "users.id",
            name="fk_investment_returns_user",
            onupdate="RESTRICT",
            ondelete="RESTRICT",
        ),
        nullable=False,
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    return_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("now()"),
    )


class CompletedInvestment(Base):
    """Terminal snapshot written once when an investment completes."""

    __tablename__ = "completed_investments"
    __table_args__ = (
        PrimaryKeyConstraint("id", name="pk_completed_investments"),
        UniqueConstraint(
            "original_investment_id",
            name="uq_completed_investments_original",
        ),
        CheckConstraint("principal_amount > 0", name="ck_completed_investments_principal_pos"),
        CheckConstraint("total_earned >= 0", name="ck_completed_investments_earned_nonneg"),
    )

    id: Mapped[int] = mapped_column(BigInteger, Identity(always=True), nullable=False)
    original_investment_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey(
            "investments.id",
            name="fk_completed_investments_investment",
            onupdate="RESTRICT",
            ondelete="RESTRICT",
        ),
        nullable=False,
    )
    user_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey(
            "users.id",
            name="fk_completed_investments_user",
            onupdate="RESTRICT",
            ondelete="RESTRICT",
        ),
        nullable=False,
    )
    plan_name: Mapped[str] = mapped_column(Text, nullable=False)
    daily_profit: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    profit_basis: Mapped[str] = mapped_column(Text, nullable=False)
    duration: Mapped[int] = mapped_column(Integer, nullable=False)
    days_elapsed: Mapped[int] = mapped_column(Integer, nullable=False)
    principal_amount: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    total_return: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    total_earned: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
