"""Append-only hash-chained financial ledger model."""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    CHAR,
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Identity,
    Index,
    Numeric,
    PrimaryKeyConstraint,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from backend.db.base import Base
from backend.db.enums import LedgerEntryType, sql_values

logger = logging.getLogger(__name__)


class FinancialLedgerEntry(Base):
    """One balance-affecting event in a user's tamper-evident chain."""

    __tablename__ = "financial_ledger"
    __table_args__ = (
        PrimaryKeyConstraint("id", name="pk_financial_ledger"),
        UniqueConstraint("user_id", "ledger_seq", name="uq_financial_ledger_user_seq"),
        CheckConstraint(
            f"entry_type IN ({sql_values(LedgerEntryType)})",
            name="ck_financial_ledger_entry_type",
        ),
        CheckConstraint("ledger_seq >= 1", name="ck_financial_ledger_seq_pos"),
        CheckConstraint(
            "(ledger_seq = 1 AND previous_hash IS NULL) OR (ledger_seq > 1 AND previous_hash IS NOT NULL)",
            name="ck_financial_ledger_prev_hash_presence",
        ),
        CheckConstraint("balance_after >= 0", name="ck_financial_ledger_balance_nonneg"),
        CheckConstraint(
            "active_deposits_after >= 0",
            name="ck_financial_ledger_active_deposits_nonneg",
        ),
        Index("idx_financial_ledger_user_id", "user_id", "id"),
    )

    id: Mapped[int] = mapped_column(BigInteger, Identity(always=True), nullable=False)
    user_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey(
            "users.id",
            name="fk_financial_ledger_user",
            onupdate="RESTRICT",
            ondelete="RESTRICT",
        ),
        nullable=False,
    )
    ledger_seq: Mapped[int] = mapped_column(BigInteger, nullable=False)
    entry_type: Mapped[str] = mapped_column(Text, nullable=False)
    reference_table: Mapped[str | None] = mapped_column(Text)
    reference_id: Mapped[int | None] = mapped_column(BigInteger)
    amount_delta: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    active_deposits_delta: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    balance_after: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    active_deposits_after: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        JSONB,
        nullable=False,
        server_default=text("'{}'::jsonb"),
    )
    previous_hash: Mapped[str | None] = mapped_column(CHAR(64))
    entry_hash: Mapped[str] = mapped_column(CHAR(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
