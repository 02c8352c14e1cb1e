"""Append-only, per-user hash-chained financial ledger writes."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
import logging
from typing import Any, Mapping, Optional

from accrual.canonical import UtcClock, canonical_serialize, normalize_decimal, stable_hash
from accrual.records import AccrualAbortError, AccrualDatabase
from backend.db.enums import LedgerEntryType

logger = logging.getLogger(__name__)

_ENTRY_TYPES = frozenset(entry_type.value for entry_type in LedgerEntryType)


@dataclass(frozen=True)
class LedgerEntry:
    """Balance-affecting event to be appended to a user's chain."""

    user_id: int
    entry_type: str
    amount_delta: Decimal
    active_deposits_delta: Decimal
    balance_after: Decimal
    active_deposits_after: Decimal
    reference_table: Optional[str] = None
    reference_id: Optional[int] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AppendedLedgerEntry:
    """Identity and chain position of a written ledger row."""

    ledger_id: int
    user_id: int
    ledger_seq: int
    entry_type: str
    previous_hash: Optional[str]
    entry_hash: str
    created_at: datetime


def compute_entry_hash(
    *,
    previous_hash: Optional[str],
    user_id: int,
    ledger_seq: int,
    entry_type: str,
    reference_table: Optional[str],
    reference_id: Optional[int],
    amount_delta: Decimal,
    active_deposits_delta: Decimal,
    balance_after: Decimal,
    active_deposits_after: Decimal,
    metadata: Mapping[str, Any],
    created_at: datetime,
) -> str:
    """Hash one ledger row over its content and its predecessor's hash."""
    return stable_hash(
        (
            "financial_ledger",
            previous_hash,
            user_id,
            ledger_seq,
            entry_type,
            reference_table,
            reference_id,
            amount_delta,
            active_deposits_delta,
            balance_after,
            active_deposits_after,
            canonical_serialize(metadata),
            created_at,
        )
    )


def row_entry_hash(row: Mapping[str, Any]) -> str:
    """Recompute the hash of a stored financial_ledger row."""
    return compute_entry_hash(
        previous_hash=row["previous_hash"],
        user_id=int(row["user_id"]),
        ledger_seq=int(row["ledger_seq"]),
        entry_type=str(row["entry_type"]),
        reference_table=row["reference_table"],
        reference_id=None if row["reference_id"] is None else int(row["reference_id"]),
        amount_delta=Decimal(str(row["amount_delta"])),
        active_deposits_delta=Decimal(str(row["active_deposits_delta"])),
        balance_after=Decimal(str(row["balance_after"])),
        active_deposits_after=Decimal(str(row["active_deposits_after"])),
        metadata=row["metadata"] or {},
        created_at=row["created_at"],
    )


class FinancialLedgerAppender:
    """Writes ledger rows inside the caller's open transaction.

    Callers hold the user row lock, which serializes appends per chain.
    ``UNIQUE (user_id, ledger_seq)`` rejects any fork that slips past it.
    """

    def __init__(self, db: AccrualDatabase, clock: UtcClock | None = None) -> None:
        self._db = db
        self._clock = clock or UtcClock()

    def latest_entry(self, user_id: int) -> Optional[Mapping[str, Any]]:
        return self._db.fetch_one(
            """
            SELECT ledger_seq, entry_hash
            FROM financial_ledger
            WHERE user_id = :user_id
            ORDER BY ledger_seq DESC
            LIMIT 1
            """,
            {"user_id": user_id},
        )

    def append(self, entry: LedgerEntry) -> AppendedLedgerEntry:
        if entry.entry_type not in _ENTRY_TYPES:
            raise ValueError(f"Unsupported ledger entry type: {entry.entry_type}")

        latest = self.latest_entry(entry.user_id)
        if latest is None:
            ledger_seq = 1
            previous_hash = None
        else:
            ledger_seq = int(latest["ledger_seq"]) + 1
            previous_hash = str(latest["entry_hash"])

        created_at = self._clock.now_utc()
        amount_delta = normalize_decimal(entry.amount_delta)
        active_deposits_delta = normalize_decimal(entry.active_deposits_delta)
        balance_after = normalize_decimal(entry.balance_after)
        active_deposits_after = normalize_decimal(entry.active_deposits_after)
        metadata_json = canonical_serialize(entry.metadata)
        entry_hash = compute_entry_hash(
            previous_hash=previous_hash,
            user_id=entry.user_id,
            ledger_seq=ledger_seq,
            entry_type=entry.entry_type,
            reference_table=entry.reference_table,
            reference_id=entry.reference_id,
            amount_delta=amount_delta,
            active_deposits_delta=active_deposits_delta,
            balance_after=balance_after,
            active_deposits_after=active_deposits_after,
            metadata=entry.metadata,
            created_at=created_at,
        )

        row = self._db.fetch_one(
            """
            INSERT INTO financial_ledger (
                user_id, ledger_seq, entry_type, reference_table, reference_id,
                amount_delta, active_deposits_delta, balance_after, active_deposits_after,
                metadata, previous_hash, entry_hash, created_at
            ) VALUES (
                :user_id, :ledger_seq, :entry_type, :reference_table, :reference_id,
                :amount_delta, :active_deposits_delta, :balance_after, :active_deposits_after,
                CAST(:metadata AS JSONB), :previous_hash, :entry_hash, :created_at
            )
            RETURNING id
            """,
            {
                "user_id": entry.user_id,
                "ledger_seq": ledger_seq,
                "entry_type": entry.entry_type,
                "reference_table": entry.reference_table,
                "reference_id": entry.reference_id,
                "amount_delta": amount_delta,
                "active_deposits_delta": active_deposits_delta,
                "balance_after": balance_after,
                "active_deposits_after": active_deposits_after,
                "metadata": metadata_json,
                "previous_hash": previous_hash,
                "entry_hash": entry_hash,
                "created_at": created_at,
            },
        )
        if row is None:
            raise AccrualAbortError(
                f"Ledger insert returned no id (user_id={entry.user_id}, ledger_seq={ledger_seq})."
            )

        logger.debug(
            "Appended ledger entry user_id=%s ledger_seq=%s entry_type=%s",
            entry.user_id,
            ledger_seq,
            entry.entry_type,
        )
        return AppendedLedgerEntry(
            ledger_id=int(row["id"]),
            user_id=entry.user_id,
            ledger_seq=ledger_seq,
            entry_type=entry.entry_type,
            previous_hash=previous_hash,
            entry_hash=entry_hash,
            created_at=created_at,
        )
