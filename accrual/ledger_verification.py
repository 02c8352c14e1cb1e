"""Read-only recomputation of the financial ledger hash chains."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Mapping, Optional, Sequence

from accrual.ledger import row_entry_hash
from accrual.records import AccrualAbortError, AccrualDatabase

logger = logging.getLogger(__name__)

_MAX_LEDGER_ID = 9223372036854775807
_LEDGER_COLUMNS = (
    "id, user_id, ledger_seq, entry_type, reference_table, reference_id, amount_delta, "
    "active_deposits_delta, balance_after, active_deposits_after, metadata, previous_hash, "
    "entry_hash, created_at"
)


@dataclass(frozen=True)
class LedgerVerificationFailure:
    """One broken link found while walking a chain."""

    ledger_id: int
    user_id: int
    ledger_seq: int
    failure_code: str
    expected: Optional[str]
    actual: Optional[str]


@dataclass(frozen=True)
class LedgerVerificationReport:
    """Outcome of a chain verification pass."""

    ok: bool
    checked: int
    broken_at: Optional[int]
    mismatch_count: int
    failures: tuple[LedgerVerificationFailure, ...]


def _build_report(checked: int, failures: Sequence[LedgerVerificationFailure]) -> LedgerVerificationReport:
    ordered = tuple(sorted(failures, key=lambda failure: (failure.ledger_id, failure.failure_code)))
    return LedgerVerificationReport(
        ok=not ordered,
        checked=checked,
        broken_at=ordered[0].ledger_id if ordered else None,
        mismatch_count=len(ordered),
        failures=ordered,
    )


def _check_row(
    row: Mapping[str, Any],
    expected_previous_hash: Optional[str],
    predecessor_found: bool,
) -> list[LedgerVerificationFailure]:
    failures: list[LedgerVerificationFailure] = []
    ledger_id = int(row["id"])
    user_id = int(row["user_id"])
    ledger_seq = int(row["ledger_seq"])
    stored_previous = row["previous_hash"]

    if ledger_seq > 1 and not predecessor_found:
        failures.append(
            LedgerVerificationFailure(
                ledger_id=ledger_id,
                user_id=user_id,
                ledger_seq=ledger_seq,
                failure_code="PREDECESSOR_MISSING",
                expected=str(ledger_seq - 1),
                actual=None,
            )
        )
    elif stored_previous != expected_previous_hash:
        failures.append(
            LedgerVerificationFailure(
                ledger_id=ledger_id,
                user_id=user_id,
                ledger_seq=ledger_seq,
                failure_code="PREVIOUS_HASH_MISMATCH",
                expected=expected_previous_hash,
                actual=stored_previous,
            )
        )

    recomputed = row_entry_hash(row)
    if recomputed != row["entry_hash"]:
        failures.append(
            LedgerVerificationFailure(
                ledger_id=ledger_id,
                user_id=user_id,
                ledger_seq=ledger_seq,
                failure_code="HASH_MISMATCH",
                expected=recomputed,
                actual=row["entry_hash"],
            )
        )
    return failures


def _load_predecessor_hash(db: AccrualDatabase, user_id: int, ledger_seq: int) -> Optional[Mapping[str, Any]]:
    return db.fetch_one(
        """
        SELECT entry_hash
        FROM financial_ledger
        WHERE user_id = :user_id
          AND ledger_seq = :ledger_seq
        """,
        {"user_id": user_id, "ledger_seq": ledger_seq},
    )


def verify_ledger(
    db: AccrualDatabase,
    *,
    from_id: Optional[int] = None,
    to_id: Optional[int] = None,
    sample: Optional[int] = None,
    chunk_size: int = 500,
) -> LedgerVerificationReport:
    """Recompute hashes for ledger rows in an id range.

    Rows stream in id order in chunks. With ``sample`` set, at most that many
    rows are checked at an even stride across the range. Each checked row is
    linked against its predecessor in the same user's chain, which is loaded
    on demand when it fell outside the streamed window.
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    if sample is not None and sample <= 0:
        raise ValueError("sample must be positive")

    lower = from_id if from_id is not None else 1
    upper = to_id if to_id is not None else _MAX_LEDGER_ID
    if upper < lower:
        return _build_report(0, ())

    stride = 1
    if sample is not None:
        count_row = db.fetch_one(
            """
            SELECT COUNT(*) AS row_count
            FROM financial_ledger
            WHERE id >= :from_id
              AND id <= :to_id
            """,
            {"from_id": lower, "to_id": upper},
        )
        row_count = int(count_row["row_count"]) if count_row is not None else 0
        if row_count > sample:
            stride = max(1, row_count // sample)

    last_seen: dict[int, tuple[int, str]] = {}
    failures: list[LedgerVerificationFailure] = []
    checked = 0
    position = 0
    after_id = lower - 1
    while True:
        rows = db.fetch_all(
            f"""
            SELECT {_LEDGER_COLUMNS}
            FROM financial_ledger
            WHERE id > :after_id
              AND id <= :to_id
            ORDER BY id ASC
            LIMIT :limit
            """,
            {"after_id": after_id, "to_id": upper, "limit": chunk_size},
        )
        if not rows:
            break

        for row in rows:
            user_id = int(row["user_id"])
            ledger_seq = int(row["ledger_seq"])
            selected = position % stride == 0 and (sample is None or checked < sample)
            position += 1
            if selected:
                expected_previous: Optional[str] = None
                predecessor_found = True
                if ledger_seq > 1:
                    cached = last_seen.get(user_id)
                    if cached is not None and cached[0] == ledger_seq - 1:
                        expected_previous = cached[1]
                    else:
                        predecessor = _load_predecessor_hash(db, user_id, ledger_seq - 1)
                        predecessor_found = predecessor is not None
                        expected_previous = None if predecessor is None else str(predecessor["entry_hash"])
                failures.extend(_check_row(row, expected_previous, predecessor_found))
                checked += 1
            last_seen[user_id] = (ledger_seq, str(row["entry_hash"]))

        after_id = int(rows[-1]["id"])
        if len(rows) < chunk_size or (sample is not None and checked >= sample):
            break

    report = _build_report(checked, failures)
    if not report.ok:
        logger.warning(
            "Ledger verification found broken links checked=%s broken_at=%s mismatches=%s",
            report.checked,
            report.broken_at,
            report.mismatch_count,
        )
    return report


def verify_user_chain(
    db: AccrualDatabase,
    user_id: int,
    *,
    limit: Optional[int] = None,
) -> LedgerVerificationReport:
    """Walk one user's chain from its genesis entry in sequence order."""
    params: dict[str, Any] = {"user_id": user_id, "limit": limit if limit is not None else _MAX_LEDGER_ID}
    rows = db.fetch_all(
        f"""
        SELECT {_LEDGER_COLUMNS}
        FROM financial_ledger
        WHERE user_id = :user_id
        ORDER BY ledger_seq ASC
        LIMIT :limit
        """,
        params,
    )

    failures: list[LedgerVerificationFailure] = []
    previous_hash: Optional[str] = None
    expected_seq = 1
    for row in rows:
        ledger_seq = int(row["ledger_seq"])
        if ledger_seq != expected_seq:
            failures.append(
                LedgerVerificationFailure(
                    ledger_id=int(row["id"]),
                    user_id=user_id,
                    ledger_seq=ledger_seq,
                    failure_code="SEQUENCE_GAP",
                    expected=str(expected_seq),
                    actual=str(ledger_seq),
                )
            )
        failures.extend(_check_row(row, previous_hash, True))
        previous_hash = str(row["entry_hash"])
        expected_seq = ledger_seq + 1

    return _build_report(len(rows), failures)


def assert_balance_continuity(db: AccrualDatabase, user_id: int) -> None:
    """Fail fast if a user's running totals do not follow the ledger deltas."""
    row = db.fetch_one(
        """
        WITH ordered AS (
            SELECT
                ledger_seq,
                amount_delta,
                active_deposits_delta,
                balance_after,
                active_deposits_after,
                LAG(balance_after) OVER (
                    PARTITION BY user_id
                    ORDER BY ledger_seq
                ) AS prev_balance_after,
                LAG(active_deposits_after) OVER (
                    PARTITION BY user_id
                    ORDER BY ledger_seq
                ) AS prev_active_deposits_after
            FROM financial_ledger
            WHERE user_id = :user_id
        )
        SELECT COUNT(*) AS violations
        FROM ordered
        WHERE ledger_seq > 1
          AND (
              balance_after <> prev_balance_after + amount_delta
              OR active_deposits_after <> prev_active_deposits_after + active_deposits_delta
          )
        """,
        {"user_id": user_id},
    )
    violations = int(row["violations"]) if row is not None else 0
    if violations != 0:
        raise AccrualAbortError(
            f"Ledger balance continuity invariant violated (user_id={user_id}, violations={violations})."
        )
