"""Canonical value normalization and stable hashing for accrual writes."""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal, ROUND_HALF_EVEN
from hashlib import sha256
import json
from typing import Any, Iterable, Mapping
from uuid import UUID

NUMERIC_18 = Decimal("0.000000000000000001")
ZERO = Decimal("0")


def normalize_decimal(value: Decimal, scale: Decimal = NUMERIC_18) -> Decimal:
    """Quantize decimals to deterministic precision."""
    return value.quantize(scale, rounding=ROUND_HALF_EVEN)


def as_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise TypeError("Boolean is not a decimal amount.")
    return Decimal(str(value))


def normalize_timestamp(value: datetime) -> str:
    """Normalize timestamps to UTC RFC3339 without subsecond truncation."""
    utc_value = value.astimezone(timezone.utc)
    return utc_value.isoformat().replace("+00:00", "Z")


def normalize_token(value: Any) -> str:
    """Serialize primitive values deterministically for hashing."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, Decimal):
        return format(normalize_decimal(value), "f")
    if isinstance(value, datetime):
        return normalize_timestamp(value)
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


def stable_hash(tokens: Iterable[Any]) -> str:
    """Compute a stable SHA256 hash over canonical token serialization."""
    preimage = "|".join(normalize_token(token) for token in tokens)
    return sha256(preimage.encode("utf-8")).hexdigest()


def canonical_serialize(payload: Any) -> str:
    """Serialize payload into deterministic canonical JSON."""
    canonical_payload = _canonicalize_value(payload)
    return json.dumps(
        canonical_payload,
        ensure_ascii=True,
        separators=(",", ":"),
        sort_keys=True,
    )


def utc_day_start(value: datetime | date) -> datetime:
    """Return UTC midnight of the calendar day containing ``value``."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            raise ValueError("Timestamp must be timezone-aware.")
        day = value.astimezone(timezone.utc).date()
    else:
        day = value
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def next_utc_midnight(value: datetime) -> datetime:
    return utc_day_start(value) + timedelta(days=1)


def _canonicalize_value(value: Any) -> Any:
    if isinstance(value, Mapping):
        ordered_items = sorted(value.items(), key=lambda item: str(item[0]))
        return {str(key): _canonicalize_value(inner) for key, inner in ordered_items}
    if isinstance(value, (list, tuple)):
        return [_canonicalize_value(inner) for inner in value]
    if isinstance(value, Decimal):
        return format(normalize_decimal(value), "f")
    if isinstance(value, datetime):
        return normalize_timestamp(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    if value is None or isinstance(value, (bool, int, str)):
        return value
    return str(value)


class UtcClock:
    """Injectable UTC clock for deterministic testing."""

    def now_utc(self) -> datetime:
        """Return current UTC timestamp."""
        return datetime.now(tz=timezone.utc)
