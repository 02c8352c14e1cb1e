"""Environment-backed configuration for the accrual job."""

from __future__ import annotations

from dataclasses import dataclass
import os
from typing import Optional

DEFAULT_JOB_NAME = "daily-investments"

_LOG_LEVELS = frozenset({"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"})


@dataclass(frozen=True)
class AccrualConfig:
    """Canonical configuration surface for the accrual runtime."""

    database_url: Optional[str]
    db_host: Optional[str]
    db_port: Optional[str]
    db_name: Optional[str]
    db_user: Optional[str]
    db_password: Optional[str]
    job_name: str = DEFAULT_JOB_NAME
    max_catchup_days: int = 7
    time_budget_seconds: int = 600
    checkpoint_every: int = 50
    send_increment_notifications: bool = False
    send_completion_notifications: bool = True
    ledger_verify_chunk_size: int = 500
    log_level: str = "INFO"


def _read_env(name: str, default: str | None = None) -> str:
    value = os.getenv(name, default)
    if value is None or value.strip() == "":
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value.strip()


def _read_optional(name: str) -> Optional[str]:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return None
    return value.strip()


def _read_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise RuntimeError(f"Invalid boolean value for {name}: {raw}")


def _read_int(name: str, default: int, minimum: int = 1) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw.strip())
    except ValueError as exc:
        raise RuntimeError(f"Invalid integer value for {name}: {raw}") from exc
    if value < minimum:
        raise RuntimeError(f"Value for {name} must be >= {minimum}: {raw}")
    return value


def load_accrual_config() -> AccrualConfig:
    """Load and validate accrual configuration from environment."""
    log_level = _read_env("ACCRUAL_LOG_LEVEL", "INFO").upper()
    if log_level not in _LOG_LEVELS:
        raise RuntimeError(f"Invalid log level for ACCRUAL_LOG_LEVEL: {log_level}")

    return AccrualConfig(
        database_url=_read_optional("ACCRUAL_DATABASE_URL"),
        db_host=_read_optional("DB_HOST"),
        db_port=_read_optional("DB_PORT"),
        db_name=_read_optional("DB_NAME"),
        db_user=_read_optional("DB_USER"),
        db_password=_read_optional("DB_PASSWORD"),
        job_name=_read_env("ACCRUAL_JOB_NAME", DEFAULT_JOB_NAME),
        max_catchup_days=_read_int("ACCRUAL_MAX_CATCHUP_DAYS", 7),
        time_budget_seconds=_read_int("ACCRUAL_TIME_BUDGET_SECONDS", 600),
        checkpoint_every=_read_int("ACCRUAL_CHECKPOINT_EVERY", 50),
        send_increment_notifications=_read_bool("ACCRUAL_SEND_INCREMENT_NOTIFICATIONS", False),
        send_completion_notifications=_read_bool("ACCRUAL_SEND_COMPLETION_NOTIFICATIONS", True),
        ledger_verify_chunk_size=_read_int("ACCRUAL_LEDGER_VERIFY_CHUNK_SIZE", 500),
        log_level=log_level,
    )
