"""psycopg adapter implementing the accrual database protocol."""

from __future__ import annotations

from contextlib import contextmanager
import logging
import re
from typing import Any, Iterator, Mapping, Optional, Sequence

import psycopg
from psycopg.rows import dict_row

from accrual.config import AccrualConfig
from accrual.records import DataStoreUnavailableError

logger = logging.getLogger(__name__)

_NAMED_PARAM_RE = re.compile(r"(?<!:):([a-zA-Z_][a-zA-Z0-9_]*)")


def _convert_named_params(sql: str) -> str:
    return _NAMED_PARAM_RE.sub(r"%(\1)s", sql)


class PsycopgAccrualDB:
    """Transactional DB adapter over one explicitly owned connection.

    Connection-level failures surface as ``DataStoreUnavailableError`` so the
    runner aborts instead of counting them per investment.
    """

    def __init__(self, conn: psycopg.Connection[Any]) -> None:
        self.conn = conn
        self._tx_started = False

    def begin(self) -> None:
        if self._tx_started:
            return
        with _connection_errors_abort():
            with self.conn.cursor() as cur:
                cur.execute("BEGIN")
        self._tx_started = True

    def commit(self) -> None:
        with _connection_errors_abort():
            self.conn.commit()
        self._tx_started = False

    def rollback(self) -> None:
        self._tx_started = False
        with _connection_errors_abort():
            self.conn.rollback()

    def fetch_one(self, sql: str, params: Mapping[str, Any]) -> Optional[Mapping[str, Any]]:
        rows = self.fetch_all(sql, params)
        return rows[0] if rows else None

    def fetch_all(self, sql: str, params: Mapping[str, Any]) -> Sequence[Mapping[str, Any]]:
        converted = _convert_named_params(sql)
        with _connection_errors_abort():
            with self.conn.cursor(row_factory=dict_row) as cur:
                cur.execute(converted, dict(params))
                return [dict(row) for row in cur.fetchall()]

    def execute(self, sql: str, params: Mapping[str, Any]) -> None:
        converted = _convert_named_params(sql)
        with _connection_errors_abort():
            with self.conn.cursor() as cur:
                cur.execute(converted, dict(params))

    def close(self) -> None:
        self.conn.close()


@contextmanager
def _connection_errors_abort() -> Iterator[None]:
    try:
        yield
    except (psycopg.OperationalError, psycopg.InterfaceError) as exc:
        logger.error("Data store unavailable: %s", exc)
        raise DataStoreUnavailableError(f"Data store unavailable: {exc}") from exc


def connect(config: AccrualConfig, *, dsn: Optional[str] = None) -> psycopg.Connection[Any]:
    """Open a non-autocommit connection from an explicit DSN or config."""
    target = dsn or config.database_url
    try:
        if target:
            return psycopg.connect(target, autocommit=False)

        missing = [
            key
            for key, value in (
                ("DB_HOST", config.db_host),
                ("DB_PORT", config.db_port),
                ("DB_NAME", config.db_name),
                ("DB_USER", config.db_user),
                ("DB_PASSWORD", config.db_password),
            )
            if not value
        ]
        if missing:
            raise RuntimeError(
                "Missing DB connection settings. Set ACCRUAL_DATABASE_URL or "
                f"{', '.join(missing)}."
            )
        return psycopg.connect(
            host=config.db_host,
            port=config.db_port,
            dbname=config.db_name,
            user=config.db_user,
            password=config.db_password,
            autocommit=False,
        )
    except psycopg.OperationalError as exc:
        raise DataStoreUnavailableError(f"Data store unavailable: {exc}") from exc
