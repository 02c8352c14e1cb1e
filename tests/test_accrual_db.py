"""Unit tests for the psycopg accrual DB adapter."""

from __future__ import annotations

from typing import Any

import psycopg
import pytest

from accrual import db as accrual_db
from accrual.config import AccrualConfig
from accrual.db import PsycopgAccrualDB, _convert_named_params, connect
from accrual.records import AccrualAbortError, DataStoreUnavailableError


class _FakeCursor:
    def __init__(self, conn: "_FakeConnection", row_factory: Any = None) -> None:
        self._conn = conn
        self._row_factory = row_factory

    def __enter__(self) -> "_FakeCursor":
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        return None

    def execute(self, sql: str, params: Any = None) -> None:
        if self._conn.fail_with is not None:
            raise self._conn.fail_with
        self._conn.executed.append((sql, params, self._row_factory))

    def fetchall(self) -> list[dict[str, Any]]:
        return list(self._conn.fetchall_rows)


class _FakeConnection:
    def __init__(self, rows: list[dict[str, Any]] | None = None) -> None:
        self.fetchall_rows = rows or []
        self.executed: list[tuple[str, Any, Any]] = []
        self.fail_with: BaseException | None = None
        self.committed = False
        self.rolled_back = False
        self.closed = False

    def cursor(self, row_factory: Any = None) -> _FakeCursor:
        return _FakeCursor(self, row_factory=row_factory)

    def commit(self) -> None:
        self.committed = True

    def rollback(self) -> None:
        self.rolled_back = True

    def close(self) -> None:
        self.closed = True


def _config(**overrides: Any) -> AccrualConfig:
    values: dict[str, Any] = {
        "database_url": None,
        "db_host": "db",
        "db_port": "5432",
        "db_name": "invest",
        "db_user": "accrual",
        "db_password": "secret",
    }
    values.update(overrides)
    return AccrualConfig(**values)


def test_convert_named_params_skips_casts() -> None:
    assert _convert_named_params("x=:x AND y=:y AND z::int=1") == "x=%(x)s AND y=%(y)s AND z::int=1"
    assert _convert_named_params("CAST(:meta AS JSONB)") == "CAST(%(meta)s AS JSONB)"


def test_adapter_transaction_paths() -> None:
    conn = _FakeConnection(rows=[{"id": 1}])
    db = PsycopgAccrualDB(conn)

    db.begin()
    db.begin()
    assert [call[0] for call in conn.executed].count("BEGIN") == 1

    assert db.fetch_one("SELECT id FROM users WHERE id = :user_id", {"user_id": 1}) == {"id": 1}
    sql, params, row_factory = conn.executed[-1]
    assert sql == "SELECT id FROM users WHERE id = %(user_id)s"
    assert params == {"user_id": 1}
    assert row_factory is not None

    db.execute("UPDATE users SET balance = :balance", {"balance": 1})
    db.commit()
    db.rollback()
    db.close()
    assert conn.committed is True
    assert conn.rolled_back is True
    assert conn.closed is True

    empty = PsycopgAccrualDB(_FakeConnection(rows=[]))
    assert empty.fetch_one("SELECT 1", {}) is None


@pytest.mark.parametrize("error", [psycopg.OperationalError("server closed"), psycopg.InterfaceError("closed")])
def test_connection_failures_become_store_unavailable(error: BaseException) -> None:
    conn = _FakeConnection()
    conn.fail_with = error
    db = PsycopgAccrualDB(conn)

    with pytest.raises(DataStoreUnavailableError) as exc:
        db.fetch_all("SELECT 1", {})
    assert isinstance(exc.value, AccrualAbortError)
    assert exc.value.__cause__ is error


def test_statement_errors_propagate_unchanged() -> None:
    conn = _FakeConnection()
    conn.fail_with = psycopg.errors.UniqueViolation("duplicate key")
    db = PsycopgAccrualDB(conn)

    with pytest.raises(psycopg.errors.UniqueViolation):
        db.execute("INSERT INTO users VALUES (1)", {})


def test_connect_prefers_explicit_dsn(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[tuple[tuple[Any, ...], dict[str, Any]]] = []

    def _fake_connect(*args: Any, **kwargs: Any) -> str:
        calls.append((args, kwargs))
        return "conn"

    monkeypatch.setattr(accrual_db.psycopg, "connect", _fake_connect)

    assert connect(_config(database_url="postgresql://env"), dsn="postgresql://cli") == "conn"
    assert connect(_config(database_url="postgresql://env")) == "conn"
    assert connect(_config()) == "conn"
    assert calls[0] == (("postgresql://cli",), {"autocommit": False})
    assert calls[1] == (("postgresql://env",), {"autocommit": False})
    assert calls[2][1]["host"] == "db"
    assert calls[2][1]["dbname"] == "invest"
    assert calls[2][1]["autocommit"] is False


def test_connect_reports_missing_settings_and_outage(monkeypatch: pytest.MonkeyPatch) -> None:
    with pytest.raises(RuntimeError, match="DB_HOST, DB_PASSWORD"):
        connect(_config(db_host=None, db_password=None))

    def _refuse(*args: Any, **kwargs: Any) -> None:
        raise psycopg.OperationalError("connection refused")

    monkeypatch.setattr(accrual_db.psycopg, "connect", _refuse)
    with pytest.raises(DataStoreUnavailableError, match="connection refused"):
        connect(_config())
