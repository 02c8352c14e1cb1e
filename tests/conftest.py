"""Pytest fixtures shared across unit and integration tests."""

from __future__ import annotations

import os
from typing import Any

import psycopg
import pytest

from accrual.config import AccrualConfig
from accrual.db import PsycopgAccrualDB
from tests.utils.accrual_db import AccrualFakeDB


@pytest.fixture(scope="session")
def pg_conn() -> Any:
    """Session-scoped psycopg connection for integration tests."""
    host = os.getenv("TEST_DB_HOST")
    port = os.getenv("TEST_DB_PORT")
    dbname = os.getenv("TEST_DB_NAME")
    user = os.getenv("TEST_DB_USER")
    password = os.getenv("TEST_DB_PASSWORD")

    if not all([host, port, dbname, user, password]):
        pytest.skip("Integration DB env vars are missing; set TEST_DB_HOST/PORT/NAME/USER/PASSWORD")

    conn = psycopg.connect(
        host=host,
        port=port,
        dbname=dbname,
        user=user,
        password=password,
        autocommit=False,
    )
    try:
        yield conn
    finally:
        conn.close()


@pytest.fixture
def accrual_db(pg_conn: Any) -> PsycopgAccrualDB:
    """Accrual DB adapter fixture over the integration connection."""
    return PsycopgAccrualDB(pg_conn)


@pytest.fixture
def fake_db() -> AccrualFakeDB:
    return AccrualFakeDB()


@pytest.fixture
def accrual_config() -> AccrualConfig:
    return AccrualConfig(
        database_url=None,
        db_host=None,
        db_port=None,
        db_name=None,
        db_user=None,
        db_password=None,
    )
