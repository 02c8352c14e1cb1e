"""Schema contract alignment checks for ORM metadata surfaces."""

from __future__ import annotations

import importlib.util
from pathlib import Path
import re
import sys
import types
from typing import Any

import pytest

import backend.db.models  # noqa: F401  # Ensure all mapped classes are registered.
from backend.db.base import Base


MIGRATION_PATH = (
    Path(__file__).resolve().parents[1]
    / "backend"
    / "db"
    / "migrations"
    / "versions"
    / "0001_initial_schema.py"
)


def _load_migration(monkeypatch: pytest.MonkeyPatch) -> Any:
    fake_alembic = types.ModuleType("alembic")
    fake_alembic.op = types.SimpleNamespace(execute=lambda statement: None)
    monkeypatch.setitem(sys.modules, "alembic", fake_alembic)

    spec = importlib.util.spec_from_file_location("migration_0001_contract", MIGRATION_PATH)
    assert spec is not None and spec.loader is not None
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def _ddl_columns(table_ddl: tuple[str, ...]) -> dict[str, set[str]]:
    pattern = re.compile(r"CREATE TABLE (\w+) \((.*)\);", re.S)

    tables: dict[str, set[str]] = {}
    for statement in table_ddl:
        match = pattern.search(statement)
        assert match is not None, statement
        table_name, body = match.groups()

        columns: set[str] = set()
        for raw_line in body.splitlines():
            line = raw_line.strip()
            if not line:
                continue
            if line.startswith("CONSTRAINT"):
                break
            columns.add(line.split()[0].rstrip(","))

        tables[table_name] = columns

    return tables


def test_orm_tables_and_columns_match_migration_contract(monkeypatch: pytest.MonkeyPatch) -> None:
    """ORM models must cover all migrated tables/columns exactly."""

    ddl = _ddl_columns(_load_migration(monkeypatch).TABLE_DDL)
    mapped_tables = Base.metadata.tables

    missing_table_models = sorted(set(ddl) - set(mapped_tables))
    unexpected_mapped_tables = sorted(set(mapped_tables) - set(ddl))

    assert missing_table_models == [], (
        "Missing ORM models for migrated tables: "
        f"{missing_table_models}"
    )
    assert unexpected_mapped_tables == [], (
        "Mapped ORM tables not present in migration: "
        f"{unexpected_mapped_tables}"
    )

    column_mismatches: dict[str, dict[str, list[str]]] = {}
    for table_name in sorted(mapped_tables):
        ddl_columns = ddl[table_name]
        orm_columns = {column.name for column in mapped_tables[table_name].columns}

        missing_columns = sorted(ddl_columns - orm_columns)
        extra_columns = sorted(orm_columns - ddl_columns)
        if missing_columns or extra_columns:
            column_mismatches[table_name] = {
                "missing_columns": missing_columns,
                "extra_columns": extra_columns,
            }

    assert column_mismatches == {}, (
        "Migration/ORM column mismatches detected: "
        f"{column_mismatches}"
    )


def test_orm_indexes_match_migration_indexes(monkeypatch: pytest.MonkeyPatch) -> None:
    migration = _load_migration(monkeypatch)
    ddl_indexes = {
        re.search(r"CREATE INDEX (\w+) ON", statement).group(1)  # type: ignore[union-attr]
        for statement in migration.INDEX_DDL
    }
    orm_indexes = {
        index.name
        for table in Base.metadata.tables.values()
        for index in table.indexes
    }
    assert orm_indexes == ddl_indexes
