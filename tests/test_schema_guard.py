from __future__ import annotations

import unittest
from types import SimpleNamespace
from unittest.mock import patch

from sqlalchemy import text

from carerota.services.schema_guard import verify_runtime_schema
from tests.db_support import SqliteDatabase


class _FakeResult:
    def __init__(self, value):
        self._value = value

    def scalar(self):  # type: ignore[no-untyped-def]
        return self._value


class _FakeConnection:
    def __init__(self, version_value):
        self._version_value = version_value

    def __enter__(self):  # type: ignore[no-untyped-def]
        return self

    def __exit__(self, exc_type, exc, tb):  # type: ignore[no-untyped-def]
        return False

    def execute(self, _statement):  # type: ignore[no-untyped-def]
        return _FakeResult(self._version_value)


class _FakeEngine:
    def __init__(self, version_value, dialect_name: str = "postgresql"):
        self._version_value = version_value
        self.dialect = SimpleNamespace(name=dialect_name)

    def connect(self):  # type: ignore[no-untyped-def]
        return _FakeConnection(self._version_value)


class _FakeInspector:
    def __init__(self, *, columns_by_table: dict[str, set[str]], enums: list[dict[str, object]]):
        self._columns_by_table = columns_by_table
        self._enums = enums

    def get_columns(self, table_name: str):  # type: ignore[no-untyped-def]
        columns = self._columns_by_table.get(table_name, set())
        return [{"name": item} for item in columns]

    def get_enums(self):  # type: ignore[no-untyped-def]
        return self._enums


_FULL_ENUMS = [
    {"name": "change_request_status", "labels": ["pending", "applied", "denied", "reverted", "archived"]},
    {"name": "shift_type", "labels": ["basic", "cover", "sickness", "annual_leave", "public_holiday"]},
]


class SchemaGuardTests(unittest.TestCase):
    def test_verify_runtime_schema_ok_when_required_columns_exist(self) -> None:
        fake_inspector = _FakeInspector(
            columns_by_table={
                "time_entries": {
                    "id",
                    "carer_id",
                    "shift_instance_id",
                    "shift_type",
                    "placeholder_bundle_id",
                    "updated_at",
                },
                "change_requests": {"id", "status", "bundle_id", "original_snapshot", "applied_at"},
                "leave_cancellation_requests": {"id", "status", "conflict_shift_ids"},
                "leave_requests": {"id", "status", "reviewed_at"},
                "alembic_version": {"version_num"},
            },
            enums=_FULL_ENUMS,
        )
        fake_engine = _FakeEngine("0001_initial")

        with patch("carerota.services.schema_guard.inspect", return_value=fake_inspector):
            result = verify_runtime_schema(fake_engine)  # type: ignore[arg-type]

        self.assertTrue(result.ok)
        self.assertEqual(result.issues, [])
        self.assertEqual(result.warnings, [])

    def test_verify_runtime_schema_reports_missing_columns_tables_and_enum_values(self) -> None:
        fake_inspector = _FakeInspector(
            columns_by_table={
                "time_entries": {"id", "shift_type"},
                "change_requests": {"id", "status"},
                "leave_requests": {"id", "status", "reviewed_at"},
                "alembic_version": {"version_num"},
            },
            enums=[{"name": "change_request_status", "labels": ["pending", "applied", "denied"]}],
        )
        fake_engine = _FakeEngine("")

        with patch("carerota.services.schema_guard.inspect", return_value=fake_inspector):
            result = verify_runtime_schema(fake_engine)  # type: ignore[arg-type]

        self.assertFalse(result.ok)
        self.assertIn("MISSING_COLUMNS:time_entries:placeholder_bundle_id,shift_instance_id,updated_at", result.issues)
        self.assertTrue(any(item.startswith("MISSING_COLUMNS:change_requests:") for item in result.issues))
        self.assertIn("MISSING_TABLE:leave_cancellation_requests", result.issues)
        self.assertIn("MISSING_ENUM_VALUES:change_request_status:archived,reverted", result.issues)
        self.assertIn("ENUM_NOT_FOUND:shift_type", result.warnings)
        self.assertIn("ALEMBIC_VERSION_EMPTY", result.issues)

    def test_non_postgres_engine_skips_enum_check(self) -> None:
        database = SqliteDatabase()
        try:
            with database.engine.begin() as connection:
                connection.execute(text("CREATE TABLE alembic_version (version_num VARCHAR(32) NOT NULL)"))
                connection.execute(text("INSERT INTO alembic_version (version_num) VALUES ('0001_initial')"))

            result = verify_runtime_schema(database.engine)
        finally:
            database.dispose()

        self.assertTrue(result.ok, result.issues)
        self.assertEqual(result.warnings, ["ENUM_CHECK_SKIPPED:sqlite"])
        self.assertEqual(result.to_dict()["issue_count"], 0)


if __name__ == "__main__":
    unittest.main()
