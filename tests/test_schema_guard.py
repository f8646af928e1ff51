from __future__ import annotations

import unittest
from unittest.mock import patch

from sqlalchemy import text

from db_support import make_session_factory
from geoattend.services.schema_guard import EXPECTED_HEAD, REQUIRED_TABLE_COLUMNS, verify_runtime_schema


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
    def __init__(self, version_value):
        self._version_value = version_value

    def connect(self):  # type: ignore[no-untyped-def]
        return _FakeConnection(self._version_value)


class _FakeInspector:
    def __init__(
        self,
        *,
        columns_by_table: dict[str, set[str]],
        indexes_by_table: dict[str, list[dict[str, object]]],
        enums: list[dict[str, object]],
    ):
        self._columns_by_table = columns_by_table
        self._indexes_by_table = indexes_by_table
        self._enums = enums

    def get_columns(self, table_name: str):  # type: ignore[no-untyped-def]
        columns = self._columns_by_table[table_name]
        return [{"name": item} for item in columns]

    def get_indexes(self, table_name: str):  # type: ignore[no-untyped-def]
        return self._indexes_by_table.get(table_name, [])

    def get_enums(self):  # type: ignore[no-untyped-def]
        return self._enums


def _healthy_indexes() -> dict[str, list[dict[str, object]]]:
    return {
        "attendance_sessions": [{"name": "uq_attendance_sessions_open_employee", "unique": True}],
        "pending_auto_closeouts": [
            {"name": "ix_pending_auto_closeouts_status_ends_at", "unique": False},
            {"name": "uq_pending_auto_closeouts_live", "unique": True},
        ],
    }


def _healthy_enums() -> list[dict[str, object]]:
    return [
        {"name": "checkout_type", "labels": ["MANUAL", "AUTO"]},
        {"name": "closeout_reason", "labels": ["GPS_BLOCKED", "OUTSIDE_BRANCH"]},
        {"name": "pending_closeout_status", "labels": ["PENDING", "CANCELLED", "DONE"]},
        {"name": "pending_cancel_reason", "labels": ["RECOVERED", "ALREADY_CLOSED", "DISABLED"]},
    ]


class SchemaGuardTests(unittest.TestCase):
    def test_verify_runtime_schema_ok_when_schema_is_at_head(self) -> None:
        fake_inspector = _FakeInspector(
            columns_by_table={name: set(columns) for name, columns in REQUIRED_TABLE_COLUMNS.items()},
            indexes_by_table=_healthy_indexes(),
            enums=_healthy_enums(),
        )
        fake_engine = _FakeEngine(EXPECTED_HEAD)

        with patch("geoattend.services.schema_guard.inspect", return_value=fake_inspector):
            result = verify_runtime_schema(fake_engine)  # type: ignore[arg-type]

        self.assertTrue(result.ok)
        self.assertEqual(result.issues, [])
        self.assertEqual(result.warnings, [])

    def test_verify_runtime_schema_reports_missing_columns_and_indexes(self) -> None:
        columns = {name: set(columns) for name, columns in REQUIRED_TABLE_COLUMNS.items()}
        columns["pending_auto_closeouts"] = {"id", "employee_id", "session_id"}
        indexes = _healthy_indexes()
        indexes["attendance_sessions"] = [{"name": "uq_attendance_sessions_open_employee", "unique": False}]
        indexes["pending_auto_closeouts"] = []
        fake_inspector = _FakeInspector(
            columns_by_table=columns,
            indexes_by_table=indexes,
            enums=[{"name": "pending_closeout_status", "labels": ["PENDING", "DONE"]}],
        )
        fake_engine = _FakeEngine("")

        with patch("geoattend.services.schema_guard.inspect", return_value=fake_inspector):
            result = verify_runtime_schema(fake_engine)  # type: ignore[arg-type]

        self.assertFalse(result.ok)
        self.assertIn("MISSING_COLUMNS:pending_auto_closeouts:ends_at,status,tenant_id", result.issues)
        self.assertIn("INDEX_NOT_UNIQUE:attendance_sessions:uq_attendance_sessions_open_employee", result.issues)
        self.assertIn("MISSING_INDEX:pending_auto_closeouts:uq_pending_auto_closeouts_live", result.issues)
        self.assertIn("MISSING_ENUM_VALUES:pending_closeout_status:CANCELLED", result.issues)
        self.assertIn("ALEMBIC_VERSION_EMPTY", result.issues)
        self.assertIn("ENUM_NOT_FOUND:checkout_type", result.warnings)

    def test_older_revision_is_a_warning(self) -> None:
        fake_inspector = _FakeInspector(
            columns_by_table={name: set(columns) for name, columns in REQUIRED_TABLE_COLUMNS.items()},
            indexes_by_table=_healthy_indexes(),
            enums=_healthy_enums(),
        )

        with patch("geoattend.services.schema_guard.inspect", return_value=fake_inspector):
            result = verify_runtime_schema(_FakeEngine("0001_initial"))  # type: ignore[arg-type]

        self.assertTrue(result.ok)
        self.assertEqual(result.warnings, ["ALEMBIC_VERSION_NOT_HEAD:0001_initial"])

    def test_sqlite_metadata_carries_partial_unique_indexes(self) -> None:
        factory = make_session_factory()
        engine = factory.kw["bind"]
        with engine.begin() as connection:
            connection.execute(text("CREATE TABLE alembic_version (version_num VARCHAR(32) NOT NULL)"))
            connection.execute(text("INSERT INTO alembic_version (version_num) VALUES (:head)"), {"head": EXPECTED_HEAD})

        result = verify_runtime_schema(engine)

        self.assertTrue(result.ok, result.issues)
        self.assertEqual(result.issues, [])


if __name__ == "__main__":
    unittest.main()
