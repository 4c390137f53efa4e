from __future__ import annotations

import unittest
from unittest.mock import patch

from attendance_ot.services.schema_guard import REQUIRED_TABLE_COLUMNS, verify_runtime_schema


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
    def __init__(self, *, columns_by_table: dict[str, set[str]], indexes_by_table: dict[str, list[dict[str, object]]]):
        self._columns_by_table = columns_by_table
        self._indexes_by_table = indexes_by_table

    def get_columns(self, table_name: str):  # type: ignore[no-untyped-def]
        if table_name not in self._columns_by_table:
            raise LookupError(table_name)
        return [{"name": item} for item in self._columns_by_table[table_name]]

    def get_indexes(self, table_name: str):  # type: ignore[no-untyped-def]
        return self._indexes_by_table.get(table_name, [])


OPEN_SESSION_INDEX = {"name": "uq_ot_sessions_one_open_per_user_day", "unique": True}


class SchemaGuardTests(unittest.TestCase):
    def test_ok_when_columns_and_open_session_index_exist(self) -> None:
        fake_inspector = _FakeInspector(
            columns_by_table={table: set(columns) for table, columns in REQUIRED_TABLE_COLUMNS.items()},
            indexes_by_table={"ot_sessions": [OPEN_SESSION_INDEX]},
        )

        with patch("attendance_ot.services.schema_guard.inspect", return_value=fake_inspector):
            result = verify_runtime_schema(_FakeEngine("0002_attendance_auto_checkout"))  # type: ignore[arg-type]

        self.assertTrue(result.ok)
        self.assertEqual(result.issues, [])
        self.assertEqual(result.to_dict()["issues"], [])

    def test_reports_missing_columns_tables_and_version(self) -> None:
        columns = {table: set(items) for table, items in REQUIRED_TABLE_COLUMNS.items()}
        columns["ot_sessions"] = {"id", "session_id", "attendance_id", "status"}
        del columns["payroll_periods"]
        fake_inspector = _FakeInspector(
            columns_by_table=columns,
            indexes_by_table={"ot_sessions": [OPEN_SESSION_INDEX]},
        )

        with patch("attendance_ot.services.schema_guard.inspect", return_value=fake_inspector):
            result = verify_runtime_schema(_FakeEngine(""))  # type: ignore[arg-type]

        self.assertFalse(result.ok)
        self.assertIn("MISSING_COLUMNS:ot_sessions:auto_closed_at,payroll_locked", result.issues)
        self.assertIn("TABLE_UNREADABLE:payroll_periods:LookupError", result.issues)
        self.assertIn("ALEMBIC_VERSION_EMPTY", result.issues)

    def test_database_without_auto_checkout_columns_is_reported(self) -> None:
        columns = {table: set(items) for table, items in REQUIRED_TABLE_COLUMNS.items()}
        columns["attendance_records"] = {"id", "user_id", "work_date", "check_out_time", "total_ot_hours"}
        fake_inspector = _FakeInspector(
            columns_by_table=columns,
            indexes_by_table={"ot_sessions": [OPEN_SESSION_INDEX]},
        )

        with patch("attendance_ot.services.schema_guard.inspect", return_value=fake_inspector):
            result = verify_runtime_schema(_FakeEngine("0001_initial"))  # type: ignore[arg-type]

        self.assertEqual(result.issues, ["MISSING_COLUMNS:attendance_records:auto_corrected_at"])

    def test_non_unique_open_session_index_is_an_issue(self) -> None:
        fake_inspector = _FakeInspector(
            columns_by_table={table: set(columns) for table, columns in REQUIRED_TABLE_COLUMNS.items()},
            indexes_by_table={"ot_sessions": [{"name": "uq_ot_sessions_one_open_per_user_day", "unique": False}]},
        )

        with patch("attendance_ot.services.schema_guard.inspect", return_value=fake_inspector):
            result = verify_runtime_schema(_FakeEngine("0002_attendance_auto_checkout"))  # type: ignore[arg-type]

        self.assertEqual(result.issues, ["INDEX_NOT_UNIQUE:ot_sessions:uq_ot_sessions_one_open_per_user_day"])


if __name__ == "__main__":
    unittest.main()
