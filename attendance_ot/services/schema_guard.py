from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine


@dataclass(frozen=True, slots=True)
class SchemaGuardResult:
    ok: bool
    checked_at_utc: datetime
    issues: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "checked_at_utc": self.checked_at_utc.isoformat(),
            "issues": list(self.issues),
            "warnings": list(self.warnings),
        }


REQUIRED_TABLE_COLUMNS: dict[str, set[str]] = {
    "users": {"id", "role", "department_id"},
    "departments": {"id", "check_in_time", "check_out_time"},
    "attendance_records": {"id", "user_id", "work_date", "check_out_time", "total_ot_hours", "auto_corrected_at"},
    "ot_sessions": {"id", "session_id", "attendance_id", "status", "auto_closed_at", "payroll_locked"},
    "payroll_periods": {"id", "month", "year", "status"},
    "alembic_version": {"version_num"},
}

# Unique indexes the lifecycle relies on for race safety.
REQUIRED_UNIQUE_INDEXES: dict[str, str] = {
    "ot_sessions": "uq_ot_sessions_one_open_per_user_day",
}


def verify_runtime_schema(engine: Engine) -> SchemaGuardResult:
    issues: list[str] = []
    warnings: list[str] = []
    checked_at_utc = datetime.now(timezone.utc)
    inspector = inspect(engine)

    for table_name, required_columns in REQUIRED_TABLE_COLUMNS.items():
        try:
            column_names = {str(item.get("name")) for item in inspector.get_columns(table_name)}
        except Exception as exc:
            issues.append(f"TABLE_UNREADABLE:{table_name}:{exc.__class__.__name__}")
            continue

        missing_columns = sorted(item for item in required_columns if item not in column_names)
        if missing_columns:
            issues.append(f"MISSING_COLUMNS:{table_name}:{','.join(missing_columns)}")

    for table_name, index_name in REQUIRED_UNIQUE_INDEXES.items():
        try:
            indexes = inspector.get_indexes(table_name) or []
        except Exception as exc:
            warnings.append(f"INDEX_INSPECTION_FAILED:{table_name}:{exc.__class__.__name__}")
            continue
        match = next((item for item in indexes if item.get("name") == index_name), None)
        if match is None:
            issues.append(f"MISSING_INDEX:{table_name}:{index_name}")
        elif not match.get("unique"):
            issues.append(f"INDEX_NOT_UNIQUE:{table_name}:{index_name}")

    try:
        with engine.connect() as connection:
            row = connection.execute(text("SELECT version_num FROM alembic_version LIMIT 1")).scalar()
            version = str(row).strip() if row is not None else ""
            if not version:
                issues.append("ALEMBIC_VERSION_EMPTY")
    except Exception as exc:
        issues.append(f"ALEMBIC_VERSION_CHECK_FAILED:{exc.__class__.__name__}")

    return SchemaGuardResult(
        ok=len(issues) == 0,
        checked_at_utc=checked_at_utc,
        issues=issues,
        warnings=warnings,
    )
