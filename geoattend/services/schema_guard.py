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
            "issue_count": len(self.issues),
            "warning_count": len(self.warnings),
        }


EXPECTED_HEAD = "0002_auto_closeout"

REQUIRED_TABLE_COLUMNS: dict[str, set[str]] = {
    "employees": {"id", "tenant_id", "branch_id", "is_active"},
    "attendance_sessions": {"id", "tenant_id", "employee_id", "check_in_time", "check_out_time", "checkout_type"},
    "auto_closeout_settings": {"tenant_id", "enabled", "grace_seconds", "max_accuracy_meters"},
    "location_heartbeats": {"employee_id", "tenant_id", "last_seen_at", "inside_area", "signal_usable"},
    "pending_auto_closeouts": {"id", "tenant_id", "employee_id", "session_id", "ends_at", "status"},
    "alembic_version": {"version_num"},
}

# Both invariants of the closeout state machine live in these partial unique indexes.
REQUIRED_UNIQUE_INDEXES: dict[str, str] = {
    "attendance_sessions": "uq_attendance_sessions_open_employee",
    "pending_auto_closeouts": "uq_pending_auto_closeouts_live",
}

REQUIRED_ENUM_VALUES: dict[str, set[str]] = {
    "checkout_type": {"MANUAL", "AUTO"},
    "closeout_reason": {"GPS_BLOCKED", "OUTSIDE_BRANCH"},
    "pending_closeout_status": {"PENDING", "CANCELLED", "DONE"},
    "pending_cancel_reason": {"RECOVERED", "ALREADY_CLOSED", "DISABLED"},
}


def verify_runtime_schema(engine: Engine) -> SchemaGuardResult:
    issues: list[str] = []
    warnings: list[str] = []
    checked_at_utc = datetime.now(timezone.utc)
    inspector = inspect(engine)

    for table_name, required_columns in REQUIRED_TABLE_COLUMNS.items():
        try:
            column_names = {str(item.get("name")) for item in inspector.get_columns(table_name)}
        except Exception as exc:  # pragma: no cover
            issues.append(f"TABLE_UNREADABLE:{table_name}:{exc.__class__.__name__}")
            continue

        missing_columns = sorted(item for item in required_columns if item not in column_names)
        if missing_columns:
            issues.append(f"MISSING_COLUMNS:{table_name}:{','.join(missing_columns)}")

    for table_name, index_name in REQUIRED_UNIQUE_INDEXES.items():
        try:
            indexes = inspector.get_indexes(table_name) or []
        except Exception as exc:  # pragma: no cover
            issues.append(f"INDEX_INSPECTION_FAILED:{table_name}:{exc.__class__.__name__}")
            continue
        matching = [item for item in indexes if item.get("name") == index_name]
        if not matching:
            issues.append(f"MISSING_INDEX:{table_name}:{index_name}")
        elif not matching[0].get("unique"):
            issues.append(f"INDEX_NOT_UNIQUE:{table_name}:{index_name}")

    try:
        enums = inspector.get_enums() or []
    except (AttributeError, NotImplementedError):
        # Only PostgreSQL exposes named enum types.
        enums = []
    except Exception as exc:  # pragma: no cover
        warnings.append(f"ENUM_INSPECTION_FAILED:{exc.__class__.__name__}")
        enums = []

    enum_values_by_name: dict[str, set[str]] = {}
    for enum_item in enums:
        name = str(enum_item.get("name") or "").strip()
        if not name:
            continue
        labels = enum_item.get("labels")
        if isinstance(labels, list):
            enum_values_by_name[name] = {str(label) for label in labels}

    for enum_name, required_values in REQUIRED_ENUM_VALUES.items():
        if enum_name not in enum_values_by_name:
            warnings.append(f"ENUM_NOT_FOUND:{enum_name}")
            continue
        missing_values = sorted(item for item in required_values if item not in enum_values_by_name[enum_name])
        if missing_values:
            issues.append(f"MISSING_ENUM_VALUES:{enum_name}:{','.join(missing_values)}")

    try:
        with engine.connect() as connection:
            row = connection.execute(text("SELECT version_num FROM alembic_version LIMIT 1")).scalar()
            version = str(row).strip() if row is not None else ""
            if not version:
                issues.append("ALEMBIC_VERSION_EMPTY")
            elif version != EXPECTED_HEAD:
                warnings.append(f"ALEMBIC_VERSION_NOT_HEAD:{version}")
    except Exception as exc:  # pragma: no cover
        issues.append(f"ALEMBIC_VERSION_CHECK_FAILED:{exc.__class__.__name__}")

    return SchemaGuardResult(
        ok=len(issues) == 0,
        checked_at_utc=checked_at_utc,
        issues=issues,
        warnings=warnings,
    )
