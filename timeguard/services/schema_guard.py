from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine, Inspector
from sqlalchemy.exc import SQLAlchemyError

# Columns, indexes and enum labels the running code depends on. A database that
# lacks any of them was not migrated to the current revision.
REQUIRED_TABLE_COLUMNS: dict[str, set[str]] = {
    "profiles": {"id", "email", "role", "work_hours", "work_days"},
    "sites": {"id", "latitude", "longitude", "geofence_radius", "variance_threshold_percent"},
    "employee_sites": {"id", "employee_id", "site_id", "start_date", "end_date"},
    "time_entries": {"id", "employee_id", "status", "idempotency_key", "clock_out_idempotency_key"},
    "conflicts": {"id", "conflict_type", "time_entry_id"},
    "variance_alerts": {"id", "date", "variance_percentage", "acknowledged"},
    "alembic_version": {"version_num"},
}

REQUIRED_INDEXES: dict[str, set[str]] = {
    "time_entries": {"uq_time_entries_one_active_per_employee"},
}

REQUIRED_ENUM_VALUES: dict[str, set[str]] = {
    "time_entry_status": {"active", "completed", "invalid"},
    "profile_role": {"admin", "manager", "employee"},
}


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


def _missing(required: set[str], present: set[str]) -> str:
    return ",".join(sorted(required - present))


def _check_columns(inspector: Inspector, issues: list[str]) -> None:
    for table_name, required in REQUIRED_TABLE_COLUMNS.items():
        try:
            present = {str(column.get("name")) for column in inspector.get_columns(table_name)}
        except SQLAlchemyError as exc:
            issues.append(f"TABLE_UNREADABLE:{table_name}:{type(exc).__name__}")
            continue
        if missing := _missing(required, present):
            issues.append(f"MISSING_COLUMNS:{table_name}:{missing}")


def _check_indexes(inspector: Inspector, issues: list[str], warnings: list[str]) -> None:
    for table_name, required in REQUIRED_INDEXES.items():
        try:
            present = {str(index.get("name")) for index in inspector.get_indexes(table_name)}
        except SQLAlchemyError as exc:
            warnings.append(f"INDEX_INSPECTION_FAILED:{table_name}:{type(exc).__name__}")
            continue
        if missing := _missing(required, present):
            issues.append(f"MISSING_INDEXES:{table_name}:{missing}")


def _check_enums(inspector: Inspector, issues: list[str], warnings: list[str]) -> None:
    try:
        # Only the PostgreSQL inspector knows about named enum types.
        enums = inspector.get_enums() or []
    except (SQLAlchemyError, NotImplementedError, AttributeError) as exc:
        warnings.append(f"ENUM_INSPECTION_FAILED:{type(exc).__name__}")
        return

    labels_by_name = {
        str(item["name"]): {str(label) for label in item.get("labels") or []}
        for item in enums
        if item.get("name")
    }
    for enum_name, required in REQUIRED_ENUM_VALUES.items():
        if enum_name not in labels_by_name:
            warnings.append(f"ENUM_NOT_FOUND:{enum_name}")
        elif missing := _missing(required, labels_by_name[enum_name]):
            issues.append(f"MISSING_ENUM_VALUES:{enum_name}:{missing}")


def _check_alembic_version(engine: Engine, issues: list[str]) -> None:
    try:
        with engine.connect() as connection:
            version = connection.execute(text("SELECT version_num FROM alembic_version LIMIT 1")).scalar()
    except SQLAlchemyError as exc:
        issues.append(f"ALEMBIC_VERSION_CHECK_FAILED:{type(exc).__name__}")
        return
    if not str(version or "").strip():
        issues.append("ALEMBIC_VERSION_EMPTY")


def verify_runtime_schema(engine: Engine) -> SchemaGuardResult:
    checked_at_utc = datetime.now(timezone.utc)
    issues: list[str] = []
    warnings: list[str] = []

    inspector = inspect(engine)
    _check_columns(inspector, issues)
    _check_indexes(inspector, issues, warnings)
    _check_enums(inspector, issues, warnings)
    _check_alembic_version(engine, issues)

    return SchemaGuardResult(
        ok=not issues,
        checked_at_utc=checked_at_utc,
        issues=issues,
        warnings=warnings,
    )
