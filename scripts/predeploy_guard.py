#!/usr/bin/env python
"""Pre-deploy checks: migration scripts, runtime settings and the live schema.

Prints a JSON report and exits non-zero when any check fails. Pass
``--skip-db`` to run only the offline checks (CI without a database).
"""
from __future__ import annotations

import json
import sys
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from timeguard.db import _normalize_database_url
from timeguard.services.schema_guard import verify_runtime_schema
from timeguard.settings import get_settings

MIN_JWT_SECRET_LENGTH = 32
# alembic_version.version_num is VARCHAR(32).
MAX_REVISION_LENGTH = 32


@dataclass(slots=True)
class Check:
    name: str
    problems: list[str] = field(default_factory=list)
    details: dict[str, Any] = field(default_factory=dict)
    skipped: bool = False

    @property
    def status(self) -> str:
        if self.skipped:
            return "skipped"
        return "fail" if self.problems else "ok"


def _script_directory() -> ScriptDirectory:
    return ScriptDirectory.from_config(Config(str(ROOT_DIR / "alembic.ini")))


def check_migration_scripts(script: ScriptDirectory) -> Check:
    check = Check(name="migration_scripts")
    revisions = [item.revision for item in script.walk_revisions()]
    heads = script.get_heads()
    check.details = {"revisions": len(revisions), "heads": sorted(heads)}
    for revision in revisions:
        if len(revision) > MAX_REVISION_LENGTH:
            check.problems.append(f"REVISION_ID_TOO_LONG:{revision}")
    if len(heads) > 1:
        check.problems.append("MULTIPLE_HEADS")
    return check


def check_runtime_config() -> Check:
    settings = get_settings()
    check = Check(
        name="runtime_config",
        details={
            "attendance_timezone": settings.attendance_timezone,
            "schema_guard_enabled": settings.schema_guard_enabled,
            "schema_guard_strict": settings.schema_guard_strict,
        },
    )
    if len(settings.jwt_secret or "") < MIN_JWT_SECRET_LENGTH:
        check.problems.append("JWT_SECRET_TOO_SHORT")
    try:
        ZoneInfo(settings.attendance_timezone)
    except (ZoneInfoNotFoundError, ValueError):
        check.problems.append("ATTENDANCE_TIMEZONE_UNKNOWN")
    if settings.default_geofence_radius_m <= 0:
        check.problems.append("DEFAULT_GEOFENCE_RADIUS_NOT_POSITIVE")
    if settings.default_variance_threshold_percent < 0:
        check.problems.append("DEFAULT_VARIANCE_THRESHOLD_NEGATIVE")
    if not 0 < settings.default_work_hours_per_day <= 24:
        check.problems.append("DEFAULT_WORK_HOURS_OUT_OF_RANGE")
    if settings.position_max_age_seconds <= 0:
        check.problems.append("POSITION_MAX_AGE_NOT_POSITIVE")
    return check


def check_database(script: ScriptDirectory) -> Check:
    check = Check(name="database_schema")
    database_url = (get_settings().database_url or "").strip()
    if not database_url:
        check.problems.append("DATABASE_URL_NOT_SET")
        return check

    engine = create_engine(_normalize_database_url(database_url), pool_pre_ping=True)
    try:
        with engine.connect() as connection:
            current_heads = set(MigrationContext.configure(connection).get_current_heads())
        schema = verify_runtime_schema(engine)
    except SQLAlchemyError as exc:
        check.problems.append(f"DATABASE_UNREACHABLE:{type(exc).__name__}")
        return check
    finally:
        engine.dispose()

    expected_heads = set(script.get_heads())
    check.details = {
        "expected_heads": sorted(expected_heads),
        "current_heads": sorted(current_heads),
        "schema_warnings": schema.warnings,
    }
    check.problems.extend(f"MIGRATION_NOT_APPLIED:{head}" for head in sorted(expected_heads - current_heads))
    check.problems.extend(schema.issues)
    return check


def main(argv: list[str]) -> int:
    script = _script_directory()
    checks = [check_migration_scripts(script), check_runtime_config()]
    if "--skip-db" in argv:
        checks.append(Check(name="database_schema", skipped=True))
    else:
        checks.append(check_database(script))

    ok = all(check.status != "fail" for check in checks)
    report = {
        "generated_at_utc": datetime.now(timezone.utc).isoformat(),
        "ok": ok,
        "checks": [{"status": check.status, **asdict(check)} for check in checks],
    }
    print(json.dumps(report, ensure_ascii=False, indent=2))
    return 0 if ok else 1


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
