#!/usr/bin/env python
from __future__ import annotations

import json
import re
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from alembic.config import Config
from alembic.script import ScriptDirectory
from sqlalchemy import create_engine, text

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from geoattend.services.schema_guard import EXPECTED_HEAD, REQUIRED_UNIQUE_INDEXES, verify_runtime_schema
from geoattend.settings import get_settings

VERSIONS_DIR = ROOT_DIR / "geoattend" / "migrations" / "versions"
MIN_JWT_SECRET_LENGTH = 32
MIN_SWEEP_INTERVAL_SECONDS = 15
MAX_SWEEP_BATCH_SIZE = 1000


@dataclass(slots=True)
class CheckResult:
    name: str
    status: str
    details: dict[str, Any]

    @property
    def ok(self) -> bool:
        return self.status == "ok"


def _extract_revision_ids() -> list[str]:
    revisions: list[str] = []
    pattern = re.compile(r'^\s*revision\s*:\s*str\s*=\s*"([^"]+)"\s*$', re.MULTILINE)
    for path in sorted(VERSIONS_DIR.glob("*.py")):
        if path.name.startswith("__"):
            continue
        content = path.read_text(encoding="utf-8")
        match = pattern.search(content)
        if match:
            revisions.append(match.group(1).strip())
    return revisions


def _check_revision_id_lengths() -> CheckResult:
    revisions = _extract_revision_ids()
    too_long = [revision for revision in revisions if len(revision) > 32]
    return CheckResult(
        name="migration_revision_length",
        status="ok" if not too_long else "fail",
        details={
            "max_len": 32,
            "too_long": too_long,
            "total": len(revisions),
        },
    )


def _check_jwt_secret() -> CheckResult:
    secret = (get_settings().jwt_secret or "").strip()
    return CheckResult(
        name="jwt_secret_configured",
        status="ok" if len(secret) >= MIN_JWT_SECRET_LENGTH else "fail",
        details={"length": len(secret), "min_length": MIN_JWT_SECRET_LENGTH},
    )


def _expected_alembic_heads() -> list[str]:
    config = Config(str(ROOT_DIR / "alembic.ini"))
    script = ScriptDirectory.from_config(config)
    return sorted(script.get_heads())


def _check_schema_guard_head() -> CheckResult:
    expected_heads = _expected_alembic_heads()
    return CheckResult(
        name="schema_guard_expected_head",
        status="ok" if expected_heads == [EXPECTED_HEAD] else "fail",
        details={"alembic_heads": expected_heads, "schema_guard_head": EXPECTED_HEAD},
    )


def _check_revision_chain() -> CheckResult:
    config = Config(str(ROOT_DIR / "alembic.ini"))
    script = ScriptDirectory.from_config(config)
    bases = sorted(script.get_bases())
    branch_points = sorted(rev.revision for rev in script.walk_revisions() if rev.is_branch_point)
    return CheckResult(
        name="migration_revision_chain",
        status="ok" if len(bases) == 1 and not branch_points else "fail",
        details={"bases": bases, "branch_points": branch_points},
    )


def _check_unique_index_migrations() -> CheckResult:
    sources = "\n".join(path.read_text(encoding="utf-8") for path in sorted(VERSIONS_DIR.glob("*.py")))
    missing = sorted(name for name in REQUIRED_UNIQUE_INDEXES.values() if name not in sources)
    return CheckResult(
        name="closeout_unique_indexes_migrated",
        status="ok" if not missing else "fail",
        details={"required": sorted(REQUIRED_UNIQUE_INDEXES.values()), "missing": missing},
    )


def _check_sweep_settings() -> CheckResult:
    settings = get_settings()
    problems: list[str] = []
    if settings.closeout_sweep_interval_seconds < MIN_SWEEP_INTERVAL_SECONDS:
        problems.append("INTERVAL_BELOW_MINIMUM")
    if not 1 <= settings.closeout_sweep_batch_size <= MAX_SWEEP_BATCH_SIZE:
        problems.append("BATCH_SIZE_OUT_OF_RANGE")
    status = "ok"
    if problems:
        # A disabled sweep never runs, so bad values only matter once it is switched on.
        status = "fail" if settings.closeout_sweep_enabled else "warn"
    return CheckResult(
        name="closeout_sweep_settings",
        status=status,
        details={
            "enabled": settings.closeout_sweep_enabled,
            "interval_seconds": settings.closeout_sweep_interval_seconds,
            "batch_size": settings.closeout_sweep_batch_size,
            "problems": problems,
        },
    )


def _check_database_migration_and_schema() -> CheckResult:
    database_url = (get_settings().database_url or "").strip()
    if not database_url:
        return CheckResult(
            name="database_schema_guard",
            status="warn",
            details={"reason": "DATABASE_URL_NOT_SET"},
        )

    expected_heads = _expected_alembic_heads()
    engine = create_engine(database_url, pool_pre_ping=True)
    try:
        with engine.connect() as connection:
            current_versions = [
                str(row[0]).strip()
                for row in connection.execute(text("SELECT version_num FROM alembic_version")).fetchall()
                if row and row[0] is not None
            ]
        schema_result = verify_runtime_schema(engine)
    finally:
        engine.dispose()

    missing_heads = [head for head in expected_heads if head not in current_versions]
    status = "ok"
    if missing_heads or (not schema_result.ok):
        status = "fail"

    return CheckResult(
        name="database_schema_guard",
        status=status,
        details={
            "expected_heads": expected_heads,
            "current_versions": current_versions,
            "missing_heads": missing_heads,
            "schema_guard_ok": schema_result.ok,
            "schema_guard_issues": schema_result.issues,
            "schema_guard_warnings": schema_result.warnings,
        },
    )


def main() -> int:
    checks = [
        _check_revision_id_lengths(),
        _check_jwt_secret(),
        _check_schema_guard_head(),
        _check_revision_chain(),
        _check_unique_index_migrations(),
        _check_sweep_settings(),
        _check_database_migration_and_schema(),
    ]
    failed_checks = [check for check in checks if check.status == "fail"]
    summary = {
        "generated_at_utc": datetime.now(timezone.utc).isoformat(),
        "ok": len(failed_checks) == 0,
        "checks": [
            {
                "name": check.name,
                "status": check.status,
                "details": check.details,
            }
            for check in checks
        ],
    }
    print(json.dumps(summary, ensure_ascii=False, indent=2))
    return 0 if len(failed_checks) == 0 else 1


if __name__ == "__main__":
    raise SystemExit(main())
