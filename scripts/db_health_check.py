#!/usr/bin/env python
from __future__ import annotations

import json
import sys
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import create_engine, text

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from geoattend.services.schema_guard import EXPECTED_HEAD
from geoattend.settings import get_settings


def run() -> dict:
    database_url = get_settings().database_url
    engine = create_engine(database_url)
    report: dict = {
        "generated_at_utc": datetime.now(timezone.utc).isoformat(),
        "checks": [],
    }

    def add(name: str, status: str, details: dict) -> None:
        report["checks"].append(
            {
                "name": name,
                "status": status,
                "details": details,
            }
        )

    with engine.connect() as conn:
        tables = set(
            conn.execute(
                text(
                    """
                    select table_name
                    from information_schema.tables
                    where table_schema='public'
                    """
                )
            ).scalars()
        )

        current_versions: list[str] = []
        if "alembic_version" in tables:
            current_versions = [
                row[0]
                for row in conn.execute(text("select version_num from alembic_version")).fetchall()
            ]
        add("alembic_version", "ok" if current_versions else "fail", {"current": current_versions})

        add(
            "migration_up_to_date",
            "ok" if EXPECTED_HEAD in current_versions else "warn",
            {"expected_head": EXPECTED_HEAD, "current": current_versions},
        )

        if "attendance_sessions" in tables:
            duplicate_open_sessions = conn.execute(
                text(
                    """
                    select employee_id, count(*)
                    from attendance_sessions
                    where check_out_time is null
                    group by employee_id
                    having count(*) > 1
                    """
                )
            ).fetchall()
            add(
                "duplicate_open_sessions",
                "fail" if duplicate_open_sessions else "ok",
                {"rows": [list(row) for row in duplicate_open_sessions]},
            )

            cross_tenant_sessions = conn.execute(
                text(
                    """
                    select s.id
                    from attendance_sessions s
                    join employees e on e.id = s.employee_id
                    where e.tenant_id <> s.tenant_id
                    limit 20
                    """
                )
            ).fetchall()
            add(
                "session_tenant_mismatch",
                "fail" if cross_tenant_sessions else "ok",
                {"sample_ids": [row[0] for row in cross_tenant_sessions]},
            )

        if "pending_auto_closeouts" in tables:
            duplicate_live_pending = conn.execute(
                text(
                    """
                    select employee_id, session_id, count(*)
                    from pending_auto_closeouts
                    where status = 'PENDING'
                    group by employee_id, session_id
                    having count(*) > 1
                    """
                )
            ).fetchall()
            add(
                "duplicate_live_pending",
                "fail" if duplicate_live_pending else "ok",
                {"rows": [list(row) for row in duplicate_live_pending]},
            )

            pending_on_closed_sessions = conn.execute(
                text(
                    """
                    select p.id
                    from pending_auto_closeouts p
                    join attendance_sessions s on s.id = p.session_id
                    where p.status = 'PENDING'
                      and s.check_out_time is not null
                    limit 20
                    """
                )
            ).fetchall()
            add(
                "pending_on_closed_session",
                "warn" if pending_on_closed_sessions else "ok",
                {"sample_ids": [row[0] for row in pending_on_closed_sessions]},
            )

            expired_backlog = conn.execute(
                text(
                    """
                    select count(*)
                    from pending_auto_closeouts
                    where status = 'PENDING'
                      and ends_at < now() - interval '1 hour'
                    """
                )
            ).scalar()
            add(
                "expired_pending_backlog",
                "warn" if expired_backlog else "ok",
                {"count": int(expired_backlog or 0)},
            )

    return report


if __name__ == "__main__":
    print(json.dumps(run(), ensure_ascii=False, indent=2))
