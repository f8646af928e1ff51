from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from geoattend.db import SessionLocal
from geoattend.models import PendingAutoCloseout, PendingCloseoutStatus
from geoattend.services.clock import normalize_ts
from geoattend.services.closeout_config import AutoCloseoutConfig, load_closeout_config
from geoattend.services.closeout_executor import ExecutionResult, execute_closeout

logger = logging.getLogger("geoattend.sweep")


def _expired_pending_ids(db: Session, *, now_utc: datetime, limit: int) -> list[tuple[int, int]]:
    rows = db.execute(
        select(PendingAutoCloseout.id, PendingAutoCloseout.tenant_id)
        .where(
            PendingAutoCloseout.status == PendingCloseoutStatus.PENDING,
            PendingAutoCloseout.ends_at <= now_utc,
        )
        .order_by(PendingAutoCloseout.tenant_id.asc(), PendingAutoCloseout.ends_at.asc())
        .limit(limit)
    ).all()
    return [(int(row.id), int(row.tenant_id)) for row in rows]


def sweep_expired_pending(
    now_utc: datetime,
    db: Session | None = None,
    limit: int = 100,
) -> list[ExecutionResult]:
    """Settle countdowns that expired while no heartbeat arrived.

    Rows are processed tenant by tenant. A tenant that switched auto-closeout
    off since the countdown started is skipped and its rows are left alone.
    """
    if db is None:
        with SessionLocal() as managed_db:
            return sweep_expired_pending(now_utc, db=managed_db, limit=limit)

    reference_utc = normalize_ts(now_utc)
    candidates = _expired_pending_ids(db, now_utc=reference_utc, limit=limit)
    configs: dict[int, AutoCloseoutConfig] = {}
    results: list[ExecutionResult] = []
    skipped = 0

    for pending_id, tenant_id in candidates:
        config = configs.get(tenant_id)
        if config is None:
            config = load_closeout_config(db, tenant_id=tenant_id)
            configs[tenant_id] = config
        if not config.enabled:
            skipped += 1
            continue

        pending = db.scalar(
            select(PendingAutoCloseout)
            .where(
                PendingAutoCloseout.id == pending_id,
                PendingAutoCloseout.tenant_id == tenant_id,
                PendingAutoCloseout.status == PendingCloseoutStatus.PENDING,
            )
            .execution_options(populate_existing=True)
        )
        if pending is None:
            # Settled by a heartbeat since the candidate query ran.
            continue

        try:
            result = execute_closeout(db, pending=pending, now_utc=reference_utc)
        except Exception:
            db.rollback()
            logger.exception(
                "closeout_sweep_item_failed",
                extra={"tenant_id": tenant_id, "pending_id": pending_id},
            )
            continue
        if result.settled:
            results.append(result)

    logger.info(
        "closeout_sweep_completed",
        extra={
            "candidates": len(candidates),
            "settled": len(results),
            "skipped_disabled": skipped,
        },
    )
    return results
