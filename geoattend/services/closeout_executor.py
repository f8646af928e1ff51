from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from geoattend.models import CheckoutType, PendingAutoCloseout
from geoattend.services.clock import normalize_ts
from geoattend.services.pending_closeout import flag_session_already_closed, mark_pending_done
from geoattend.services.sessions import close_session_if_open

logger = logging.getLogger("geoattend.closeout")


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    pending_id: int
    tenant_id: int
    employee_id: int
    session_id: int
    reason: str
    settled: bool
    session_closed: bool
    session_already_closed: bool
    check_out_time: datetime | None = None
    duration_seconds: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "pending_id": self.pending_id,
            "tenant_id": self.tenant_id,
            "employee_id": self.employee_id,
            "session_id": self.session_id,
            "reason": self.reason,
            "settled": self.settled,
            "session_closed": self.session_closed,
            "session_already_closed": self.session_already_closed,
            "check_out_time": self.check_out_time.isoformat() if self.check_out_time else None,
            "duration_seconds": self.duration_seconds,
        }


def execute_closeout(
    db: Session,
    *,
    pending: PendingAutoCloseout,
    lat: float | None = None,
    lon: float | None = None,
    accuracy_m: float | None = None,
    now_utc: datetime | None = None,
) -> ExecutionResult:
    """Settle an expired countdown and close its session with an AUTO checkout.

    The pending row is moved to DONE first; only the caller that wins that
    transition touches the session. If the session was closed in the meantime
    (manual or admin checkout) its checkout fields are left as they are and the
    row records ``session_already_closed``. Both writes commit together.
    """
    now = normalize_ts(now_utc)
    pending_id = pending.id
    tenant_id = pending.tenant_id
    employee_id = pending.employee_id
    session_id = pending.session_id
    reason = pending.reason.value

    settled = mark_pending_done(db, pending_id=pending_id, tenant_id=tenant_id, now_utc=now)
    if not settled:
        logger.info(
            "auto_closeout_lost_race",
            extra={
                "tenant_id": tenant_id,
                "employee_id": employee_id,
                "session_id": session_id,
                "pending_id": pending_id,
            },
        )
        return ExecutionResult(
            pending_id=pending_id,
            tenant_id=tenant_id,
            employee_id=employee_id,
            session_id=session_id,
            reason=reason,
            settled=False,
            session_closed=False,
            session_already_closed=False,
        )

    closed = close_session_if_open(
        db,
        tenant_id=tenant_id,
        session_id=session_id,
        closed_at_utc=now,
        lat=lat,
        lon=lon,
        accuracy_m=accuracy_m,
        checkout_type=CheckoutType.AUTO,
        checkout_reason=reason,
    )
    if closed is None:
        flag_session_already_closed(db, pending_id=pending_id, tenant_id=tenant_id)
    db.commit()

    if closed is None:
        logger.info(
            "auto_closeout_session_already_closed",
            extra={
                "tenant_id": tenant_id,
                "employee_id": employee_id,
                "session_id": session_id,
                "pending_id": pending_id,
            },
        )
        return ExecutionResult(
            pending_id=pending_id,
            tenant_id=tenant_id,
            employee_id=employee_id,
            session_id=session_id,
            reason=reason,
            settled=True,
            session_closed=False,
            session_already_closed=True,
        )

    logger.info(
        "auto_closeout_executed",
        extra={
            "tenant_id": tenant_id,
            "employee_id": employee_id,
            "session_id": session_id,
            "pending_id": pending_id,
            "reason": reason,
            "duration_seconds": closed.duration_seconds,
        },
    )
    return ExecutionResult(
        pending_id=pending_id,
        tenant_id=tenant_id,
        employee_id=employee_id,
        session_id=session_id,
        reason=reason,
        settled=True,
        session_closed=True,
        session_already_closed=False,
        check_out_time=normalize_ts(closed.check_out_time),
        duration_seconds=closed.duration_seconds,
    )
