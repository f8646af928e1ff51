from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from geoattend.db import dialect_insert
from geoattend.logging_utils import bind_tenant
from geoattend.models import CancelReason, Employee, LocationHeartbeat
from geoattend.services.clock import normalize_ts
from geoattend.services.closeout_config import AutoCloseoutConfig, load_closeout_config
from geoattend.services.closeout_executor import execute_closeout
from geoattend.services.location import evaluate_geofence
from geoattend.services.pending_closeout import (
    TransitionKind,
    advance_pending_state,
    cancel_live_pending_for_session,
    classify_problem,
)
from geoattend.services.tenancy import (
    require_tenant_employee,
    require_tenant_session,
    resolve_active_free_task,
    resolve_employee_branch,
    resolve_employee_tenant,
)

logger = logging.getLogger("geoattend.heartbeat")

STATUS_OK = "OK"
STATUS_SESSION_CLOSED = "SESSION_CLOSED"


@dataclass(frozen=True, slots=True)
class HeartbeatResult:
    tenant_id: int
    employee_id: int
    session_id: int
    auto_closeout_enabled: bool
    status: str | None = None
    pending_created: bool = False
    pending_cancelled: bool = False
    pending_active: bool = False
    auto_closeout_executed: bool = False
    session_closed: bool = False
    reason: str | None = None
    ends_at: datetime | None = None
    seconds_remaining: int | None = None
    sample_interval_seconds: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "employee_id": self.employee_id,
            "session_id": self.session_id,
            "auto_closeout_enabled": self.auto_closeout_enabled,
            "status": self.status,
            "pending_created": self.pending_created,
            "pending_cancelled": self.pending_cancelled,
            "pending_active": self.pending_active,
            "auto_closeout_executed": self.auto_closeout_executed,
            "session_closed": self.session_closed,
            "reason": self.reason,
            "ends_at": self.ends_at.isoformat() if self.ends_at else None,
            "seconds_remaining": self.seconds_remaining,
            "sample_interval_seconds": self.sample_interval_seconds,
        }


def upsert_heartbeat(
    db: Session,
    *,
    tenant_id: int,
    employee_id: int,
    session_id: int | None,
    inside_area: bool,
    signal_usable: bool,
    reason: str | None,
    lat: float | None,
    lon: float | None,
    accuracy_m: float | None,
    now_utc: datetime,
) -> None:
    values = {
        "tenant_id": tenant_id,
        "session_id": session_id,
        "last_seen_at": normalize_ts(now_utc),
        "inside_area": inside_area,
        "signal_usable": signal_usable,
        "reason": reason,
        "lat": lat,
        "lon": lon,
        "accuracy_m": accuracy_m,
    }
    stmt = dialect_insert(db, LocationHeartbeat).values(employee_id=employee_id, **values)
    stmt = stmt.on_conflict_do_update(index_elements=["employee_id"], set_=values)
    db.execute(stmt)


def get_heartbeat_status(db: Session, *, tenant_id: int, employee_id: int) -> LocationHeartbeat | None:
    require_tenant_employee(db, tenant_id=tenant_id, employee_id=employee_id, require_active=False)
    return db.scalar(
        select(LocationHeartbeat)
        .where(
            LocationHeartbeat.tenant_id == tenant_id,
            LocationHeartbeat.employee_id == employee_id,
        )
        .execution_options(populate_existing=True)
    )


def _evaluate_sample(
    db: Session,
    *,
    employee: Employee,
    config: AutoCloseoutConfig,
    lat: float | None,
    lon: float | None,
    accuracy_m: float | None,
    now_utc: datetime,
) -> tuple[bool, bool]:
    branch = resolve_employee_branch(db, tenant_id=employee.tenant_id, employee=employee)
    free_task = resolve_active_free_task(
        db,
        tenant_id=employee.tenant_id,
        employee_id=employee.id,
        reference_ts_utc=now_utc,
    )
    result = evaluate_geofence(
        branch,
        free_task,
        lat,
        lon,
        accuracy_m,
        max_accuracy_meters=config.max_accuracy_meters,
        reference_ts_utc=now_utc,
    )
    return result.inside_area, result.signal_usable


def record_heartbeat(
    db: Session,
    *,
    employee_id: int,
    session_id: int,
    inside_area: bool | None,
    signal_usable: bool | None,
    lat: float | None = None,
    lon: float | None = None,
    accuracy_m: float | None = None,
    now_utc: datetime | None = None,
) -> HeartbeatResult:
    """Ingest one client presence sample and drive the auto-closeout state machine.

    Steps, always in this order: tenant and config resolution, heartbeat
    upsert, problem classification, countdown transition, optional closeout.
    When the client omits the inside/usable flags they are evaluated here from
    the coordinates.
    """
    now = normalize_ts(now_utc)
    employee = resolve_employee_tenant(db, employee_id)
    tenant_id = employee.tenant_id
    bind_tenant(tenant_id)
    session_row = require_tenant_session(db, tenant_id=tenant_id, session_id=session_id, employee_id=employee.id)
    config = load_closeout_config(db, tenant_id=tenant_id)

    if inside_area is None or signal_usable is None:
        evaluated_inside, evaluated_usable = _evaluate_sample(
            db,
            employee=employee,
            config=config,
            lat=lat,
            lon=lon,
            accuracy_m=accuracy_m,
            now_utc=now,
        )
        inside_area = evaluated_inside if inside_area is None else inside_area
        signal_usable = evaluated_usable if signal_usable is None else signal_usable

    if not config.enabled:
        upsert_heartbeat(
            db,
            tenant_id=tenant_id,
            employee_id=employee.id,
            session_id=session_id,
            inside_area=inside_area,
            signal_usable=signal_usable,
            reason=None,
            lat=lat,
            lon=lon,
            accuracy_m=accuracy_m,
            now_utc=now,
        )
        cancel_live_pending_for_session(
            db,
            tenant_id=tenant_id,
            employee_id=employee.id,
            session_id=session_id,
            cancel_reason=CancelReason.DISABLED,
            now_utc=now,
        )
        db.commit()
        return HeartbeatResult(
            tenant_id=tenant_id,
            employee_id=employee_id,
            session_id=session_id,
            auto_closeout_enabled=False,
            sample_interval_seconds=config.sample_interval_seconds,
        )

    problem = classify_problem(inside_area=inside_area, signal_usable=signal_usable)
    upsert_heartbeat(
        db,
        tenant_id=tenant_id,
        employee_id=employee.id,
        session_id=session_id,
        inside_area=inside_area,
        signal_usable=signal_usable,
        reason=problem.value if problem is not None else None,
        lat=lat,
        lon=lon,
        accuracy_m=accuracy_m,
        now_utc=now,
    )
    db.commit()

    common = {
        "tenant_id": tenant_id,
        "employee_id": employee_id,
        "session_id": session_id,
        "auto_closeout_enabled": True,
        "sample_interval_seconds": config.sample_interval_seconds,
    }

    db.refresh(session_row)
    if not session_row.is_open:
        cancelled = cancel_live_pending_for_session(
            db,
            tenant_id=tenant_id,
            employee_id=employee.id,
            session_id=session_id,
            cancel_reason=CancelReason.ALREADY_CLOSED,
            now_utc=now,
        )
        db.commit()
        return HeartbeatResult(
            status=STATUS_SESSION_CLOSED,
            session_closed=True,
            pending_cancelled=cancelled is not None,
            reason=CancelReason.ALREADY_CLOSED.value if cancelled is not None else None,
            **common,
        )

    transition = advance_pending_state(
        db,
        tenant_id=tenant_id,
        employee_id=employee.id,
        session_id=session_id,
        problem=problem,
        grace_seconds=config.grace_seconds,
        now_utc=now,
    )

    if transition.kind == TransitionKind.PENDING_EXPIRED and transition.pending is not None:
        execution = execute_closeout(
            db,
            pending=transition.pending,
            lat=lat,
            lon=lon,
            accuracy_m=accuracy_m,
            now_utc=now,
        )
        if execution.settled:
            return HeartbeatResult(
                auto_closeout_executed=True,
                session_closed=True,
                reason=execution.reason,
                seconds_remaining=0,
                **common,
            )
        # A concurrent caller settled this countdown first; report what is true now.
        db.refresh(session_row)
        if not session_row.is_open:
            return HeartbeatResult(status=STATUS_SESSION_CLOSED, session_closed=True, **common)
        return HeartbeatResult(status=STATUS_OK, **common)

    db.commit()

    if transition.kind == TransitionKind.PENDING_CREATED:
        return HeartbeatResult(
            pending_created=True,
            reason=transition.reason,
            ends_at=transition.ends_at,
            seconds_remaining=transition.seconds_remaining,
            **common,
        )
    if transition.kind == TransitionKind.PENDING_CANCELLED:
        return HeartbeatResult(pending_cancelled=True, reason=transition.reason, **common)
    if transition.kind == TransitionKind.PENDING_ACTIVE:
        return HeartbeatResult(
            pending_active=True,
            reason=transition.reason,
            ends_at=transition.ends_at,
            seconds_remaining=transition.seconds_remaining,
            **common,
        )
    return HeartbeatResult(status=STATUS_OK, **common)
