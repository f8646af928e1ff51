from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from geoattend.db import dialect_insert
from geoattend.errors import ApiError, SessionNotFoundError
from geoattend.models import AttendanceSession, CancelReason, CheckoutType
from geoattend.services.clock import normalize_ts
from geoattend.services.closeout_config import load_closeout_config
from geoattend.services.location import evaluate_geofence
from geoattend.services.pending_closeout import cancel_live_pending_for_session
from geoattend.services.tenancy import (
    require_tenant_employee,
    require_tenant_session,
    resolve_active_free_task,
    resolve_employee_branch,
)

logger = logging.getLogger("geoattend.sessions")


def compute_duration_seconds(check_in_time: datetime, check_out_time: datetime) -> int:
    elapsed = normalize_ts(check_out_time) - normalize_ts(check_in_time)
    return max(0, int(elapsed.total_seconds()))


def get_open_session(db: Session, *, tenant_id: int, employee_id: int) -> AttendanceSession | None:
    return db.scalar(
        select(AttendanceSession).where(
            AttendanceSession.tenant_id == tenant_id,
            AttendanceSession.employee_id == employee_id,
            AttendanceSession.check_out_time.is_(None),
        )
    )


def get_session(db: Session, *, tenant_id: int, session_id: int) -> AttendanceSession:
    session_row = require_tenant_session(db, tenant_id=tenant_id, session_id=session_id)
    db.refresh(session_row)
    return session_row


def list_sessions(
    db: Session,
    *,
    tenant_id: int,
    employee_id: int | None = None,
    open_only: bool = False,
    limit: int = 100,
) -> list[AttendanceSession]:
    stmt = select(AttendanceSession).where(AttendanceSession.tenant_id == tenant_id)
    if employee_id is not None:
        stmt = stmt.where(AttendanceSession.employee_id == employee_id)
    if open_only:
        stmt = stmt.where(AttendanceSession.check_out_time.is_(None))
    stmt = stmt.order_by(AttendanceSession.check_in_time.desc(), AttendanceSession.id.desc()).limit(limit)
    return list(db.scalars(stmt).all())


def check_in(
    db: Session,
    *,
    tenant_id: int,
    employee_id: int,
    lat: float | None,
    lon: float | None,
    accuracy_m: float | None,
    device_ts_utc: datetime | None = None,
    now_utc: datetime | None = None,
) -> AttendanceSession:
    employee = require_tenant_employee(db, tenant_id=tenant_id, employee_id=employee_id)
    ts_utc = normalize_ts(now_utc)

    if lat is None or lon is None:
        raise ApiError(
            status_code=422,
            code="LOCATION_REQUIRED",
            message="Check-in requires a location sample.",
        )

    config = load_closeout_config(db, tenant_id=tenant_id)
    branch = resolve_employee_branch(db, tenant_id=tenant_id, employee=employee)
    free_task = resolve_active_free_task(
        db,
        tenant_id=tenant_id,
        employee_id=employee.id,
        reference_ts_utc=ts_utc,
    )
    geofence = evaluate_geofence(
        branch,
        free_task,
        lat,
        lon,
        accuracy_m,
        max_accuracy_meters=config.max_accuracy_meters,
        reference_ts_utc=ts_utc,
    )
    if not geofence.inside_area:
        raise ApiError(
            status_code=403,
            code="OUTSIDE_GEOFENCE",
            message="Check-in location is outside the permitted area.",
        )

    stmt = (
        dialect_insert(db, AttendanceSession)
        .values(
            tenant_id=tenant_id,
            employee_id=employee.id,
            branch_id=branch.id if branch is not None else None,
            check_in_time=ts_utc,
            check_in_device_time=normalize_ts(device_ts_utc) if device_ts_utc is not None else None,
            check_in_lat=lat,
            check_in_lon=lon,
            check_in_accuracy_m=accuracy_m,
            location_check_type=geofence.check_type,
            check_in_flags=dict(geofence.flags),
            created_at=ts_utc,
            updated_at=ts_utc,
        )
        .on_conflict_do_nothing(
            index_elements=["employee_id"],
            index_where=AttendanceSession.check_out_time.is_(None),
        )
        .returning(AttendanceSession.id)
    )
    new_session_id = db.execute(stmt).scalar()
    if new_session_id is None:
        db.rollback()
        existing = get_open_session(db, tenant_id=tenant_id, employee_id=employee.id)
        existing_id = existing.id if existing is not None else None
        raise ApiError(
            status_code=409,
            code="ALREADY_CHECKED_IN",
            message=f"An open attendance session already exists (session_id={existing_id}).",
        )
    db.commit()

    session_row = db.get(AttendanceSession, new_session_id)
    if session_row is None:  # pragma: no cover - row was just committed
        raise SessionNotFoundError(new_session_id)
    logger.info(
        "session_checked_in",
        extra={
            "tenant_id": tenant_id,
            "employee_id": employee.id,
            "session_id": session_row.id,
            "location_check_type": geofence.check_type.value,
        },
    )
    return session_row


def close_session_if_open(
    db: Session,
    *,
    tenant_id: int,
    session_id: int,
    closed_at_utc: datetime,
    lat: float | None,
    lon: float | None,
    accuracy_m: float | None,
    checkout_type: CheckoutType,
    checkout_reason: str | None,
    device_ts_utc: datetime | None = None,
) -> AttendanceSession | None:
    """Close the session in one conditional UPDATE guarded by ``check_out_time IS NULL``.

    Returns the closed row, or ``None`` if another writer closed it first. The
    caller owns the transaction and must commit.
    """
    session_row = db.scalar(
        select(AttendanceSession).where(
            AttendanceSession.id == session_id,
            AttendanceSession.tenant_id == tenant_id,
        )
    )
    if session_row is None:
        raise SessionNotFoundError(session_id)

    closed_at = normalize_ts(closed_at_utc)
    result = db.execute(
        update(AttendanceSession)
        .where(
            AttendanceSession.id == session_id,
            AttendanceSession.tenant_id == tenant_id,
            AttendanceSession.check_out_time.is_(None),
        )
        .values(
            check_out_time=closed_at,
            check_out_device_time=normalize_ts(device_ts_utc) if device_ts_utc is not None else closed_at,
            check_out_lat=lat,
            check_out_lon=lon,
            check_out_accuracy_m=accuracy_m,
            checkout_type=checkout_type,
            checkout_reason=checkout_reason,
            duration_seconds=compute_duration_seconds(session_row.check_in_time, closed_at),
            updated_at=closed_at,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return None

    db.refresh(session_row)
    return session_row


def check_out(
    db: Session,
    *,
    tenant_id: int,
    employee_id: int,
    session_id: int,
    lat: float | None,
    lon: float | None,
    accuracy_m: float | None,
    device_ts_utc: datetime | None = None,
    checkout_reason: str | None = None,
    now_utc: datetime | None = None,
) -> AttendanceSession:
    require_tenant_employee(db, tenant_id=tenant_id, employee_id=employee_id, require_active=False)
    require_tenant_session(db, tenant_id=tenant_id, session_id=session_id, employee_id=employee_id)
    ts_utc = normalize_ts(now_utc)

    closed = close_session_if_open(
        db,
        tenant_id=tenant_id,
        session_id=session_id,
        closed_at_utc=ts_utc,
        lat=lat,
        lon=lon,
        accuracy_m=accuracy_m,
        checkout_type=CheckoutType.MANUAL,
        checkout_reason=checkout_reason,
        device_ts_utc=device_ts_utc,
    )
    if closed is None:
        db.rollback()
        raise ApiError(
            status_code=409,
            code="ALREADY_CHECKED_OUT",
            message="Attendance session is already closed.",
        )

    # A live countdown on this session can no longer fire.
    cancel_live_pending_for_session(
        db,
        tenant_id=tenant_id,
        employee_id=employee_id,
        session_id=session_id,
        cancel_reason=CancelReason.ALREADY_CLOSED,
        now_utc=ts_utc,
    )
    db.commit()
    db.refresh(closed)
    logger.info(
        "session_checked_out",
        extra={
            "tenant_id": tenant_id,
            "employee_id": employee_id,
            "session_id": session_id,
            "checkout_type": CheckoutType.MANUAL.value,
            "duration_seconds": closed.duration_seconds,
        },
    )
    return closed
