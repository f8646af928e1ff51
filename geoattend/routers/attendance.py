from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from geoattend.audit import AuditAction, audit_context, log_audit
from geoattend.db import get_db
from geoattend.logging_utils import bind_tenant
from geoattend.models import AuditActorType
from geoattend.schemas import (
    AttendanceSessionRead,
    CheckinRequest,
    CheckoutRequest,
    ClientCloseoutConfigRead,
    HeartbeatRequest,
    HeartbeatResponse,
)
from geoattend.services.closeout_config import load_closeout_config
from geoattend.services.heartbeat import record_heartbeat
from geoattend.services.sessions import check_in, check_out
from geoattend.services.tenancy import resolve_employee_tenant

router = APIRouter(tags=["attendance"])


def _resolve_tenant(request: Request, db: Session, employee_id: int) -> int:
    request.state.actor = "employee"
    request.state.actor_id = str(employee_id)
    employee = resolve_employee_tenant(db, employee_id)
    request.state.tenant_id = employee.tenant_id
    bind_tenant(employee.tenant_id)
    return employee.tenant_id


@router.post("/api/attendance/checkin", response_model=AttendanceSessionRead)
def checkin(
    payload: CheckinRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> AttendanceSessionRead:
    tenant_id = _resolve_tenant(request, db, payload.employee_id)
    session_row = check_in(
        db,
        tenant_id=tenant_id,
        employee_id=payload.employee_id,
        lat=payload.lat,
        lon=payload.lon,
        accuracy_m=payload.accuracy_m,
        device_ts_utc=payload.device_ts_utc,
    )
    response = AttendanceSessionRead.model_validate(session_row)
    log_audit(
        db,
        tenant_id=tenant_id,
        actor_type=AuditActorType.EMPLOYEE,
        actor_id=str(payload.employee_id),
        action=AuditAction.ATTENDANCE_CHECKIN,
        entity_type="attendance_session",
        entity_id=response.id,
        details={
            "location_check_type": response.location_check_type.value,
            "flags": response.check_in_flags,
        },
        context=audit_context(request),
    )
    return response


@router.post("/api/attendance/checkout", response_model=AttendanceSessionRead)
def checkout(
    payload: CheckoutRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> AttendanceSessionRead:
    tenant_id = _resolve_tenant(request, db, payload.employee_id)
    session_row = check_out(
        db,
        tenant_id=tenant_id,
        employee_id=payload.employee_id,
        session_id=payload.session_id,
        lat=payload.lat,
        lon=payload.lon,
        accuracy_m=payload.accuracy_m,
        device_ts_utc=payload.device_ts_utc,
    )
    response = AttendanceSessionRead.model_validate(session_row)
    log_audit(
        db,
        tenant_id=tenant_id,
        actor_type=AuditActorType.EMPLOYEE,
        actor_id=str(payload.employee_id),
        action=AuditAction.ATTENDANCE_CHECKOUT,
        entity_type="attendance_session",
        entity_id=response.id,
        details={"duration_seconds": response.duration_seconds},
        context=audit_context(request),
    )
    return response


@router.post("/api/attendance/heartbeat", response_model=HeartbeatResponse)
def heartbeat(
    payload: HeartbeatRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> HeartbeatResponse:
    request.state.actor = "employee"
    request.state.actor_id = str(payload.employee_id)
    result = record_heartbeat(
        db,
        employee_id=payload.employee_id,
        session_id=payload.session_id,
        inside_area=payload.inside_area,
        signal_usable=payload.signal_usable,
        lat=payload.lat,
        lon=payload.lon,
        accuracy_m=payload.accuracy_m,
    )
    if result.auto_closeout_executed:
        log_audit(
            db,
            tenant_id=result.tenant_id,
            actor_type=AuditActorType.SYSTEM,
            actor_id="auto_closeout",
            action=AuditAction.ATTENDANCE_AUTO_CHECKOUT,
            entity_type="attendance_session",
            entity_id=payload.session_id,
            details={"reason": result.reason, "employee_id": payload.employee_id},
            context=audit_context(request),
        )
    return HeartbeatResponse(**result.to_dict())


@router.get("/api/attendance/closeout-config", response_model=ClientCloseoutConfigRead)
def closeout_config(
    request: Request,
    employee_id: int = Query(ge=1),
    db: Session = Depends(get_db),
) -> ClientCloseoutConfigRead:
    tenant_id = _resolve_tenant(request, db, employee_id)
    config = load_closeout_config(db, tenant_id=tenant_id)
    return ClientCloseoutConfigRead(
        enabled=config.enabled,
        confirm_samples=config.confirm_samples,
        sample_interval_seconds=config.sample_interval_seconds,
        max_accuracy_meters=config.max_accuracy_meters,
        grace_seconds=config.grace_seconds,
    )
