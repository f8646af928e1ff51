from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from geoattend.audit import AuditAction, audit_context, log_audit
from geoattend.db import get_db
from geoattend.errors import ApiError
from geoattend.logging_utils import bind_tenant
from geoattend.models import AuditActorType, PendingCloseoutStatus
from geoattend.schemas import (
    AdminAuthResponse,
    AdminCheckoutRequest,
    AdminLoginRequest,
    AttendanceSessionRead,
    AutoCloseoutSettingsRead,
    AutoCloseoutSettingsUpdate,
    LocationHeartbeatRead,
    PendingAutoCloseoutRead,
)
from geoattend.security import (
    authenticate_admin_user,
    create_access_token,
    ensure_login_attempt_allowed,
    register_login_failure,
    register_login_success,
    require_admin,
)
from geoattend.services.closeout_config import load_closeout_config, upsert_closeout_config
from geoattend.services.heartbeat import get_heartbeat_status
from geoattend.services.pending_closeout import list_pending
from geoattend.services.sessions import check_out, get_session, list_sessions

router = APIRouter(tags=["admin"])

ADMIN_CHECKOUT_REASON = "ADMIN_CHECKOUT"


def _tenant_id(claims: dict[str, Any]) -> int:
    return int(claims["tenant_id"])


def _actor_id(claims: dict[str, Any]) -> str:
    return str(claims.get("username") or claims.get("sub") or "admin")


@router.post("/api/admin/auth/login", response_model=AdminAuthResponse)
def admin_login(
    payload: AdminLoginRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> AdminAuthResponse:
    username = payload.username.strip()
    context = audit_context(request)
    ip = context.ip
    request.state.actor = "system"
    request.state.actor_id = "system"
    bind_tenant(payload.tenant_id)

    if ip:
        try:
            ensure_login_attempt_allowed(ip)
        except ApiError:
            log_audit(
                db,
                tenant_id=payload.tenant_id,
                actor_type=AuditActorType.SYSTEM,
                actor_id=username,
                action=AuditAction.ADMIN_LOGIN_FAIL,
                success=False,
                details={"reason": "TOO_MANY_ATTEMPTS"},
                context=context,
            )
            raise

    admin_user = authenticate_admin_user(
        db,
        tenant_id=payload.tenant_id,
        username=username,
        password=payload.password,
    )
    if admin_user is None:
        if ip:
            register_login_failure(ip)
        log_audit(
            db,
            tenant_id=payload.tenant_id,
            actor_type=AuditActorType.SYSTEM,
            actor_id=username,
            action=AuditAction.ADMIN_LOGIN_FAIL,
            success=False,
            details={"reason": "INVALID_CREDENTIALS"},
            context=context,
        )
        raise ApiError(
            status_code=401,
            code="INVALID_CREDENTIALS",
            message="Invalid credentials.",
        )

    if ip:
        register_login_success(ip)
    token, expires_in, _claims = create_access_token(
        admin_user_id=admin_user.id,
        username=admin_user.username,
        tenant_id=admin_user.tenant_id,
    )
    log_audit(
        db,
        tenant_id=payload.tenant_id,
        actor_type=AuditActorType.ADMIN,
        actor_id=username,
        action=AuditAction.ADMIN_LOGIN_SUCCESS,
        context=context,
    )
    return AdminAuthResponse(access_token=token, expires_in=expires_in)


@router.get("/api/admin/auto-closeout-settings", response_model=AutoCloseoutSettingsRead)
def get_auto_closeout_settings(
    claims: dict[str, Any] = Depends(require_admin),
    db: Session = Depends(get_db),
) -> AutoCloseoutSettingsRead:
    config = load_closeout_config(db, tenant_id=_tenant_id(claims))
    return AutoCloseoutSettingsRead(**config.to_dict())


@router.put("/api/admin/auto-closeout-settings", response_model=AutoCloseoutSettingsRead)
def update_auto_closeout_settings(
    payload: AutoCloseoutSettingsUpdate,
    request: Request,
    claims: dict[str, Any] = Depends(require_admin),
    db: Session = Depends(get_db),
) -> AutoCloseoutSettingsRead:
    tenant_id = _tenant_id(claims)
    config = upsert_closeout_config(
        db,
        tenant_id=tenant_id,
        enabled=payload.enabled,
        grace_seconds=payload.grace_seconds,
        confirm_samples=payload.confirm_samples,
        sample_interval_seconds=payload.sample_interval_seconds,
        max_accuracy_meters=payload.max_accuracy_meters,
    )
    log_audit(
        db,
        tenant_id=tenant_id,
        actor_type=AuditActorType.ADMIN,
        actor_id=_actor_id(claims),
        action=AuditAction.AUTO_CLOSEOUT_SETTINGS_UPDATED,
        entity_type="auto_closeout_settings",
        entity_id=tenant_id,
        details=payload.model_dump(),
        context=audit_context(request),
    )
    return AutoCloseoutSettingsRead(**config.to_dict())


@router.get("/api/admin/attendance-sessions", response_model=list[AttendanceSessionRead])
def list_attendance_sessions(
    employee_id: int | None = Query(default=None, ge=1),
    open_only: bool = Query(default=False),
    limit: int = Query(default=100, ge=1, le=500),
    claims: dict[str, Any] = Depends(require_admin),
    db: Session = Depends(get_db),
) -> list[AttendanceSessionRead]:
    rows = list_sessions(
        db,
        tenant_id=_tenant_id(claims),
        employee_id=employee_id,
        open_only=open_only,
        limit=limit,
    )
    return [AttendanceSessionRead.model_validate(row) for row in rows]


@router.post("/api/admin/attendance-sessions/{session_id}/checkout", response_model=AttendanceSessionRead)
def admin_checkout(
    session_id: int,
    payload: AdminCheckoutRequest,
    request: Request,
    claims: dict[str, Any] = Depends(require_admin),
    db: Session = Depends(get_db),
) -> AttendanceSessionRead:
    tenant_id = _tenant_id(claims)
    session_row = get_session(db, tenant_id=tenant_id, session_id=session_id)
    closed = check_out(
        db,
        tenant_id=tenant_id,
        employee_id=session_row.employee_id,
        session_id=session_id,
        lat=payload.lat,
        lon=payload.lon,
        accuracy_m=payload.accuracy_m,
        checkout_reason=payload.reason or ADMIN_CHECKOUT_REASON,
    )
    response = AttendanceSessionRead.model_validate(closed)
    log_audit(
        db,
        tenant_id=tenant_id,
        actor_type=AuditActorType.ADMIN,
        actor_id=_actor_id(claims),
        action=AuditAction.ATTENDANCE_ADMIN_CHECKOUT,
        entity_type="attendance_session",
        entity_id=session_id,
        details={"employee_id": response.employee_id, "reason": response.checkout_reason},
        context=audit_context(request),
    )
    return response


@router.get("/api/admin/pending-closeouts", response_model=list[PendingAutoCloseoutRead])
def list_pending_closeouts(
    status: PendingCloseoutStatus | None = Query(default=None),
    employee_id: int | None = Query(default=None, ge=1),
    limit: int = Query(default=200, ge=1, le=500),
    claims: dict[str, Any] = Depends(require_admin),
    db: Session = Depends(get_db),
) -> list[PendingAutoCloseoutRead]:
    rows = list_pending(
        db,
        tenant_id=_tenant_id(claims),
        status=status,
        employee_id=employee_id,
        limit=limit,
    )
    return [PendingAutoCloseoutRead.model_validate(row) for row in rows]


@router.get("/api/admin/heartbeats/{employee_id}", response_model=LocationHeartbeatRead)
def get_employee_heartbeat(
    employee_id: int,
    claims: dict[str, Any] = Depends(require_admin),
    db: Session = Depends(get_db),
) -> LocationHeartbeatRead:
    heartbeat = get_heartbeat_status(db, tenant_id=_tenant_id(claims), employee_id=employee_id)
    if heartbeat is None:
        raise ApiError(
            status_code=404,
            code="HEARTBEAT_NOT_FOUND",
            message="No heartbeat has been recorded for this employee.",
        )
    return LocationHeartbeatRead.model_validate(heartbeat)
