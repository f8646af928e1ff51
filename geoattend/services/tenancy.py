from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from geoattend.errors import (
    ApiError,
    EmployeeInactiveError,
    EmployeeNotFoundError,
    SessionNotFoundError,
    TenantMismatchError,
)
from geoattend.models import AttendanceSession, Branch, Employee, FreeTask
from geoattend.services.clock import normalize_ts


def resolve_employee_tenant(db: Session, employee_id: int) -> Employee:
    """Load an employee by id alone and return it with its owning tenant id.

    This is the only lookup that is not already scoped to a tenant; every call
    after it uses ``employee.tenant_id``.
    """
    employee = db.get(Employee, employee_id)
    if employee is None:
        raise EmployeeNotFoundError(employee_id)
    if not employee.is_active:
        raise EmployeeInactiveError(employee_id)
    if employee.tenant is not None and not employee.tenant.is_active:
        raise EmployeeInactiveError(employee_id)
    return employee


def require_tenant_employee(
    db: Session,
    *,
    tenant_id: int,
    employee_id: int,
    require_active: bool = True,
) -> Employee:
    employee = db.get(Employee, employee_id)
    if employee is None:
        raise EmployeeNotFoundError(employee_id)
    if employee.tenant_id != tenant_id:
        raise TenantMismatchError("Employee", employee_id)
    if require_active and not employee.is_active:
        raise EmployeeInactiveError(employee_id)
    return employee


def require_tenant_session(
    db: Session,
    *,
    tenant_id: int,
    session_id: int,
    employee_id: int | None = None,
) -> AttendanceSession:
    session_row = db.get(AttendanceSession, session_id)
    if session_row is None:
        raise SessionNotFoundError(session_id)
    if session_row.tenant_id != tenant_id:
        raise TenantMismatchError("AttendanceSession", session_id)
    if employee_id is not None and session_row.employee_id != employee_id:
        raise ApiError(
            status_code=403,
            code="SESSION_EMPLOYEE_MISMATCH",
            message="Attendance session belongs to another employee.",
        )
    return session_row


def resolve_employee_branch(db: Session, *, tenant_id: int, employee: Employee) -> Branch | None:
    if employee.branch_id is None:
        return None
    return db.scalar(
        select(Branch).where(
            Branch.id == employee.branch_id,
            Branch.tenant_id == tenant_id,
            Branch.is_active.is_(True),
        )
    )


def resolve_active_free_task(
    db: Session,
    *,
    tenant_id: int,
    employee_id: int,
    reference_ts_utc: datetime,
) -> FreeTask | None:
    reference = normalize_ts(reference_ts_utc)
    return db.scalar(
        select(FreeTask)
        .where(
            FreeTask.tenant_id == tenant_id,
            FreeTask.employee_id == employee_id,
            FreeTask.is_active.is_(True),
            FreeTask.start_at <= reference,
            FreeTask.end_at > reference,
        )
        .order_by(FreeTask.start_at.desc(), FreeTask.id.desc())
    )
