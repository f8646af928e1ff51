from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Any

from fastapi import Request
from sqlalchemy.orm import Session

from geoattend.models import AuditActorType, AuditLog
from geoattend.services.clock import utcnow

logger = logging.getLogger("geoattend.audit")


class AuditAction(str, enum.Enum):
    ATTENDANCE_CHECKIN = "ATTENDANCE_CHECKIN"
    ATTENDANCE_CHECKOUT = "ATTENDANCE_CHECKOUT"
    ATTENDANCE_AUTO_CHECKOUT = "ATTENDANCE_AUTO_CHECKOUT"
    ATTENDANCE_ADMIN_CHECKOUT = "ATTENDANCE_ADMIN_CHECKOUT"
    AUTO_CLOSEOUT_SETTINGS_UPDATED = "AUTO_CLOSEOUT_SETTINGS_UPDATED"
    ADMIN_LOGIN_SUCCESS = "ADMIN_LOGIN_SUCCESS"
    ADMIN_LOGIN_FAIL = "ADMIN_LOGIN_FAIL"


@dataclass(frozen=True, slots=True)
class AuditContext:
    ip: str | None = None
    user_agent: str | None = None
    request_id: str | None = None


def client_ip(request: Request) -> str | None:
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    if request.client:
        return request.client.host
    return None


def audit_context(request: Request) -> AuditContext:
    return AuditContext(
        ip=client_ip(request),
        user_agent=request.headers.get("user-agent"),
        request_id=getattr(request.state, "request_id", None),
    )


def log_audit(
    db: Session,
    *,
    tenant_id: int | None,
    actor_type: AuditActorType,
    actor_id: str,
    action: AuditAction,
    success: bool = True,
    entity_type: str | None = None,
    entity_id: str | int | None = None,
    details: dict[str, Any] | None = None,
    context: AuditContext | None = None,
) -> None:
    """Persist one audit row in its own commit.

    Audit writes never fail the caller: the row is rolled back and the failure
    is logged instead.
    """
    context = context or AuditContext()
    payload = details or {}
    db.add(
        AuditLog(
            tenant_id=tenant_id,
            ts_utc=utcnow(),
            actor_type=actor_type,
            actor_id=actor_id,
            action=action.value,
            entity_type=entity_type,
            entity_id=str(entity_id) if entity_id is not None else None,
            ip=context.ip,
            user_agent=context.user_agent,
            success=success,
            details=payload,
        )
    )
    log_fields = {
        "request_id": context.request_id,
        "tenant_id": tenant_id,
        "action": action.value,
        "actor_type": actor_type.value,
        "actor_id": actor_id,
    }
    try:
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("audit_log_write_failed", extra=log_fields)
        return

    logger.info(
        "audit_event",
        extra={
            **log_fields,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "success": success,
            "details": payload,
        },
    )
