"""Lifecycle of the per-session auto-closeout countdown.

A countdown row exists in status ``PENDING`` only while a location problem is
active. Every transition here is a single conditional statement:

* creation is ``INSERT ... ON CONFLICT DO NOTHING`` against the partial unique
  index ``(employee_id, session_id) WHERE status = 'PENDING'``;
* cancel/done are ``UPDATE ... WHERE status = 'PENDING'`` and report whether
  this caller won the transition.

Terminal rows (``CANCELLED``/``DONE``) are history. They are never consulted
when timing a new episode.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import select, text, update
from sqlalchemy.orm import Session

from geoattend.db import dialect_insert
from geoattend.models import (
    CancelReason,
    CloseoutReason,
    PendingAutoCloseout,
    PendingCloseoutStatus,
)
from geoattend.services.clock import normalize_ts

logger = logging.getLogger("geoattend.closeout")

LIVE_PENDING_INDEX_WHERE = text("status = 'PENDING'")


class TransitionKind(str, enum.Enum):
    OK = "OK"
    PENDING_CREATED = "PENDING_CREATED"
    PENDING_CANCELLED = "PENDING_CANCELLED"
    PENDING_ACTIVE = "PENDING_ACTIVE"
    PENDING_EXPIRED = "PENDING_EXPIRED"


@dataclass(frozen=True, slots=True)
class Transition:
    kind: TransitionKind
    pending: PendingAutoCloseout | None = None
    reason: str | None = None
    ends_at: datetime | None = None
    seconds_remaining: int | None = None


def classify_problem(*, inside_area: bool, signal_usable: bool) -> CloseoutReason | None:
    # A blocked signal makes the inside/outside flag meaningless, so it wins.
    if not signal_usable:
        return CloseoutReason.GPS_BLOCKED
    if not inside_area:
        return CloseoutReason.OUTSIDE_BRANCH
    return None


def seconds_until(ends_at: datetime, now_utc: datetime) -> int:
    remaining = (normalize_ts(ends_at) - normalize_ts(now_utc)).total_seconds()
    return max(0, int(remaining))


def find_live_pending(
    db: Session,
    *,
    tenant_id: int,
    employee_id: int,
    session_id: int,
) -> PendingAutoCloseout | None:
    return db.scalar(
        select(PendingAutoCloseout)
        .where(
            PendingAutoCloseout.tenant_id == tenant_id,
            PendingAutoCloseout.employee_id == employee_id,
            PendingAutoCloseout.session_id == session_id,
            PendingAutoCloseout.status == PendingCloseoutStatus.PENDING,
        )
        .execution_options(populate_existing=True)
    )


def list_pending(
    db: Session,
    *,
    tenant_id: int,
    status: PendingCloseoutStatus | None = None,
    employee_id: int | None = None,
    limit: int = 200,
) -> list[PendingAutoCloseout]:
    stmt = select(PendingAutoCloseout).where(PendingAutoCloseout.tenant_id == tenant_id)
    if status is not None:
        stmt = stmt.where(PendingAutoCloseout.status == status)
    if employee_id is not None:
        stmt = stmt.where(PendingAutoCloseout.employee_id == employee_id)
    stmt = stmt.order_by(PendingAutoCloseout.created_at.desc(), PendingAutoCloseout.id.desc()).limit(limit)
    return list(db.scalars(stmt).all())


def open_pending_if_absent(
    db: Session,
    *,
    tenant_id: int,
    employee_id: int,
    session_id: int,
    reason: CloseoutReason,
    grace_seconds: int,
    now_utc: datetime,
) -> PendingAutoCloseout | None:
    """Start a fresh countdown unless a live one already exists.

    ``ends_at`` is always ``now + grace_seconds``. Returns the new row, or
    ``None`` when a concurrent caller already holds the live slot.
    """
    created_at = normalize_ts(now_utc)
    stmt = (
        dialect_insert(db, PendingAutoCloseout)
        .values(
            tenant_id=tenant_id,
            employee_id=employee_id,
            session_id=session_id,
            reason=reason,
            ends_at=created_at + timedelta(seconds=grace_seconds),
            status=PendingCloseoutStatus.PENDING,
            created_at=created_at,
            session_already_closed=False,
        )
        .on_conflict_do_nothing(
            index_elements=["employee_id", "session_id"],
            index_where=LIVE_PENDING_INDEX_WHERE,
        )
        .returning(PendingAutoCloseout.id)
    )
    pending_id = db.execute(stmt).scalar()
    if pending_id is None:
        return None
    return db.get(PendingAutoCloseout, pending_id)


def cancel_pending(
    db: Session,
    *,
    pending_id: int,
    tenant_id: int,
    cancel_reason: CancelReason,
    now_utc: datetime,
) -> bool:
    result = db.execute(
        update(PendingAutoCloseout)
        .where(
            PendingAutoCloseout.id == pending_id,
            PendingAutoCloseout.tenant_id == tenant_id,
            PendingAutoCloseout.status == PendingCloseoutStatus.PENDING,
        )
        .values(
            status=PendingCloseoutStatus.CANCELLED,
            cancelled_at=normalize_ts(now_utc),
            cancel_reason=cancel_reason,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def mark_pending_done(
    db: Session,
    *,
    pending_id: int,
    tenant_id: int,
    now_utc: datetime,
) -> bool:
    result = db.execute(
        update(PendingAutoCloseout)
        .where(
            PendingAutoCloseout.id == pending_id,
            PendingAutoCloseout.tenant_id == tenant_id,
            PendingAutoCloseout.status == PendingCloseoutStatus.PENDING,
        )
        .values(
            status=PendingCloseoutStatus.DONE,
            done_at=normalize_ts(now_utc),
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def flag_session_already_closed(db: Session, *, pending_id: int, tenant_id: int) -> None:
    db.execute(
        update(PendingAutoCloseout)
        .where(
            PendingAutoCloseout.id == pending_id,
            PendingAutoCloseout.tenant_id == tenant_id,
        )
        .values(session_already_closed=True)
        .execution_options(synchronize_session=False)
    )


def cancel_live_pending_for_session(
    db: Session,
    *,
    tenant_id: int,
    employee_id: int,
    session_id: int,
    cancel_reason: CancelReason,
    now_utc: datetime,
) -> PendingAutoCloseout | None:
    live = find_live_pending(db, tenant_id=tenant_id, employee_id=employee_id, session_id=session_id)
    if live is None:
        return None
    if not cancel_pending(
        db,
        pending_id=live.id,
        tenant_id=tenant_id,
        cancel_reason=cancel_reason,
        now_utc=now_utc,
    ):
        return None
    logger.info(
        "pending_cancelled",
        extra={
            "tenant_id": tenant_id,
            "employee_id": employee_id,
            "session_id": session_id,
            "pending_id": live.id,
            "cancel_reason": cancel_reason.value,
        },
    )
    return live


def cancel_live_pending_for_tenant(
    db: Session,
    *,
    tenant_id: int,
    cancel_reason: CancelReason,
    now_utc: datetime,
) -> int:
    """Cancel every live countdown of a tenant in one statement.

    Does not commit; the caller owns the transaction.
    """
    result = db.execute(
        update(PendingAutoCloseout)
        .where(
            PendingAutoCloseout.tenant_id == tenant_id,
            PendingAutoCloseout.status == PendingCloseoutStatus.PENDING,
        )
        .values(
            status=PendingCloseoutStatus.CANCELLED,
            cancelled_at=normalize_ts(now_utc),
            cancel_reason=cancel_reason,
        )
        .execution_options(synchronize_session=False)
    )
    cancelled = int(result.rowcount or 0)
    if cancelled:
        logger.info(
            "pending_cancelled_for_tenant",
            extra={
                "tenant_id": tenant_id,
                "cancelled": cancelled,
                "cancel_reason": cancel_reason.value,
            },
        )
    return cancelled


def advance_pending_state(
    db: Session,
    *,
    tenant_id: int,
    employee_id: int,
    session_id: int,
    problem: CloseoutReason | None,
    grace_seconds: int,
    now_utc: datetime,
) -> Transition:
    """Apply one heartbeat's worth of the countdown state machine.

    Order matters: recovery is decided before any expiry check, so an employee
    who is back inside never gets closed out by a deadline that passed while
    they were returning. Expiry is only reported here; the caller hands the
    row to the executor in the same transaction.
    """
    now = normalize_ts(now_utc)
    live = find_live_pending(db, tenant_id=tenant_id, employee_id=employee_id, session_id=session_id)

    if problem is None:
        if live is None:
            return Transition(kind=TransitionKind.OK)
        if cancel_pending(
            db,
            pending_id=live.id,
            tenant_id=tenant_id,
            cancel_reason=CancelReason.RECOVERED,
            now_utc=now,
        ):
            logger.info(
                "pending_cancelled",
                extra={
                    "tenant_id": tenant_id,
                    "employee_id": employee_id,
                    "session_id": session_id,
                    "pending_id": live.id,
                    "cancel_reason": CancelReason.RECOVERED.value,
                },
            )
            return Transition(
                kind=TransitionKind.PENDING_CANCELLED,
                pending=live,
                reason=CancelReason.RECOVERED.value,
            )
        # Someone else settled the row between our read and our update.
        logger.info(
            "pending_cancel_lost_race",
            extra={"tenant_id": tenant_id, "employee_id": employee_id, "pending_id": live.id},
        )
        return Transition(kind=TransitionKind.OK)

    if live is None:
        created = open_pending_if_absent(
            db,
            tenant_id=tenant_id,
            employee_id=employee_id,
            session_id=session_id,
            reason=problem,
            grace_seconds=grace_seconds,
            now_utc=now,
        )
        if created is not None:
            logger.info(
                "pending_created",
                extra={
                    "tenant_id": tenant_id,
                    "employee_id": employee_id,
                    "session_id": session_id,
                    "pending_id": created.id,
                    "reason": problem.value,
                    "ends_at": normalize_ts(created.ends_at).isoformat(),
                },
            )
            return Transition(
                kind=TransitionKind.PENDING_CREATED,
                pending=created,
                reason=problem.value,
                ends_at=normalize_ts(created.ends_at),
                seconds_remaining=grace_seconds,
            )
        live = find_live_pending(db, tenant_id=tenant_id, employee_id=employee_id, session_id=session_id)
        logger.info(
            "pending_create_lost_race",
            extra={
                "tenant_id": tenant_id,
                "employee_id": employee_id,
                "session_id": session_id,
                "winner_pending_id": live.id if live is not None else None,
            },
        )
        if live is None:
            # The winner was settled before we could read it; the next sample starts over.
            return Transition(kind=TransitionKind.OK)

    ends_at = normalize_ts(live.ends_at)
    if now >= ends_at:
        return Transition(
            kind=TransitionKind.PENDING_EXPIRED,
            pending=live,
            reason=live.reason.value,
            ends_at=ends_at,
            seconds_remaining=0,
        )

    return Transition(
        kind=TransitionKind.PENDING_ACTIVE,
        pending=live,
        reason=live.reason.value,
        ends_at=ends_at,
        seconds_remaining=seconds_until(ends_at, now),
    )
