from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from geoattend.db import dialect_insert
from geoattend.models import AutoCloseoutSettings, CancelReason
from geoattend.services.clock import utcnow
from geoattend.services.pending_closeout import cancel_live_pending_for_tenant

logger = logging.getLogger("geoattend.closeout")

DEFAULT_GRACE_SECONDS = 900
DEFAULT_CONFIRM_SAMPLES = 3
DEFAULT_SAMPLE_INTERVAL_SECONDS = 15
DEFAULT_MAX_ACCURACY_METERS = 80


@dataclass(frozen=True, slots=True)
class AutoCloseoutConfig:
    enabled: bool = False
    grace_seconds: int = DEFAULT_GRACE_SECONDS
    confirm_samples: int = DEFAULT_CONFIRM_SAMPLES
    sample_interval_seconds: int = DEFAULT_SAMPLE_INTERVAL_SECONDS
    max_accuracy_meters: int = DEFAULT_MAX_ACCURACY_METERS
    configured: bool = False

    @classmethod
    def disabled(cls) -> AutoCloseoutConfig:
        return cls()

    @classmethod
    def from_row(cls, row: AutoCloseoutSettings) -> AutoCloseoutConfig:
        return cls(
            enabled=bool(row.enabled),
            grace_seconds=int(row.grace_seconds),
            confirm_samples=int(row.confirm_samples),
            sample_interval_seconds=int(row.sample_interval_seconds),
            max_accuracy_meters=int(row.max_accuracy_meters),
            configured=True,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def load_closeout_config(db: Session, *, tenant_id: int) -> AutoCloseoutConfig:
    row = db.scalar(select(AutoCloseoutSettings).where(AutoCloseoutSettings.tenant_id == tenant_id))
    if row is None:
        logger.info("closeout_config_missing", extra={"tenant_id": tenant_id})
        return AutoCloseoutConfig.disabled()
    return AutoCloseoutConfig.from_row(row)


def upsert_closeout_config(
    db: Session,
    *,
    tenant_id: int,
    enabled: bool,
    grace_seconds: int,
    confirm_samples: int,
    sample_interval_seconds: int,
    max_accuracy_meters: int,
) -> AutoCloseoutConfig:
    values = {
        "enabled": enabled,
        "grace_seconds": grace_seconds,
        "confirm_samples": confirm_samples,
        "sample_interval_seconds": sample_interval_seconds,
        "max_accuracy_meters": max_accuracy_meters,
        "updated_at": utcnow(),
    }
    stmt = dialect_insert(db, AutoCloseoutSettings).values(tenant_id=tenant_id, **values)
    stmt = stmt.on_conflict_do_update(index_elements=["tenant_id"], set_=values)
    db.execute(stmt)
    if not enabled:
        # Countdowns never survive a disabled period; re-enabling starts every episode fresh.
        cancel_live_pending_for_tenant(
            db,
            tenant_id=tenant_id,
            cancel_reason=CancelReason.DISABLED,
            now_utc=values["updated_at"],
        )
    db.commit()
    return load_closeout_config(db, tenant_id=tenant_id)
