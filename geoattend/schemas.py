from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from geoattend.models import (
    CancelReason,
    CheckoutType,
    CloseoutReason,
    LocationCheckType,
    PendingCloseoutStatus,
)


class LocationSample(BaseModel):
    lat: float | None = Field(default=None, ge=-90, le=90)
    lon: float | None = Field(default=None, ge=-180, le=180)
    accuracy_m: float | None = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _validate_pair(self) -> "LocationSample":
        if (self.lat is None) != (self.lon is None):
            raise ValueError("lat and lon must be provided together.")
        return self


class CheckinRequest(LocationSample):
    employee_id: int = Field(ge=1)
    device_ts_utc: datetime | None = None


class CheckoutRequest(LocationSample):
    employee_id: int = Field(ge=1)
    session_id: int = Field(ge=1)
    device_ts_utc: datetime | None = None


class HeartbeatRequest(LocationSample):
    employee_id: int = Field(ge=1)
    session_id: int = Field(ge=1)
    inside_area: bool | None = None
    signal_usable: bool | None = None

    @model_validator(mode="after")
    def _validate_flags(self) -> "HeartbeatRequest":
        flags_missing = self.inside_area is None or self.signal_usable is None
        if flags_missing and self.lat is None:
            raise ValueError("Either inside_area and signal_usable or a location sample is required.")
        return self


class HeartbeatResponse(BaseModel):
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


class AttendanceSessionRead(BaseModel):
    id: int
    employee_id: int
    branch_id: int | None
    check_in_time: datetime
    check_in_lat: float | None
    check_in_lon: float | None
    check_in_accuracy_m: float | None
    location_check_type: LocationCheckType
    check_in_flags: dict[str, Any] = Field(default_factory=dict)
    check_out_time: datetime | None
    check_out_lat: float | None
    check_out_lon: float | None
    check_out_accuracy_m: float | None
    checkout_type: CheckoutType | None
    checkout_reason: str | None
    duration_seconds: int | None

    model_config = ConfigDict(from_attributes=True)


class AdminCheckoutRequest(LocationSample):
    reason: str | None = Field(default=None, max_length=100)


class AutoCloseoutSettingsRead(BaseModel):
    enabled: bool
    grace_seconds: int
    confirm_samples: int
    sample_interval_seconds: int
    max_accuracy_meters: int
    configured: bool = False


class AutoCloseoutSettingsUpdate(BaseModel):
    enabled: bool
    grace_seconds: int = Field(default=900, ge=60, le=3600)
    confirm_samples: int = Field(default=3, ge=1, le=10)
    sample_interval_seconds: int = Field(default=15, ge=5, le=60)
    max_accuracy_meters: int = Field(default=80, ge=10, le=500)


class ClientCloseoutConfigRead(BaseModel):
    enabled: bool
    confirm_samples: int
    sample_interval_seconds: int
    max_accuracy_meters: int
    grace_seconds: int


class PendingAutoCloseoutRead(BaseModel):
    id: int
    employee_id: int
    session_id: int
    reason: CloseoutReason
    ends_at: datetime
    status: PendingCloseoutStatus
    created_at: datetime
    cancelled_at: datetime | None
    cancel_reason: CancelReason | None
    done_at: datetime | None
    session_already_closed: bool

    model_config = ConfigDict(from_attributes=True)


class LocationHeartbeatRead(BaseModel):
    employee_id: int
    session_id: int | None
    last_seen_at: datetime
    inside_area: bool
    signal_usable: bool
    reason: str | None
    lat: float | None
    lon: float | None
    accuracy_m: float | None

    model_config = ConfigDict(from_attributes=True)


class AdminLoginRequest(BaseModel):
    tenant_id: int = Field(ge=1)
    username: str
    password: str


class AdminAuthResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
