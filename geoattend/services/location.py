from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from math import asin, cos, radians, sin, sqrt
from typing import Any

from geoattend.models import Branch, FreeTask, LocationCheckType
from geoattend.services.clock import normalize_ts


@dataclass(frozen=True, slots=True)
class GeofenceResult:
    inside_area: bool
    signal_usable: bool
    check_type: LocationCheckType
    flags: dict[str, Any] = field(default_factory=dict)


def distance_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    earth_radius_m = 6371000.0

    lat1_rad = radians(lat1)
    lon1_rad = radians(lon1)
    lat2_rad = radians(lat2)
    lon2_rad = radians(lon2)

    delta_lat = lat2_rad - lat1_rad
    delta_lon = lon2_rad - lon1_rad

    a = sin(delta_lat / 2) ** 2 + cos(lat1_rad) * cos(lat2_rad) * sin(delta_lon / 2) ** 2
    c = 2 * asin(sqrt(a))
    return earth_radius_m * c


def free_task_covers(free_task: FreeTask | None, reference_ts_utc: datetime) -> bool:
    if free_task is None or not free_task.is_active:
        return False
    reference = normalize_ts(reference_ts_utc)
    return normalize_ts(free_task.start_at) <= reference < normalize_ts(free_task.end_at)


def evaluate_geofence(
    branch: Branch | None,
    free_task: FreeTask | None,
    lat: float | None,
    lon: float | None,
    accuracy_m: float | None,
    *,
    max_accuracy_meters: int | None,
    reference_ts_utc: datetime,
) -> GeofenceResult:
    """Classify one location sample into (inside permitted area, signal usable).

    An active free-roaming task window counts as inside regardless of position;
    the signal still has to be usable.
    """
    if lat is None or lon is None:
        return GeofenceResult(
            inside_area=False,
            signal_usable=False,
            check_type=LocationCheckType.BRANCH,
            flags={"reason": "no_location_payload"},
        )

    flags: dict[str, Any] = {}
    signal_usable = True
    if accuracy_m is not None:
        flags["accuracy_m"] = round(accuracy_m, 2)
        if max_accuracy_meters is not None and accuracy_m > max_accuracy_meters:
            signal_usable = False
            flags["accuracy_exceeded"] = True
            flags["max_accuracy_m"] = max_accuracy_meters

    if free_task_covers(free_task, reference_ts_utc):
        flags["free_task_id"] = free_task.id  # type: ignore[union-attr]
        return GeofenceResult(
            inside_area=True,
            signal_usable=signal_usable,
            check_type=LocationCheckType.FREE_TASK,
            flags=flags,
        )

    if branch is None:
        flags["reason"] = "branch_not_set"
        return GeofenceResult(
            inside_area=False,
            signal_usable=signal_usable,
            check_type=LocationCheckType.BRANCH,
            flags=flags,
        )

    distance_value = distance_m(branch.latitude, branch.longitude, lat, lon)
    flags["distance_m"] = round(distance_value, 2)
    flags["radius_m"] = branch.geofence_radius_m
    return GeofenceResult(
        inside_area=distance_value <= branch.geofence_radius_m,
        signal_usable=signal_usable,
        check_type=LocationCheckType.BRANCH,
        flags=flags,
    )
