from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone

from geoattend.models import Branch, FreeTask, LocationCheckType
from geoattend.services.location import distance_m, evaluate_geofence, free_task_covers

NOW = datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)


def _branch() -> Branch:
    return Branch(id=1, tenant_id=1, name="HQ", latitude=41.0, longitude=29.0, geofence_radius_m=120)


def _free_task(*, start_offset_minutes: int = -30, end_offset_minutes: int = 30, is_active: bool = True) -> FreeTask:
    return FreeTask(
        id=7,
        tenant_id=1,
        employee_id=3,
        start_at=NOW + timedelta(minutes=start_offset_minutes),
        end_at=NOW + timedelta(minutes=end_offset_minutes),
        is_active=is_active,
    )


class LocationServiceTests(unittest.TestCase):
    def test_distance_m_zero_for_same_point(self) -> None:
        value = distance_m(41.0, 29.0, 41.0, 29.0)
        self.assertAlmostEqual(value, 0.0, places=6)

    def test_distance_m_known_reference(self) -> None:
        # Approximate distance for 1 degree longitude on equator.
        value = distance_m(0.0, 0.0, 0.0, 1.0)
        self.assertAlmostEqual(value, 111_195, delta=300)

    def test_inside_radius_with_good_accuracy(self) -> None:
        result = evaluate_geofence(_branch(), None, 41.0005, 29.0, 12.0, max_accuracy_meters=80, reference_ts_utc=NOW)

        self.assertTrue(result.inside_area)
        self.assertTrue(result.signal_usable)
        self.assertEqual(result.check_type, LocationCheckType.BRANCH)
        self.assertEqual(result.flags["radius_m"], 120)

    def test_outside_radius(self) -> None:
        result = evaluate_geofence(_branch(), None, 41.01, 29.0, 12.0, max_accuracy_meters=80, reference_ts_utc=NOW)

        self.assertFalse(result.inside_area)
        self.assertTrue(result.signal_usable)
        self.assertGreater(result.flags["distance_m"], 1000)

    def test_poor_accuracy_marks_signal_unusable(self) -> None:
        result = evaluate_geofence(_branch(), None, 41.0, 29.0, 250.0, max_accuracy_meters=80, reference_ts_utc=NOW)

        self.assertFalse(result.signal_usable)
        self.assertTrue(result.flags["accuracy_exceeded"])

    def test_missing_coordinates(self) -> None:
        result = evaluate_geofence(_branch(), None, None, None, None, max_accuracy_meters=80, reference_ts_utc=NOW)

        self.assertFalse(result.inside_area)
        self.assertFalse(result.signal_usable)
        self.assertEqual(result.flags["reason"], "no_location_payload")

    def test_active_free_task_counts_as_inside_anywhere(self) -> None:
        result = evaluate_geofence(
            _branch(),
            _free_task(),
            40.0,
            30.0,
            20.0,
            max_accuracy_meters=80,
            reference_ts_utc=NOW,
        )

        self.assertTrue(result.inside_area)
        self.assertEqual(result.check_type, LocationCheckType.FREE_TASK)
        self.assertEqual(result.flags["free_task_id"], 7)

    def test_free_task_window_bounds(self) -> None:
        self.assertFalse(free_task_covers(_free_task(start_offset_minutes=5, end_offset_minutes=60), NOW))
        self.assertFalse(free_task_covers(_free_task(start_offset_minutes=-60, end_offset_minutes=0), NOW))
        self.assertFalse(free_task_covers(_free_task(is_active=False), NOW))
        self.assertTrue(free_task_covers(_free_task(), NOW.replace(tzinfo=None)))

    def test_missing_branch_reports_outside(self) -> None:
        result = evaluate_geofence(None, None, 41.0, 29.0, 5.0, max_accuracy_meters=80, reference_ts_utc=NOW)

        self.assertFalse(result.inside_area)
        self.assertEqual(result.flags["reason"], "branch_not_set")


if __name__ == "__main__":
    unittest.main()
