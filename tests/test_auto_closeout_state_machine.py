from __future__ import annotations

import os
import tempfile
import unittest
from datetime import timedelta
from unittest.mock import patch

from sqlalchemy import func, select, update

from db_support import (
    BRANCH_LAT,
    BRANCH_LON,
    FAR_LAT,
    T0,
    make_file_session_factory,
    make_session_factory,
    seed_employee,
    seed_free_task,
    seed_open_session,
    seed_tenant,
)
from geoattend.models import (
    AttendanceSession,
    AutoCloseoutSettings,
    CancelReason,
    CheckoutType,
    CloseoutReason,
    LocationHeartbeat,
    PendingAutoCloseout,
    PendingCloseoutStatus,
)
from geoattend.services import pending_closeout
from geoattend.services.clock import normalize_ts
from geoattend.services.closeout_config import upsert_closeout_config
from geoattend.services.heartbeat import record_heartbeat
from geoattend.services.sessions import check_out


class AutoCloseoutStateMachineTests(unittest.TestCase):
    def setUp(self) -> None:
        self.factory = make_session_factory()
        self.db = self.factory()
        self.tenant = seed_tenant(self.db, name="Acme", enabled=True, grace_seconds=900)
        self.employee = seed_employee(self.db, tenant=self.tenant)
        self.session_row = seed_open_session(self.db, employee=self.employee)
        self.employee_id = self.employee.id
        self.session_id = self.session_row.id

    def tearDown(self) -> None:
        self.db.close()

    def _beat(self, *, seconds: int, inside: bool = True, usable: bool = True, **kwargs):  # type: ignore[no-untyped-def]
        return record_heartbeat(
            self.db,
            employee_id=self.employee_id,
            session_id=self.session_id,
            inside_area=inside,
            signal_usable=usable,
            now_utc=T0 + timedelta(seconds=seconds),
            **kwargs,
        )

    def _pending_rows(self) -> list[PendingAutoCloseout]:
        return list(
            self.db.scalars(
                select(PendingAutoCloseout)
                .where(PendingAutoCloseout.session_id == self.session_id)
                .order_by(PendingAutoCloseout.id.asc())
                .execution_options(populate_existing=True)
            ).all()
        )

    def _live_count(self) -> int:
        return int(
            self.db.scalar(
                select(func.count())
                .select_from(PendingAutoCloseout)
                .where(
                    PendingAutoCloseout.session_id == self.session_id,
                    PendingAutoCloseout.status == PendingCloseoutStatus.PENDING,
                )
            )
            or 0
        )

    def _session(self) -> AttendanceSession:
        row = self.db.get(AttendanceSession, self.session_id)
        self.db.refresh(row)
        return row

    def test_healthy_heartbeats_never_open_a_countdown(self) -> None:
        for second in range(0, 600, 15):
            result = self._beat(seconds=second, inside=True, usable=True)
            self.assertEqual(result.status, "OK")
            self.assertTrue(result.auto_closeout_enabled)

        self.assertEqual(self._pending_rows(), [])
        self.assertTrue(self._session().is_open)

    def test_outside_heartbeat_opens_countdown_with_full_grace(self) -> None:
        result = self._beat(seconds=0, inside=False)

        self.assertTrue(result.pending_created)
        self.assertEqual(result.reason, CloseoutReason.OUTSIDE_BRANCH.value)
        self.assertEqual(result.ends_at, T0 + timedelta(seconds=900))
        self.assertEqual(result.seconds_remaining, 900)
        rows = self._pending_rows()
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0].status, PendingCloseoutStatus.PENDING)

    def test_blocked_signal_wins_over_outside(self) -> None:
        result = self._beat(seconds=0, inside=False, usable=False)

        self.assertTrue(result.pending_created)
        self.assertEqual(result.reason, CloseoutReason.GPS_BLOCKED.value)

    def test_persisting_problem_reports_active_countdown_without_new_row(self) -> None:
        self._beat(seconds=0, inside=False)
        result = self._beat(seconds=300, inside=False)

        self.assertTrue(result.pending_active)
        self.assertFalse(result.pending_created)
        self.assertEqual(result.seconds_remaining, 600)
        self.assertEqual(result.ends_at, T0 + timedelta(seconds=900))
        self.assertEqual(len(self._pending_rows()), 1)

    def test_expired_countdown_closes_session_automatically(self) -> None:
        self._beat(seconds=0, inside=False)
        result = self._beat(seconds=901, inside=False, lat=FAR_LAT, lon=BRANCH_LON, accuracy_m=12.0)

        self.assertTrue(result.auto_closeout_executed)
        self.assertTrue(result.session_closed)
        self.assertEqual(result.reason, CloseoutReason.OUTSIDE_BRANCH.value)

        session_row = self._session()
        self.assertFalse(session_row.is_open)
        self.assertEqual(session_row.checkout_type, CheckoutType.AUTO)
        self.assertEqual(session_row.checkout_reason, CloseoutReason.OUTSIDE_BRANCH.value)
        self.assertEqual(session_row.duration_seconds, 901)
        self.assertAlmostEqual(session_row.check_out_lat or 0.0, FAR_LAT)

        rows = self._pending_rows()
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0].status, PendingCloseoutStatus.DONE)
        self.assertEqual(normalize_ts(rows[0].done_at), T0 + timedelta(seconds=901))
        self.assertFalse(rows[0].session_already_closed)

    def test_countdown_expires_exactly_at_deadline(self) -> None:
        self._beat(seconds=0, inside=False)
        result = self._beat(seconds=900, inside=False)

        self.assertTrue(result.auto_closeout_executed)
        self.assertFalse(result.pending_active)
        session_row = self._session()
        self.assertFalse(session_row.is_open)
        self.assertEqual(session_row.duration_seconds, 900)
        self.assertEqual(self._pending_rows()[0].status, PendingCloseoutStatus.DONE)

    def test_one_second_before_deadline_is_still_active(self) -> None:
        self._beat(seconds=0, inside=False)
        result = self._beat(seconds=899, inside=False)

        self.assertTrue(result.pending_active)
        self.assertEqual(result.seconds_remaining, 1)
        self.assertTrue(self._session().is_open)

    def test_disabling_cancels_live_countdown_and_reenabling_starts_fresh(self) -> None:
        settings = {"grace_seconds": 900, "confirm_samples": 3, "sample_interval_seconds": 15, "max_accuracy_meters": 80}
        self._beat(seconds=0, inside=False)

        upsert_closeout_config(self.db, tenant_id=self.tenant.id, enabled=False, **settings)
        self.assertEqual(self._live_count(), 0)
        disabled = self._beat(seconds=100, inside=True)
        self.assertFalse(disabled.auto_closeout_enabled)

        upsert_closeout_config(self.db, tenant_id=self.tenant.id, enabled=True, **settings)
        result = self._beat(seconds=3000, inside=False)

        self.assertTrue(result.pending_created)
        self.assertFalse(result.auto_closeout_executed)
        self.assertEqual(result.ends_at, T0 + timedelta(seconds=3000 + 900))
        self.assertEqual(result.seconds_remaining, 900)
        self.assertTrue(self._session().is_open)
        rows = self._pending_rows()
        self.assertEqual([row.status for row in rows], [PendingCloseoutStatus.CANCELLED, PendingCloseoutStatus.PENDING])
        self.assertEqual(rows[0].cancel_reason, CancelReason.DISABLED)

    def test_heartbeat_while_disabled_cancels_lingering_countdown(self) -> None:
        self._beat(seconds=0, inside=False)
        self.db.execute(
            update(AutoCloseoutSettings)
            .where(AutoCloseoutSettings.tenant_id == self.tenant.id)
            .values(enabled=False)
        )
        self.db.commit()

        result = self._beat(seconds=1200, inside=False)

        self.assertFalse(result.auto_closeout_enabled)
        self.assertFalse(result.auto_closeout_executed)
        self.assertTrue(self._session().is_open)
        rows = self._pending_rows()
        self.assertEqual(rows[0].status, PendingCloseoutStatus.CANCELLED)
        self.assertEqual(rows[0].cancel_reason, CancelReason.DISABLED)
        self.assertEqual(normalize_ts(rows[0].cancelled_at), T0 + timedelta(seconds=1200))

    def test_recovery_then_new_problem_starts_a_fresh_grace_period(self) -> None:
        self._beat(seconds=0, inside=False)
        recovered = self._beat(seconds=500, inside=True)
        self.assertTrue(recovered.pending_cancelled)
        self.assertEqual(recovered.reason, CancelReason.RECOVERED.value)

        again = self._beat(seconds=600, inside=False)

        self.assertTrue(again.pending_created)
        self.assertEqual(again.ends_at, T0 + timedelta(seconds=600 + 900))
        rows = self._pending_rows()
        self.assertEqual([row.status for row in rows], [PendingCloseoutStatus.CANCELLED, PendingCloseoutStatus.PENDING])
        self.assertEqual(rows[0].cancel_reason, CancelReason.RECOVERED)
        self.assertEqual(normalize_ts(rows[1].ends_at), T0 + timedelta(seconds=1500))

        # The original deadline (t+900) passing must not close the session.
        still_running = self._beat(seconds=1000, inside=False)
        self.assertTrue(still_running.pending_active)
        self.assertEqual(still_running.seconds_remaining, 500)
        self.assertTrue(self._session().is_open)

    def test_recovery_past_deadline_cancels_instead_of_closing(self) -> None:
        self._beat(seconds=0, inside=False)
        result = self._beat(seconds=1200, inside=True)

        self.assertTrue(result.pending_cancelled)
        self.assertFalse(result.auto_closeout_executed)
        self.assertTrue(self._session().is_open)
        self.assertEqual(self._pending_rows()[0].status, PendingCloseoutStatus.CANCELLED)

    def test_identical_heartbeats_cause_at_most_one_transition(self) -> None:
        first = self._beat(seconds=30, inside=False, lat=FAR_LAT, lon=BRANCH_LON, accuracy_m=9.0)
        heartbeat_first = self.db.scalar(
            select(LocationHeartbeat).where(LocationHeartbeat.employee_id == self.employee_id)
        )
        snapshot = (
            heartbeat_first.inside_area,
            heartbeat_first.signal_usable,
            heartbeat_first.reason,
            heartbeat_first.lat,
            normalize_ts(heartbeat_first.last_seen_at),
        )

        second = self._beat(seconds=30, inside=False, lat=FAR_LAT, lon=BRANCH_LON, accuracy_m=9.0)
        heartbeat_second = self.db.scalar(
            select(LocationHeartbeat)
            .where(LocationHeartbeat.employee_id == self.employee_id)
            .execution_options(populate_existing=True)
        )

        self.assertTrue(first.pending_created)
        self.assertTrue(second.pending_active)
        self.assertEqual(first.ends_at, second.ends_at)
        self.assertEqual(len(self._pending_rows()), 1)
        self.assertEqual(
            snapshot,
            (
                heartbeat_second.inside_area,
                heartbeat_second.signal_usable,
                heartbeat_second.reason,
                heartbeat_second.lat,
                normalize_ts(heartbeat_second.last_seen_at),
            ),
        )

    def test_concurrent_first_problem_leaves_exactly_one_live_row(self) -> None:
        real_find = pending_closeout.find_live_pending
        calls = {"count": 0}

        def _stale_first_read(db, **kwargs):  # type: ignore[no-untyped-def]
            calls["count"] += 1
            if calls["count"] == 1:
                # The competing request inserts between our read and our insert.
                pending_closeout.open_pending_if_absent(
                    db,
                    tenant_id=kwargs["tenant_id"],
                    employee_id=kwargs["employee_id"],
                    session_id=kwargs["session_id"],
                    reason=CloseoutReason.OUTSIDE_BRANCH,
                    grace_seconds=900,
                    now_utc=T0,
                )
                return None
            return real_find(db, **kwargs)

        with patch("geoattend.services.pending_closeout.find_live_pending", side_effect=_stale_first_read):
            result = self._beat(seconds=0, inside=False)

        self.assertFalse(result.pending_created)
        self.assertTrue(result.pending_active)
        self.assertEqual(self._live_count(), 1)

    def test_live_slot_rejects_second_insert(self) -> None:
        first = pending_closeout.open_pending_if_absent(
            self.db,
            tenant_id=self.tenant.id,
            employee_id=self.employee_id,
            session_id=self.session_id,
            reason=CloseoutReason.GPS_BLOCKED,
            grace_seconds=900,
            now_utc=T0,
        )
        second = pending_closeout.open_pending_if_absent(
            self.db,
            tenant_id=self.tenant.id,
            employee_id=self.employee_id,
            session_id=self.session_id,
            reason=CloseoutReason.OUTSIDE_BRANCH,
            grace_seconds=900,
            now_utc=T0 + timedelta(seconds=1),
        )
        self.db.commit()

        self.assertIsNotNone(first)
        self.assertIsNone(second)
        self.assertEqual(self._live_count(), 1)

    def test_manual_checkout_settles_live_countdown_and_blocks_new_ones(self) -> None:
        self._beat(seconds=0, inside=False)
        check_out(
            self.db,
            tenant_id=self.tenant.id,
            employee_id=self.employee_id,
            session_id=self.session_id,
            lat=BRANCH_LAT,
            lon=BRANCH_LON,
            accuracy_m=5.0,
            now_utc=T0 + timedelta(seconds=120),
        )

        rows = self._pending_rows()
        self.assertEqual(rows[0].status, PendingCloseoutStatus.CANCELLED)
        self.assertEqual(rows[0].cancel_reason, CancelReason.ALREADY_CLOSED)

        result = self._beat(seconds=1000, inside=False)
        self.assertEqual(result.status, "SESSION_CLOSED")
        self.assertTrue(result.session_closed)
        self.assertFalse(result.pending_created)
        self.assertEqual(self._live_count(), 0)
        self.assertEqual(self._session().checkout_type, CheckoutType.MANUAL)

    def test_free_task_window_never_triggers_closeout(self) -> None:
        seed_free_task(self.db, employee=self.employee, start_at=T0 - timedelta(minutes=5))

        result = self._beat(
            seconds=60,
            inside=None,
            usable=None,
            lat=FAR_LAT,
            lon=BRANCH_LON,
            accuracy_m=15.0,
        )

        self.assertEqual(result.status, "OK")
        self.assertEqual(self._pending_rows(), [])

    def test_server_side_evaluation_when_flags_are_omitted(self) -> None:
        result = self._beat(seconds=0, inside=None, usable=None, lat=FAR_LAT, lon=BRANCH_LON, accuracy_m=15.0)
        self.assertTrue(result.pending_created)
        self.assertEqual(result.reason, CloseoutReason.OUTSIDE_BRANCH.value)

        blocked = self._beat(seconds=15, inside=None, usable=None, lat=BRANCH_LAT, lon=BRANCH_LON, accuracy_m=500.0)
        self.assertTrue(blocked.pending_active)

        recovered = self._beat(seconds=30, inside=None, usable=None, lat=BRANCH_LAT, lon=BRANCH_LON, accuracy_m=8.0)
        self.assertTrue(recovered.pending_cancelled)


class ConcurrentCountdownCreationTests(unittest.TestCase):
    def setUp(self) -> None:
        tmp_dir = tempfile.TemporaryDirectory()
        self.addCleanup(tmp_dir.cleanup)
        self.factory = make_file_session_factory(os.path.join(tmp_dir.name, "attendance.db"))
        self.addCleanup(self.factory.kw["bind"].dispose)
        with self.factory() as db:
            tenant = seed_tenant(db, name="Acme", enabled=True, grace_seconds=900)
            employee = seed_employee(db, tenant=tenant)
            session_row = seed_open_session(db, employee=employee)
            self.keys = {"tenant_id": tenant.id, "employee_id": employee.id, "session_id": session_row.id}

    def test_two_sessions_reading_before_insert_leave_one_live_row(self) -> None:
        db_a = self.factory()
        db_b = self.factory()
        self.addCleanup(db_a.close)
        self.addCleanup(db_b.close)

        self.assertIsNone(pending_closeout.find_live_pending(db_a, **self.keys))
        self.assertIsNone(pending_closeout.find_live_pending(db_b, **self.keys))

        winner = pending_closeout.open_pending_if_absent(
            db_a,
            reason=CloseoutReason.OUTSIDE_BRANCH,
            grace_seconds=900,
            now_utc=T0,
            **self.keys,
        )
        db_a.commit()
        loser = pending_closeout.open_pending_if_absent(
            db_b,
            reason=CloseoutReason.GPS_BLOCKED,
            grace_seconds=900,
            now_utc=T0 + timedelta(seconds=1),
            **self.keys,
        )
        db_b.commit()

        self.assertIsNotNone(winner)
        self.assertIsNone(loser)
        with self.factory() as db:
            live = list(
                db.scalars(
                    select(PendingAutoCloseout).where(
                        PendingAutoCloseout.session_id == self.keys["session_id"],
                        PendingAutoCloseout.status == PendingCloseoutStatus.PENDING,
                    )
                ).all()
            )
        self.assertEqual(len(live), 1)
        self.assertEqual(live[0].reason, CloseoutReason.OUTSIDE_BRANCH)


class DisabledAutoCloseoutTests(unittest.TestCase):
    def setUp(self) -> None:
        self.factory = make_session_factory()
        self.db = self.factory()

    def tearDown(self) -> None:
        self.db.close()

    def _run(self, *, enabled: bool | None) -> None:
        tenant = seed_tenant(self.db, name=f"Tenant-{enabled}", enabled=enabled)
        employee = seed_employee(self.db, tenant=tenant)
        session_row = seed_open_session(self.db, employee=employee)

        for second in (0, 1000, 2000):
            result = record_heartbeat(
                self.db,
                employee_id=employee.id,
                session_id=session_row.id,
                inside_area=False,
                signal_usable=False,
                now_utc=T0 + timedelta(seconds=second),
            )
            self.assertFalse(result.auto_closeout_enabled)

        heartbeat = self.db.scalar(select(LocationHeartbeat).where(LocationHeartbeat.employee_id == employee.id))
        self.assertIsNotNone(heartbeat)
        self.assertFalse(heartbeat.inside_area)
        self.assertEqual(normalize_ts(heartbeat.last_seen_at), T0 + timedelta(seconds=2000))
        self.assertEqual(self.db.scalar(select(func.count()).select_from(PendingAutoCloseout)), 0)
        self.db.refresh(session_row)
        self.assertTrue(session_row.is_open)

    def test_disabled_tenant_only_records_heartbeat(self) -> None:
        self._run(enabled=False)

    def test_missing_settings_row_behaves_as_disabled(self) -> None:
        self._run(enabled=None)


if __name__ == "__main__":
    unittest.main()
