from __future__ import annotations

import unittest
from datetime import date
from unittest.mock import patch

from attendance_ot.errors import (
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    StateError,
    ValidationError,
)
from attendance_ot.models import OTSessionStatus, OTType, ReviewAction, UserRole
from attendance_ot.services.ot_sessions import OTSessionLifecycle, SessionEvidence
from attendance_ot.services.payroll_lock import PayrollLockGuard
from attendance_ot.services.time_utils import local_end_of_day_utc
from attendance_ot.settings import Settings

from ot_fakes import InMemoryRepository, ist

EMPLOYEE_ID = 10
ADMIN_ID = 1
MASTER_ADMIN_ID = 2
MONDAY = date(2026, 3, 2)


class OTSessionLifecycleTests(unittest.TestCase):
    def setUp(self) -> None:
        self.repo = InMemoryRepository()
        self.repo.add_department(1, check_in_time="9:00 AM")
        self.repo.add_user(EMPLOYEE_ID, department_id=1)
        self.repo.add_user(ADMIN_ID, role=UserRole.ADMIN)
        self.repo.add_user(MASTER_ADMIN_ID, role=UserRole.MASTER_ADMIN)
        self.lifecycle = OTSessionLifecycle(self.repo)

    def _checked_in(self) -> None:
        self.repo.add_record(EMPLOYEE_ID, MONDAY, check_in_time=ist(2026, 3, 2, 9, 0))

    def _ended_session(self, *, hours: int = 1):
        self._checked_in()
        session = self.lifecycle.start_session(EMPLOYEE_ID, now=ist(2026, 3, 2, 18, 0))
        self.lifecycle.end_session(EMPLOYEE_ID, session.session_id, now=ist(2026, 3, 2, 18 + hours, 0))
        return session

    def test_start_then_end_one_hour_later_is_pending_review(self) -> None:
        self._checked_in()

        session = self.lifecycle.start_session(
            EMPLOYEE_ID,
            evidence=SessionEvidence(image_url="https://cdn.example/start.jpg", latitude=10.0, longitude=78.0),
            now=ist(2026, 3, 2, 18, 0),
        )
        self.assertEqual(session.session_id, "ot_20260302_10_001")
        self.assertEqual(session.ot_type, OTType.LATE_DEPARTURE)
        self.assertEqual(session.status, OTSessionStatus.IN_PROGRESS)
        self.assertEqual(session.ot_hours, 0.0)
        self.assertEqual(session.start_image_url, "https://cdn.example/start.jpg")

        result = self.lifecycle.end_session(EMPLOYEE_ID, session.session_id, now=ist(2026, 3, 2, 19, 0))

        self.assertEqual(result.session.status, OTSessionStatus.PENDING_REVIEW)
        self.assertEqual(result.session.ot_hours, 1.0)
        self.assertFalse(result.already_ended)
        self.assertFalse(result.exceeds_daily_cap)
        self.assertEqual(self.repo.actions(), ["OT_SESSION_STARTED", "OT_SESSION_ENDED"])
        self.assertEqual([item.type for item in self.repo.notifications], ["ot_session_ended"])

    def test_second_start_while_open_conflicts(self) -> None:
        self._checked_in()
        self.lifecycle.start_session(EMPLOYEE_ID, now=ist(2026, 3, 2, 18, 0))

        with self.assertRaises(ConflictError) as ctx:
            self.lifecycle.start_session(EMPLOYEE_ID, now=ist(2026, 3, 2, 18, 30))
        self.assertEqual(ctx.exception.code, "OT_SESSION_ALREADY_ACTIVE")

    def test_start_after_end_gets_next_session_number(self) -> None:
        first = self._ended_session()
        second = self.lifecycle.start_session(EMPLOYEE_ID, now=ist(2026, 3, 2, 20, 0))

        self.assertEqual(first.session_number, 1)
        self.assertEqual(second.session_number, 2)
        self.assertEqual(second.session_id, "ot_20260302_10_002")

    def test_start_before_checkin_time_is_early_arrival_on_ot_only_record(self) -> None:
        session = self.lifecycle.start_session(EMPLOYEE_ID, now=ist(2026, 3, 2, 7, 0))

        self.assertEqual(session.ot_type, OTType.EARLY_ARRIVAL)
        record = self.repo.records_for(EMPLOYEE_ID, MONDAY)
        self.assertIsNotNone(record)
        self.assertTrue(record.is_ot_only)
        self.assertIsNone(record.check_in_time)

    def test_early_arrival_after_checkin_time_is_state_error(self) -> None:
        with self.assertRaises(StateError):
            self.lifecycle.start_session(EMPLOYEE_ID, ot_type=OTType.EARLY_ARRIVAL, now=ist(2026, 3, 2, 9, 30))

    def test_early_arrival_requires_department_timing(self) -> None:
        self.repo.add_user(11)
        with self.assertRaises(ValidationError):
            self.lifecycle.start_session(11, ot_type=OTType.EARLY_ARRIVAL, now=ist(2026, 3, 2, 7, 0))

    def test_late_departure_requires_checkin(self) -> None:
        with self.assertRaises(StateError) as ctx:
            self.lifecycle.start_session(EMPLOYEE_ID, now=ist(2026, 3, 2, 18, 0))
        self.assertEqual(ctx.exception.code, "NOT_CHECKED_IN")

    def test_weekend_and_holiday_types_are_detected(self) -> None:
        sunday_session = self.lifecycle.start_session(EMPLOYEE_ID, now=ist(2026, 3, 1, 10, 0))
        self.assertEqual(sunday_session.ot_type, OTType.WEEKEND)

        self.repo.add_holiday(date(2026, 3, 3), allow_ot=True)
        holiday_session = self.lifecycle.start_session(EMPLOYEE_ID, now=ist(2026, 3, 3, 10, 0))
        self.assertEqual(holiday_session.ot_type, OTType.HOLIDAY)

    def test_holiday_without_ot_is_refused(self) -> None:
        self.repo.add_holiday(MONDAY, allow_ot=False)
        with self.assertRaises(StateError):
            self.lifecycle.start_session(EMPLOYEE_ID, now=ist(2026, 3, 2, 10, 0))

    def test_unknown_and_inactive_users(self) -> None:
        self.repo.add_user(12, is_active=False)
        with self.assertRaises(NotFoundError):
            self.lifecycle.start_session(999, now=ist(2026, 3, 2, 7, 0))
        with self.assertRaises(PermissionDeniedError):
            self.lifecycle.start_session(12, now=ist(2026, 3, 2, 7, 0))

    def test_end_by_other_user_is_not_found(self) -> None:
        self._checked_in()
        session = self.lifecycle.start_session(EMPLOYEE_ID, now=ist(2026, 3, 2, 18, 0))
        self.repo.add_user(11, department_id=1)

        with self.assertRaises(NotFoundError):
            self.lifecycle.end_session(11, session.session_id, now=ist(2026, 3, 2, 19, 0))

    def test_end_retry_returns_the_ended_session_unchanged(self) -> None:
        session = self._ended_session()

        retry = self.lifecycle.end_session(EMPLOYEE_ID, session.session_id, now=ist(2026, 3, 2, 21, 0))

        self.assertTrue(retry.already_ended)
        self.assertEqual(retry.session.ot_hours, 1.0)
        self.assertEqual(self.repo.actions().count("OT_SESSION_ENDED"), 1)

    def test_end_of_auto_closed_session_is_not_found(self) -> None:
        session = self.repo.add_open_session(EMPLOYEE_ID, ist(2026, 3, 2, 7, 0), OTType.EARLY_ARRIVAL)
        self.repo.update_ot_session(
            session.session_id,
            {
                "status": OTSessionStatus.PENDING_REVIEW,
                "auto_closed_at": ist(2026, 3, 2, 9, 0),
            },
        )
        with self.assertRaises(NotFoundError):
            self.lifecycle.end_session(EMPLOYEE_ID, session.session_id, now=ist(2026, 3, 2, 10, 0))

    def test_daily_cap_is_reported(self) -> None:
        self._checked_in()
        session = self.lifecycle.start_session(EMPLOYEE_ID, now=ist(2026, 3, 2, 18, 0))

        result = self.lifecycle.end_session(EMPLOYEE_ID, session.session_id, now=ist(2026, 3, 3, 0, 30))

        self.assertEqual(result.session.ot_hours, 6.5)
        self.assertTrue(result.exceeds_daily_cap)
        self.assertEqual(result.session.status, OTSessionStatus.PENDING_REVIEW)

    def _auto_closed_session(self):
        session = self.repo.add_open_session(EMPLOYEE_ID, ist(2026, 3, 2, 7, 0), OTType.EARLY_ARRIVAL)
        self.repo.update_ot_session(
            session.session_id,
            {
                "status": OTSessionStatus.PENDING_REVIEW,
                "end_time": local_end_of_day_utc(session.start_time),
                "ot_hours": 0.0,
                "auto_closed_at": ist(2026, 3, 2, 9, 0),
            },
        )
        return session

    def test_approve_preserves_hours_by_default(self) -> None:
        session = self._auto_closed_session()

        reviewed = self.lifecycle.review_session(session.session_id, ReviewAction.APPROVED, ADMIN_ID)

        self.assertEqual(reviewed.status, OTSessionStatus.APPROVED)
        self.assertEqual(reviewed.ot_hours, 0.0)
        self.assertEqual(reviewed.reviewed_by, ADMIN_ID)
        self.assertIn("OT_SESSION_APPROVED", self.repo.actions())

    def test_approve_recompute_policy_uses_timestamps(self) -> None:
        session = self._auto_closed_session()

        with patch(
            "attendance_ot.services.ot_sessions.get_settings",
            return_value=Settings(ot_approval_hours_policy="recompute"),
        ):
            reviewed = self.lifecycle.review_session(session.session_id, "APPROVED", ADMIN_ID)

        self.assertEqual(reviewed.status, OTSessionStatus.APPROVED)
        self.assertEqual(reviewed.ot_hours, 17.0)
        self.assertEqual(reviewed.original_ot_hours, 0.0)

    def test_adjust_records_original_and_updates_total(self) -> None:
        session = self._ended_session()

        reviewed = self.lifecycle.review_session(
            session.session_id,
            ReviewAction.ADJUSTED,
            ADMIN_ID,
            notes="Left at 20:30",
            adjusted_hours=2.5,
        )

        self.assertEqual(reviewed.status, OTSessionStatus.ADJUSTED)
        self.assertEqual(reviewed.original_ot_hours, 1.0)
        self.assertEqual(reviewed.adjusted_ot_hours, 2.5)
        self.assertEqual(reviewed.ot_hours, 2.5)
        self.assertEqual(reviewed.review_notes, "Left at 20:30")
        self.assertEqual(self.repo.records_for(EMPLOYEE_ID, MONDAY).total_ot_hours, 2.5)

    def test_reject_zeroes_hours(self) -> None:
        session = self._ended_session()

        reviewed = self.lifecycle.review_session(session.session_id, ReviewAction.REJECTED, ADMIN_ID)

        self.assertEqual(reviewed.status, OTSessionStatus.REJECTED)
        self.assertEqual(reviewed.ot_hours, 0.0)
        self.assertEqual(reviewed.original_ot_hours, 1.0)
        self.assertEqual(self.repo.records_for(EMPLOYEE_ID, MONDAY).total_ot_hours, 0.0)

    def test_repeat_review_is_idempotent_and_conflicting_review_fails(self) -> None:
        session = self._ended_session()
        self.lifecycle.review_session(session.session_id, ReviewAction.APPROVED, ADMIN_ID)

        again = self.lifecycle.review_session(session.session_id, ReviewAction.APPROVED, ADMIN_ID)
        self.assertEqual(again.status, OTSessionStatus.APPROVED)
        self.assertEqual(self.repo.actions().count("OT_SESSION_APPROVED"), 1)

        with self.assertRaises(ConflictError):
            self.lifecycle.review_session(session.session_id, ReviewAction.REJECTED, ADMIN_ID)

    def test_review_of_open_session_is_state_error(self) -> None:
        session = self.repo.add_open_session(EMPLOYEE_ID, ist(2026, 3, 2, 7, 0), OTType.EARLY_ARRIVAL)
        with self.assertRaises(StateError):
            self.lifecycle.review_session(session.session_id, ReviewAction.APPROVED, ADMIN_ID)

    def test_review_input_and_role_checks(self) -> None:
        session = self._ended_session()

        with self.assertRaises(ValidationError):
            self.lifecycle.review_session(session.session_id, "MAYBE", ADMIN_ID)
        with self.assertRaises(ValidationError):
            self.lifecycle.review_session(session.session_id, ReviewAction.ADJUSTED, ADMIN_ID)
        with self.assertRaises(ValidationError):
            self.lifecycle.review_session(session.session_id, ReviewAction.ADJUSTED, ADMIN_ID, adjusted_hours=-1)
        with self.assertRaises(PermissionDeniedError):
            self.lifecycle.review_session(session.session_id, ReviewAction.APPROVED, EMPLOYEE_ID)
        with self.assertRaises(NotFoundError):
            self.lifecycle.review_session("ot_missing", ReviewAction.APPROVED, ADMIN_ID)

    def test_locked_period_blocks_review_until_unlocked(self) -> None:
        session = self._ended_session()
        guard = PayrollLockGuard(self.repo)
        guard.lock_period(3, 2026, MASTER_ADMIN_ID)

        with self.assertRaises(PermissionDeniedError) as ctx:
            self.lifecycle.review_session(session.session_id, ReviewAction.APPROVED, ADMIN_ID)
        self.assertEqual(ctx.exception.code, "PAYROLL_PERIOD_LOCKED")

        guard.unlock_period(3, 2026, MASTER_ADMIN_ID, "Late correction approved by HR")
        reviewed = self.lifecycle.review_session(session.session_id, ReviewAction.APPROVED, ADMIN_ID)
        self.assertEqual(reviewed.status, OTSessionStatus.APPROVED)

    def test_locked_period_blocks_start(self) -> None:
        self.repo.lock_month(3, 2026)
        with self.assertRaises(PermissionDeniedError):
            self.lifecycle.start_session(EMPLOYEE_ID, now=ist(2026, 3, 2, 7, 0))

    def test_active_session_and_status(self) -> None:
        self._checked_in()
        session = self.lifecycle.start_session(EMPLOYEE_ID, now=ist(2026, 3, 2, 18, 0))

        overnight = self.lifecycle.get_active_session(EMPLOYEE_ID, now=ist(2026, 3, 3, 1, 0))
        self.assertEqual(overnight.session_id, session.session_id)

        status = self.lifecycle.ot_status(EMPLOYEE_ID, now=ist(2026, 3, 2, 18, 30))
        self.assertTrue(status.checked_in)
        self.assertEqual(status.active_session.session_id, session.session_id)
        self.assertEqual(len(status.sessions), 1)

    def test_pending_review_listing(self) -> None:
        session = self._ended_session()
        self.repo.add_open_session(11, ist(2026, 3, 2, 7, 0), OTType.EARLY_ARRIVAL)

        pending = self.lifecycle.list_pending_review(date(2026, 3, 1), date(2026, 3, 31))

        self.assertEqual([item.session_id for item in pending], [session.session_id])
        with self.assertRaises(ValidationError):
            self.lifecycle.list_pending_review(date(2026, 3, 31), date(2026, 3, 1))


if __name__ == "__main__":
    unittest.main()
