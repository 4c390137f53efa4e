from __future__ import annotations

import unittest
from datetime import date

from attendance_ot.errors import (
    ConflictError,
    InfrastructureError,
    NotFoundError,
    PermissionDeniedError,
    StateError,
    ValidationError,
)
from attendance_ot.models import OTType, PayrollPeriodStatus, UserRole
from attendance_ot.services.payroll_lock import PayrollLockGuard

from ot_fakes import InMemoryRepository, ist

ADMIN_ID = 1
MASTER_ADMIN_ID = 2


class PayrollLockGuardTests(unittest.TestCase):
    def setUp(self) -> None:
        self.repo = InMemoryRepository()
        self.repo.add_user(ADMIN_ID, role=UserRole.ADMIN)
        self.repo.add_user(MASTER_ADMIN_ID, role=UserRole.MASTER_ADMIN)
        self.guard = PayrollLockGuard(self.repo)

    def test_lock_marks_period_and_sessions(self) -> None:
        inside = self.repo.add_open_session(10, ist(2026, 3, 2, 18, 0), OTType.LATE_DEPARTURE)
        outside = self.repo.add_open_session(10, ist(2026, 4, 1, 18, 0), OTType.LATE_DEPARTURE)

        period = self.guard.lock_period(3, 2026, MASTER_ADMIN_ID)

        self.assertEqual(period.status, PayrollPeriodStatus.LOCKED)
        self.assertEqual(period.locked_by, MASTER_ADMIN_ID)
        self.assertTrue(inside.payroll_locked)
        self.assertFalse(outside.payroll_locked)
        self.assertTrue(self.guard.is_locked(date(2026, 3, 31)))
        self.assertFalse(self.guard.is_locked(date(2026, 4, 1)))
        self.assertEqual(self.repo.actions(), ["PAYROLL_PERIOD_LOCKED"])
        self.assertEqual(self.repo.activity_logs[0].entity_id, "payroll_2026_03")

    def test_only_master_admin_can_lock(self) -> None:
        with self.assertRaises(PermissionDeniedError):
            self.guard.lock_period(3, 2026, ADMIN_ID)

    def test_period_bounds_are_validated(self) -> None:
        with self.assertRaises(ValidationError):
            self.guard.lock_period(13, 2026, MASTER_ADMIN_ID)
        with self.assertRaises(ValidationError):
            self.guard.lock_period(0, 2026, MASTER_ADMIN_ID)
        with self.assertRaises(ValidationError):
            self.guard.lock_period(12, 2023, MASTER_ADMIN_ID)

    def test_double_lock_conflicts(self) -> None:
        self.guard.lock_period(3, 2026, MASTER_ADMIN_ID)
        with self.assertRaises(ConflictError):
            self.guard.lock_period(3, 2026, MASTER_ADMIN_ID)

    def test_unlock_requires_reason_and_locked_period(self) -> None:
        with self.assertRaises(NotFoundError):
            self.guard.unlock_period(3, 2026, MASTER_ADMIN_ID, "Correction requested by HR")

        self.guard.lock_period(3, 2026, MASTER_ADMIN_ID)
        with self.assertRaises(ValidationError):
            self.guard.unlock_period(3, 2026, MASTER_ADMIN_ID, "   too short   ")
        with self.assertRaises(PermissionDeniedError):
            self.guard.unlock_period(3, 2026, ADMIN_ID, "Correction requested by HR")

        self.guard.unlock_period(3, 2026, MASTER_ADMIN_ID, "Correction requested by HR")
        with self.assertRaises(StateError):
            self.guard.unlock_period(3, 2026, MASTER_ADMIN_ID, "Correction requested by HR")

    def test_unlock_reopens_period_and_clears_session_flags(self) -> None:
        session = self.repo.add_open_session(10, ist(2026, 3, 2, 18, 0), OTType.LATE_DEPARTURE)
        self.guard.lock_period(3, 2026, MASTER_ADMIN_ID)

        period = self.guard.unlock_period(3, 2026, MASTER_ADMIN_ID, "  Correction requested by HR  ")

        self.assertEqual(period.status, PayrollPeriodStatus.OPEN)
        self.assertEqual(period.unlock_reason, "Correction requested by HR")
        self.assertEqual(period.unlocked_by, MASTER_ADMIN_ID)
        self.assertFalse(session.payroll_locked)
        self.assertFalse(self.guard.is_locked(date(2026, 3, 2)))
        self.assertEqual(self.repo.activity_logs[-1].details["reason"], "Correction requested by HR")

    def test_is_locked_fails_open_on_storage_error(self) -> None:
        self.repo.lock_month(3, 2026)
        self.repo.failures["get_payroll_period"] = InfrastructureError("database down")

        with self.assertLogs("attendance_ot.payroll_lock", level="WARNING") as logs:
            locked = self.guard.is_locked(date(2026, 3, 2))

        self.assertFalse(locked)
        self.assertTrue(any("payroll_lock_check_failed_open" in line for line in logs.output))

    def test_list_periods_by_year(self) -> None:
        self.guard.lock_period(4, 2026, MASTER_ADMIN_ID)
        self.guard.lock_period(2, 2026, MASTER_ADMIN_ID)
        self.guard.lock_period(2, 2025, MASTER_ADMIN_ID)

        self.assertEqual([item.month for item in self.guard.list_periods(2026)], [2, 4])
        self.assertIsNone(self.guard.get_period(5, 2026))


if __name__ == "__main__":
    unittest.main()
