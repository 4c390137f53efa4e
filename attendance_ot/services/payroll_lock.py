"""Payroll period locking.

A locked month freezes every OT session dated inside it. Only a master admin
may lock or unlock, and an unlock must carry a written reason.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Sequence

from attendance_ot.audit import log_audit
from attendance_ot.errors import (
    ConflictError,
    InfrastructureError,
    NotFoundError,
    PermissionDeniedError,
    StateError,
    ValidationError,
)
from attendance_ot.models import AuditActorType, PayrollPeriod, PayrollPeriodStatus, UserRole
from attendance_ot.repository import AttendanceRepository
from attendance_ot.services.time_utils import month_bounds, utcnow
from attendance_ot.settings import get_settings

logger = logging.getLogger("attendance_ot.payroll_lock")


class PayrollLockGuard:
    def __init__(self, repository: AttendanceRepository):
        self._repository = repository

    def _require_master_admin(self, admin_id: int) -> None:
        admin = self._repository.get_user(admin_id)
        if admin is None or not admin.is_active or admin.role != UserRole.MASTER_ADMIN:
            raise PermissionDeniedError(
                "Only a master admin can change payroll period locks.",
                code="MASTER_ADMIN_REQUIRED",
            )

    @staticmethod
    def _validate_period(month: int, year: int) -> None:
        if not 1 <= int(month) <= 12:
            raise ValidationError("Month must be between 1 and 12.", code="INVALID_MONTH")
        if int(year) < get_settings().payroll_min_year:
            raise ValidationError(
                f"Year must be {get_settings().payroll_min_year} or later.",
                code="INVALID_YEAR",
            )

    def lock_period(self, month: int, year: int, admin_id: int) -> PayrollPeriod:
        self._require_master_admin(admin_id)
        self._validate_period(month, year)

        now = utcnow()
        period = self._repository.get_payroll_period(month, year)
        if period is not None and period.status == PayrollPeriodStatus.LOCKED:
            raise ConflictError(f"Payroll period {month:02d}/{year} is already locked.", code="PERIOD_ALREADY_LOCKED")

        lock_patch = {
            "status": PayrollPeriodStatus.LOCKED,
            "locked_at": now,
            "locked_by": admin_id,
        }
        if period is None:
            period = self._repository.create_payroll_period(
                PayrollPeriod(month=month, year=year, **lock_patch)
            )
        else:
            period = self._repository.update_payroll_period(period.id, lock_patch)

        first_day, last_day = month_bounds(month, year)
        locked_sessions = self._repository.set_sessions_payroll_locked(first_day, last_day, True)

        log_audit(
            self._repository,
            actor_type=AuditActorType.ADMIN,
            actor_id=admin_id,
            action="PAYROLL_PERIOD_LOCKED",
            entity_type="payroll_period",
            entity_id=period.period_key,
            details={"month": month, "year": year, "locked_sessions": locked_sessions},
        )
        return period

    def unlock_period(self, month: int, year: int, admin_id: int, reason: str) -> PayrollPeriod:
        self._require_master_admin(admin_id)
        self._validate_period(month, year)

        cleaned_reason = (reason or "").strip()
        min_length = get_settings().payroll_unlock_min_reason_length
        if len(cleaned_reason) < min_length:
            raise ValidationError(
                f"Unlock reason must be at least {min_length} characters.",
                code="UNLOCK_REASON_TOO_SHORT",
            )

        period = self._repository.get_payroll_period(month, year)
        if period is None:
            raise NotFoundError(f"Payroll period {month:02d}/{year} not found.", code="PERIOD_NOT_FOUND")
        if period.status != PayrollPeriodStatus.LOCKED:
            raise StateError(f"Payroll period {month:02d}/{year} is not locked.", code="PERIOD_NOT_LOCKED")

        period = self._repository.update_payroll_period(
            period.id,
            {
                "status": PayrollPeriodStatus.OPEN,
                "unlocked_at": utcnow(),
                "unlocked_by": admin_id,
                "unlock_reason": cleaned_reason,
            },
        )
        first_day, last_day = month_bounds(month, year)
        unlocked_sessions = self._repository.set_sessions_payroll_locked(first_day, last_day, False)

        log_audit(
            self._repository,
            actor_type=AuditActorType.ADMIN,
            actor_id=admin_id,
            action="PAYROLL_PERIOD_UNLOCKED",
            entity_type="payroll_period",
            entity_id=period.period_key,
            details={
                "month": month,
                "year": year,
                "reason": cleaned_reason,
                "unlocked_sessions": unlocked_sessions,
            },
        )
        return period

    def is_locked(self, day: date) -> bool:
        """True when ``day`` falls inside a locked payroll period.

        Storage failures fail open: the check returns False and a warning is
        logged so operators can see the window.
        """
        try:
            period = self._repository.get_payroll_period(day.month, day.year)
        except InfrastructureError:
            logger.warning(
                "payroll_lock_check_failed_open",
                extra={"day": day.isoformat()},
                exc_info=True,
            )
            return False
        return period is not None and period.status == PayrollPeriodStatus.LOCKED

    def get_period(self, month: int, year: int) -> PayrollPeriod | None:
        self._validate_period(month, year)
        return self._repository.get_payroll_period(month, year)

    def list_periods(self, year: int) -> Sequence[PayrollPeriod]:
        return self._repository.list_payroll_periods(year)
