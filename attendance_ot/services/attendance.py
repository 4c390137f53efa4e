from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from attendance_ot.audit import log_audit
from attendance_ot.errors import (
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    StateError,
    ValidationError,
)
from attendance_ot.models import AttendanceRecord, AuditActorType
from attendance_ot.repository import AttendanceRepository
from attendance_ot.services.location import DeviceInfo, LocationValidationResult, LocationValidator
from attendance_ot.services.payroll_lock import PayrollLockGuard
from attendance_ot.services.time_utils import local_date, normalize_ts


@dataclass(frozen=True, slots=True)
class CheckInResult:
    record: AttendanceRecord
    location: LocationValidationResult


class AttendanceService:
    """Location-gated daily check-in and check-out."""

    def __init__(
        self,
        repository: AttendanceRepository,
        *,
        location_validator: LocationValidator | None = None,
        lock_guard: PayrollLockGuard | None = None,
    ):
        self._repository = repository
        self._location_validator = location_validator or LocationValidator(repository)
        self._lock_guard = lock_guard or PayrollLockGuard(repository)

    def _require_active_user(self, user_id: int) -> None:
        user = self._repository.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found.", code="USER_NOT_FOUND")
        if not user.is_active:
            raise PermissionDeniedError("User is inactive.", code="USER_INACTIVE")

    def check_in(
        self,
        user_id: int,
        *,
        lat: float,
        lon: float,
        accuracy_m: float,
        device: DeviceInfo | None = None,
        now: datetime | None = None,
    ) -> CheckInResult:
        self._require_active_user(user_id)
        checked_in_at = normalize_ts(now)
        work_date = local_date(checked_in_at)
        if self._lock_guard.is_locked(work_date):
            raise PermissionDeniedError("Payroll period is locked.", code="PAYROLL_PERIOD_LOCKED")

        record = self._repository.get_attendance_for_user_day(user_id, work_date)
        if record is not None and record.check_in_time is not None:
            raise ConflictError("You have already checked in today.", code="ALREADY_CHECKED_IN")

        location = self._location_validator.validate(lat=lat, lon=lon, accuracy_m=accuracy_m, device=device)
        log_audit(
            self._repository,
            actor_type=AuditActorType.EMPLOYEE,
            actor_id=user_id,
            action="ATTENDANCE_CHECKIN",
            success=location.is_valid,
            entity_type="attendance",
            entity_id=work_date.isoformat(),
            details={"location": location.to_dict()},
        )
        if not location.is_valid:
            raise ValidationError(location.message, code="LOCATION_VALIDATION_FAILED")

        patch = {
            "check_in_time": checked_in_at,
            "check_in_latitude": lat,
            "check_in_longitude": lon,
            "check_in_accuracy_m": accuracy_m,
            "location_validation_type": location.validation_type,
            "location_confidence": location.confidence,
            "is_ot_only": False,
        }
        if record is None:
            record = self._repository.create_attendance(
                AttendanceRecord(user_id=user_id, work_date=work_date, total_ot_hours=0.0, **patch)
            )
            if record.check_in_time is None:
                # An OT-only record was created concurrently; fill in the check-in.
                record = self._repository.update_attendance(record.id, patch)
        else:
            record = self._repository.update_attendance(record.id, patch)
        return CheckInResult(record=record, location=location)

    def check_out(self, user_id: int, *, now: datetime | None = None) -> AttendanceRecord:
        self._require_active_user(user_id)
        checked_out_at = normalize_ts(now)
        work_date = local_date(checked_out_at)
        record = self._repository.get_attendance_for_user_day(user_id, work_date)
        if record is None or record.check_in_time is None:
            raise StateError("You have not checked in today.", code="NOT_CHECKED_IN")
        if record.check_out_time is not None:
            raise ConflictError("You have already checked out today.", code="ALREADY_CHECKED_OUT")
        if self._lock_guard.is_locked(work_date):
            raise PermissionDeniedError("Payroll period is locked.", code="PAYROLL_PERIOD_LOCKED")

        record = self._repository.update_attendance(record.id, {"check_out_time": checked_out_at})
        log_audit(
            self._repository,
            actor_type=AuditActorType.EMPLOYEE,
            actor_id=user_id,
            action="ATTENDANCE_CHECKOUT",
            entity_type="attendance",
            entity_id=work_date.isoformat(),
        )
        return record
