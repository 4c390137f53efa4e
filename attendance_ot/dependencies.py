from __future__ import annotations

from functools import lru_cache

from fastapi import Depends, Request

from attendance_ot.db import SessionLocal
from attendance_ot.errors import InfrastructureError
from attendance_ot.repository import AttendanceRepository, SqlAttendanceRepository
from attendance_ot.services.attendance import AttendanceService
from attendance_ot.services.location import LocationValidator
from attendance_ot.services.ot_sessions import OTSessionLifecycle
from attendance_ot.services.payroll_lock import PayrollLockGuard
from attendance_ot.services.reconciliation import ReconciliationScheduler


@lru_cache
def get_repository() -> AttendanceRepository:
    return SqlAttendanceRepository(SessionLocal)


def get_lock_guard(repository: AttendanceRepository = Depends(get_repository)) -> PayrollLockGuard:
    return PayrollLockGuard(repository)


def get_location_validator(repository: AttendanceRepository = Depends(get_repository)) -> LocationValidator:
    return LocationValidator(repository)


def get_lifecycle(
    repository: AttendanceRepository = Depends(get_repository),
    lock_guard: PayrollLockGuard = Depends(get_lock_guard),
) -> OTSessionLifecycle:
    return OTSessionLifecycle(repository, lock_guard)


def get_attendance_service(
    repository: AttendanceRepository = Depends(get_repository),
    location_validator: LocationValidator = Depends(get_location_validator),
    lock_guard: PayrollLockGuard = Depends(get_lock_guard),
) -> AttendanceService:
    return AttendanceService(repository, location_validator=location_validator, lock_guard=lock_guard)


def get_scheduler(request: Request) -> ReconciliationScheduler:
    scheduler: ReconciliationScheduler | None = getattr(request.app.state, "reconciliation_scheduler", None)
    if scheduler is None:
        raise InfrastructureError("Reconciliation scheduler is not available.", code="SCHEDULER_UNAVAILABLE")
    return scheduler
