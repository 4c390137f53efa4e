from fastapi import APIRouter, Depends, Query

from attendance_ot.dependencies import get_lock_guard
from attendance_ot.schemas import PayrollLockRequest, PayrollPeriodRead, PayrollUnlockRequest
from attendance_ot.security import Principal, require_admin, require_master_admin
from attendance_ot.services.payroll_lock import PayrollLockGuard
from attendance_ot.services.time_utils import local_date, utcnow

router = APIRouter(prefix="/api/ot/payroll", tags=["payroll"])


@router.post("/lock", response_model=PayrollPeriodRead)
def lock_period(
    payload: PayrollLockRequest,
    principal: Principal = Depends(require_master_admin),
    guard: PayrollLockGuard = Depends(get_lock_guard),
) -> PayrollPeriodRead:
    period = guard.lock_period(payload.month, payload.year, principal.user_id)
    return PayrollPeriodRead.model_validate(period)


@router.post("/unlock", response_model=PayrollPeriodRead)
def unlock_period(
    payload: PayrollUnlockRequest,
    principal: Principal = Depends(require_master_admin),
    guard: PayrollLockGuard = Depends(get_lock_guard),
) -> PayrollPeriodRead:
    period = guard.unlock_period(payload.month, payload.year, principal.user_id, payload.reason)
    return PayrollPeriodRead.model_validate(period)


@router.get("/periods", response_model=list[PayrollPeriodRead])
def list_periods(
    year: int | None = Query(default=None),
    _: Principal = Depends(require_admin),
    guard: PayrollLockGuard = Depends(get_lock_guard),
) -> list[PayrollPeriodRead]:
    target_year = year if year is not None else local_date(utcnow()).year
    return [PayrollPeriodRead.model_validate(item) for item in guard.list_periods(target_year)]
