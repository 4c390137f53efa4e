"""OT session state machine.

``in_progress -> PENDING_REVIEW -> APPROVED | ADJUSTED | REJECTED``

Ending a session never approves it; hours only become payable through an
explicit admin review. Every transition is conditional on the status the
caller observed, so retries and races with the reconciliation job are safe.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Sequence

from attendance_ot.audit import log_audit, notify
from attendance_ot.errors import (
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    StateError,
    ValidationError,
)
from attendance_ot.models import (
    AttendanceRecord,
    AuditActorType,
    Department,
    Holiday,
    OTSession,
    OTSessionStatus,
    OTType,
    ReviewAction,
    User,
    UserRole,
)
from attendance_ot.repository import AttendanceRepository
from attendance_ot.services.payroll_lock import PayrollLockGuard
from attendance_ot.services.time_utils import (
    TimeParseError,
    hours_between,
    local_date,
    local_datetime_on,
    normalize_ts,
)
from attendance_ot.settings import get_settings, get_weekend_days

logger = logging.getLogger("attendance_ot.ot_sessions")

REVIEWABLE_STATUSES = frozenset({OTSessionStatus.PENDING_REVIEW, OTSessionStatus.COMPLETED})
REVIEWER_ROLES = frozenset({UserRole.ADMIN, UserRole.MASTER_ADMIN})

_REVIEW_STATUS_BY_ACTION = {
    ReviewAction.APPROVED: OTSessionStatus.APPROVED,
    ReviewAction.ADJUSTED: OTSessionStatus.ADJUSTED,
    ReviewAction.REJECTED: OTSessionStatus.REJECTED,
}


@dataclass(frozen=True, slots=True)
class SessionEvidence:
    image_url: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    address: str | None = None

    def as_patch(self, prefix: str) -> dict[str, Any]:
        return {
            f"{prefix}_image_url": self.image_url,
            f"{prefix}_latitude": self.latitude,
            f"{prefix}_longitude": self.longitude,
            f"{prefix}_address": self.address,
        }


@dataclass(frozen=True, slots=True)
class EndSessionResult:
    session: OTSession
    day_ot_hours: float
    exceeds_daily_cap: bool
    already_ended: bool = False


@dataclass(frozen=True, slots=True)
class OTStatus:
    user_id: int
    work_date: date
    checked_in: bool
    active_session: OTSession | None
    sessions: list[OTSession] = field(default_factory=list)
    total_ot_hours: float = 0.0


def build_session_id(work_date: date, user_id: int, session_number: int) -> str:
    return f"ot_{work_date:%Y%m%d}_{user_id}_{session_number:03d}"


def determine_ot_type(
    started_at: datetime,
    *,
    holiday: Holiday | None,
    department: Department | None,
    weekend_days: set[int],
) -> OTType:
    work_date = local_date(started_at)
    if holiday is not None and holiday.is_active:
        return OTType.HOLIDAY
    if work_date.weekday() in weekend_days:
        return OTType.WEEKEND
    if department is not None and department.check_in_time:
        try:
            check_in_at = local_datetime_on(work_date, department.check_in_time)
        except TimeParseError:
            return OTType.LATE_DEPARTURE
        if normalize_ts(started_at) < check_in_at:
            return OTType.EARLY_ARRIVAL
    return OTType.LATE_DEPARTURE


def _day_claimed_hours(record: AttendanceRecord | None) -> float:
    if record is None:
        return 0.0
    return round(
        sum(float(item.ot_hours or 0.0) for item in record.ot_sessions if item.status != OTSessionStatus.REJECTED),
        2,
    )


class OTSessionLifecycle:
    def __init__(
        self,
        repository: AttendanceRepository,
        lock_guard: PayrollLockGuard | None = None,
    ):
        self._repository = repository
        self._lock_guard = lock_guard or PayrollLockGuard(repository)

    def _require_active_user(self, user_id: int) -> User:
        user = self._repository.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found.", code="USER_NOT_FOUND")
        if not user.is_active:
            raise PermissionDeniedError("User is inactive.", code="USER_INACTIVE")
        return user

    def _ensure_unlocked(self, work_date: date, session: OTSession | None = None) -> None:
        if (session is not None and session.payroll_locked) or self._lock_guard.is_locked(work_date):
            raise PermissionDeniedError(
                f"Payroll period {work_date.month:02d}/{work_date.year} is locked.",
                code="PAYROLL_PERIOD_LOCKED",
            )

    def _department_for(self, user: User) -> Department | None:
        if user.department_id is None:
            return None
        return self._repository.get_department_timing(user.department_id)

    def start_session(
        self,
        user_id: int,
        *,
        ot_type: OTType | None = None,
        evidence: SessionEvidence | None = None,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> OTSession:
        user = self._require_active_user(user_id)
        started_at = normalize_ts(now)
        work_date = local_date(started_at)
        self._ensure_unlocked(work_date)

        holiday = self._repository.get_holiday(work_date)
        department = self._department_for(user)
        if ot_type is None:
            ot_type = determine_ot_type(
                started_at,
                holiday=holiday,
                department=department,
                weekend_days=get_weekend_days(),
            )

        if holiday is not None and holiday.is_active and not holiday.allow_ot:
            raise StateError(f"OT is not allowed on {holiday.name}.", code="HOLIDAY_OT_NOT_ALLOWED")

        if ot_type == OTType.EARLY_ARRIVAL:
            if department is None or not department.check_in_time:
                raise ValidationError(
                    "Department check-in time is not configured.",
                    code="DEPARTMENT_TIMING_MISSING",
                )
            try:
                check_in_at = local_datetime_on(work_date, department.check_in_time)
            except TimeParseError as exc:
                raise ValidationError(str(exc), code="DEPARTMENT_TIMING_INVALID") from exc
            if started_at >= check_in_at:
                raise StateError(
                    "Early arrival OT must start before the department check-in time.",
                    code="EARLY_ARRIVAL_WINDOW_PASSED",
                )

        record = self._repository.get_attendance_for_user_day(user_id, work_date)
        if ot_type == OTType.LATE_DEPARTURE and (record is None or record.check_in_time is None):
            raise StateError("Check in before starting late departure OT.", code="NOT_CHECKED_IN")

        if record is not None and any(item.status == OTSessionStatus.IN_PROGRESS for item in record.ot_sessions):
            raise ConflictError(
                "You already have an active OT session. Please end it first.",
                code="OT_SESSION_ALREADY_ACTIVE",
            )

        if record is None:
            record = self._repository.create_attendance(
                AttendanceRecord(
                    user_id=user_id,
                    work_date=work_date,
                    is_ot_only=True,
                    total_ot_hours=0.0,
                )
            )

        session_number = max((item.session_number for item in record.ot_sessions), default=0) + 1
        session = OTSession(
            session_id=build_session_id(work_date, user_id, session_number),
            attendance_id=record.id,
            session_number=session_number,
            user_id=user_id,
            work_date=work_date,
            ot_type=ot_type,
            status=OTSessionStatus.IN_PROGRESS,
            start_time=started_at,
            ot_hours=0.0,
            reason=(reason or "").strip() or None,
            payroll_locked=False,
            **(evidence or SessionEvidence()).as_patch("start"),
        )
        created = self._repository.add_ot_session(session)

        log_audit(
            self._repository,
            actor_type=AuditActorType.EMPLOYEE,
            actor_id=user_id,
            action="OT_SESSION_STARTED",
            entity_type="ot_session",
            entity_id=created.session_id,
            details={
                "ot_type": ot_type.value,
                "work_date": work_date.isoformat(),
                "session_number": session_number,
            },
        )
        return created

    def _ended_by_user(self, session: OTSession | None, user_id: int) -> bool:
        return (
            session is not None
            and session.user_id == user_id
            and session.status == OTSessionStatus.PENDING_REVIEW
            and session.auto_closed_at is None
        )

    def end_session(
        self,
        user_id: int,
        session_id: str,
        *,
        evidence: SessionEvidence | None = None,
        now: datetime | None = None,
    ) -> EndSessionResult:
        session = self._repository.find_ot_session(session_id)
        if self._ended_by_user(session, user_id):
            return self._end_result(session, already_ended=True)
        if session is None or session.user_id != user_id or session.status != OTSessionStatus.IN_PROGRESS:
            raise NotFoundError("No active OT session found.", code="OT_SESSION_NOT_FOUND")

        self._ensure_unlocked(session.work_date, session)

        ended_at = normalize_ts(now)
        ot_hours = hours_between(session.start_time, ended_at)
        patch: dict[str, Any] = {
            "end_time": ended_at,
            "ot_hours": ot_hours,
            "status": OTSessionStatus.PENDING_REVIEW,
            **(evidence or SessionEvidence()).as_patch("end"),
        }
        updated = self._repository.update_ot_session(
            session_id,
            patch,
            expected_status=OTSessionStatus.IN_PROGRESS,
        )
        if updated is None:
            current = self._repository.find_ot_session(session_id)
            if self._ended_by_user(current, user_id):
                return self._end_result(current, already_ended=True)
            raise NotFoundError("No active OT session found.", code="OT_SESSION_NOT_FOUND")

        result = self._end_result(updated)
        if result.exceeds_daily_cap:
            logger.warning(
                "ot_daily_cap_exceeded",
                extra={
                    "user_id": user_id,
                    "work_date": updated.work_date.isoformat(),
                    "day_ot_hours": result.day_ot_hours,
                    "cap_hours": get_settings().ot_max_hours_per_day,
                },
            )

        notify(
            self._repository,
            user_id=user_id,
            type="ot_session_ended",
            title="OT session submitted",
            message=f"Your OT session {session_id} ({ot_hours:.2f}h) was submitted for admin review.",
        )
        log_audit(
            self._repository,
            actor_type=AuditActorType.EMPLOYEE,
            actor_id=user_id,
            action="OT_SESSION_ENDED",
            entity_type="ot_session",
            entity_id=session_id,
            details={"ot_hours": ot_hours, "day_ot_hours": result.day_ot_hours},
        )
        return result

    def _end_result(self, session: OTSession, *, already_ended: bool = False) -> EndSessionResult:
        record = self._repository.get_attendance(session.attendance_id)
        day_hours = _day_claimed_hours(record)
        return EndSessionResult(
            session=session,
            day_ot_hours=day_hours,
            exceeds_daily_cap=day_hours > get_settings().ot_max_hours_per_day,
            already_ended=already_ended,
        )

    def review_session(
        self,
        session_id: str,
        action: ReviewAction | str,
        admin_id: int,
        *,
        notes: str | None = None,
        adjusted_hours: float | None = None,
        now: datetime | None = None,
    ) -> OTSession:
        try:
            action = ReviewAction(action)
        except ValueError as exc:
            raise ValidationError(
                "Review action must be APPROVED, ADJUSTED or REJECTED.",
                code="INVALID_REVIEW_ACTION",
            ) from exc
        if action == ReviewAction.ADJUSTED and (adjusted_hours is None or adjusted_hours < 0):
            raise ValidationError(
                "Adjusted hours must be provided and non-negative.",
                code="INVALID_ADJUSTED_HOURS",
            )

        admin = self._repository.get_user(admin_id)
        if admin is None or not admin.is_active or admin.role not in REVIEWER_ROLES:
            raise PermissionDeniedError("Only admins can review OT sessions.", code="ADMIN_REQUIRED")

        session = self._repository.find_ot_session(session_id)
        if session is None:
            raise NotFoundError("OT session not found.", code="OT_SESSION_NOT_FOUND")
        self._ensure_unlocked(session.work_date, session)

        if session.status == OTSessionStatus.IN_PROGRESS:
            raise StateError("Active OT sessions cannot be reviewed.", code="OT_SESSION_IN_PROGRESS")
        if session.is_terminal:
            return self._repeat_review(session, action)

        current_hours = float(session.ot_hours or 0.0)
        patch: dict[str, Any] = {
            "status": _REVIEW_STATUS_BY_ACTION[action],
            "review_action": action,
            "reviewed_by": admin_id,
            "reviewed_at": normalize_ts(now),
            "review_notes": (notes or "").strip() or None,
            "original_ot_hours": current_hours,
        }
        if action == ReviewAction.APPROVED:
            if get_settings().ot_approval_hours_policy == "recompute" and session.end_time is not None:
                patch["ot_hours"] = hours_between(session.start_time, session.end_time)
            else:
                patch["ot_hours"] = current_hours
        elif action == ReviewAction.ADJUSTED:
            adjusted = round(float(adjusted_hours), 2)
            patch["ot_hours"] = adjusted
            patch["adjusted_ot_hours"] = adjusted
        else:
            patch["ot_hours"] = 0.0

        updated = self._repository.update_ot_session(session_id, patch, expected_status=REVIEWABLE_STATUSES)
        if updated is None:
            current = self._repository.find_ot_session(session_id)
            if current is None:
                raise NotFoundError("OT session not found.", code="OT_SESSION_NOT_FOUND")
            return self._repeat_review(current, action)

        total = self._repository.refresh_total_ot_hours(updated.attendance_id)
        notify(
            self._repository,
            user_id=updated.user_id,
            type="ot_review",
            title=f"OT session {action.value.lower()}",
            message=(
                f"Your OT session on {updated.work_date.isoformat()} was {action.value.lower()}"
                f" ({float(updated.ot_hours):.2f}h)."
            ),
        )
        log_audit(
            self._repository,
            actor_type=AuditActorType.ADMIN,
            actor_id=admin_id,
            action=f"OT_SESSION_{action.value}",
            entity_type="ot_session",
            entity_id=session_id,
            details={
                "original_ot_hours": current_hours,
                "ot_hours": float(updated.ot_hours),
                "total_ot_hours": total,
                "notes": patch["review_notes"],
            },
        )
        return updated

    @staticmethod
    def _repeat_review(session: OTSession, action: ReviewAction) -> OTSession:
        if session.review_action == action and session.status == _REVIEW_STATUS_BY_ACTION[action]:
            return session
        raise ConflictError(
            f"OT session was already reviewed as {session.status.value}.",
            code="OT_SESSION_ALREADY_REVIEWED",
        )

    def get_active_session(self, user_id: int, *, now: datetime | None = None) -> OTSession | None:
        today = local_date(normalize_ts(now))
        # Sessions left open overnight still belong to the day they started.
        for offset in range(get_settings().reconciliation_lookback_days + 1):
            record = self._repository.get_attendance_for_user_day(user_id, today - timedelta(days=offset))
            if record is None:
                continue
            for session in record.ot_sessions:
                if session.status == OTSessionStatus.IN_PROGRESS:
                    return session
        return None

    def ot_status(self, user_id: int, *, now: datetime | None = None) -> OTStatus:
        self._require_active_user(user_id)
        today = local_date(normalize_ts(now))
        record = self._repository.get_attendance_for_user_day(user_id, today)
        return OTStatus(
            user_id=user_id,
            work_date=today,
            checked_in=record is not None and record.check_in_time is not None,
            active_session=self.get_active_session(user_id, now=now),
            sessions=list(record.ot_sessions) if record is not None else [],
            total_ot_hours=float(record.total_ot_hours or 0.0) if record is not None else 0.0,
        )

    def list_pending_review(self, start: date, end: date) -> Sequence[OTSession]:
        if end < start:
            raise ValidationError("End date must not be before start date.", code="INVALID_DATE_RANGE")
        return self._repository.list_ot_sessions(start, end, statuses=REVIEWABLE_STATUSES)
