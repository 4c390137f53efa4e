from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import date
from typing import Any, Iterable, Optional, Protocol, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload, sessionmaker

from attendance_ot.errors import ConflictError, InfrastructureError, NotFoundError
from attendance_ot.models import (
    PAID_OT_STATUSES,
    ActivityLog,
    AttendanceRecord,
    Department,
    Holiday,
    Notification,
    OfficeLocation,
    OTSession,
    OTSessionStatus,
    PayrollPeriod,
    User,
)

logger = logging.getLogger("attendance_ot.repository")


class AttendanceRepository(Protocol):
    """Persistence seam consumed by the OT lifecycle, lock guard and scheduler.

    Returned ORM objects are detached snapshots; mutations go through the
    ``update_*`` methods so every write is a single short transaction.
    """

    def get_user(self, user_id: int) -> Optional[User]:
        raise NotImplementedError

    def get_department_timing(self, department_id: int) -> Optional[Department]:
        raise NotImplementedError

    def get_holiday(self, day: date) -> Optional[Holiday]:
        raise NotImplementedError

    def list_office_locations(self) -> Sequence[OfficeLocation]:
        raise NotImplementedError

    def list_attendance_by_date_range(self, start: date, end: date) -> Sequence[AttendanceRecord]:
        """Records with ``start <= work_date <= end``, sessions loaded."""

        raise NotImplementedError

    def get_attendance(self, attendance_id: int) -> Optional[AttendanceRecord]:
        raise NotImplementedError

    def get_attendance_for_user_day(self, user_id: int, work_date: date) -> Optional[AttendanceRecord]:
        raise NotImplementedError

    def create_attendance(self, record: AttendanceRecord) -> AttendanceRecord:
        """Insert a day record; returns the existing one if another writer won."""

        raise NotImplementedError

    def update_attendance(self, attendance_id: int, patch: dict[str, Any]) -> AttendanceRecord:
        raise NotImplementedError

    def close_open_checkout(self, attendance_id: int, patch: dict[str, Any]) -> Optional[AttendanceRecord]:
        """Apply ``patch`` only while the record is checked in and not checked out;
        returns None otherwise."""

        raise NotImplementedError

    def refresh_total_ot_hours(self, attendance_id: int) -> float:
        raise NotImplementedError

    def add_ot_session(self, session: OTSession) -> OTSession:
        """Insert a session. Raises ConflictError when the user already has an
        open session that day or the session number was taken."""

        raise NotImplementedError

    def find_ot_session(self, session_id: str) -> Optional[OTSession]:
        raise NotImplementedError

    def list_open_ot_sessions(self, before: date) -> Sequence[OTSession]:
        """``in_progress`` sessions with ``work_date < before``."""

        raise NotImplementedError

    def update_ot_session(
        self,
        session_id: str,
        patch: dict[str, Any],
        *,
        expected_status: OTSessionStatus | Iterable[OTSessionStatus] | None = None,
    ) -> Optional[OTSession]:
        """Apply ``patch``; returns None when the current status is not expected."""

        raise NotImplementedError

    def list_ot_sessions(
        self,
        start: date,
        end: date,
        *,
        statuses: Iterable[OTSessionStatus] | None = None,
    ) -> Sequence[OTSession]:
        raise NotImplementedError

    def set_sessions_payroll_locked(self, start: date, end: date, locked: bool) -> int:
        raise NotImplementedError

    def create_notification(self, *, user_id: int, type: str, title: str, message: str) -> Notification:
        raise NotImplementedError

    def create_activity_log(self, entry: ActivityLog) -> ActivityLog:
        raise NotImplementedError

    def get_payroll_period(self, month: int, year: int) -> Optional[PayrollPeriod]:
        raise NotImplementedError

    def create_payroll_period(self, period: PayrollPeriod) -> PayrollPeriod:
        raise NotImplementedError

    def update_payroll_period(self, period_id: int, patch: dict[str, Any]) -> PayrollPeriod:
        raise NotImplementedError

    def list_payroll_periods(self, year: int) -> Sequence[PayrollPeriod]:
        raise NotImplementedError


def _as_status_set(
    expected_status: OTSessionStatus | Iterable[OTSessionStatus] | None,
) -> set[OTSessionStatus] | None:
    if expected_status is None:
        return None
    if isinstance(expected_status, OTSessionStatus):
        return {expected_status}
    return set(expected_status)


class SqlAttendanceRepository(AttendanceRepository):
    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    @contextmanager
    def _session(self) -> Iterator[Session]:
        db = self._session_factory()
        try:
            yield db
            db.commit()
        except IntegrityError:
            db.rollback()
            raise
        except SQLAlchemyError as exc:
            db.rollback()
            logger.exception("repository_operation_failed")
            raise InfrastructureError("Storage is temporarily unavailable.") from exc
        finally:
            db.close()

    def get_user(self, user_id: int) -> Optional[User]:
        with self._session() as db:
            return db.scalar(select(User).options(selectinload(User.department)).where(User.id == user_id))

    def get_department_timing(self, department_id: int) -> Optional[Department]:
        with self._session() as db:
            return db.get(Department, department_id)

    def get_holiday(self, day: date) -> Optional[Holiday]:
        with self._session() as db:
            return db.scalar(select(Holiday).where(Holiday.day == day, Holiday.is_active.is_(True)))

    def list_office_locations(self) -> Sequence[OfficeLocation]:
        with self._session() as db:
            return list(db.scalars(select(OfficeLocation).order_by(OfficeLocation.id.asc())).all())

    def list_attendance_by_date_range(self, start: date, end: date) -> Sequence[AttendanceRecord]:
        with self._session() as db:
            return list(
                db.scalars(
                    select(AttendanceRecord)
                    .options(selectinload(AttendanceRecord.ot_sessions))
                    .where(AttendanceRecord.work_date >= start, AttendanceRecord.work_date <= end)
                    .order_by(AttendanceRecord.work_date.asc(), AttendanceRecord.id.asc())
                ).all()
            )

    def get_attendance(self, attendance_id: int) -> Optional[AttendanceRecord]:
        with self._session() as db:
            return db.scalar(
                select(AttendanceRecord)
                .options(selectinload(AttendanceRecord.ot_sessions))
                .where(AttendanceRecord.id == attendance_id)
            )

    def get_attendance_for_user_day(self, user_id: int, work_date: date) -> Optional[AttendanceRecord]:
        with self._session() as db:
            return db.scalar(
                select(AttendanceRecord)
                .options(selectinload(AttendanceRecord.ot_sessions))
                .where(AttendanceRecord.user_id == user_id, AttendanceRecord.work_date == work_date)
            )

    def create_attendance(self, record: AttendanceRecord) -> AttendanceRecord:
        try:
            with self._session() as db:
                db.add(record)
                db.flush()
                record_id = record.id
        except IntegrityError:
            existing = self.get_attendance_for_user_day(record.user_id, record.work_date)
            if existing is None:
                raise ConflictError("Attendance record could not be created.")
            return existing
        created = self.get_attendance(record_id)
        if created is None:
            raise NotFoundError("Attendance record not found.")
        return created

    def update_attendance(self, attendance_id: int, patch: dict[str, Any]) -> AttendanceRecord:
        with self._session() as db:
            record = db.get(AttendanceRecord, attendance_id)
            if record is None:
                raise NotFoundError("Attendance record not found.")
            for key, value in patch.items():
                setattr(record, key, value)
        updated = self.get_attendance(attendance_id)
        if updated is None:
            raise NotFoundError("Attendance record not found.")
        return updated

    def close_open_checkout(self, attendance_id: int, patch: dict[str, Any]) -> Optional[AttendanceRecord]:
        with self._session() as db:
            record = db.scalar(
                select(AttendanceRecord).where(AttendanceRecord.id == attendance_id).with_for_update()
            )
            if record is None:
                raise NotFoundError("Attendance record not found.")
            if record.check_in_time is None or record.check_out_time is not None:
                return None
            for key, value in patch.items():
                setattr(record, key, value)
        return self.get_attendance(attendance_id)

    def refresh_total_ot_hours(self, attendance_id: int) -> float:
        with self._session() as db:
            total = db.scalar(
                select(func.coalesce(func.sum(OTSession.ot_hours), 0.0)).where(
                    OTSession.attendance_id == attendance_id,
                    OTSession.status.in_(list(PAID_OT_STATUSES)),
                )
            )
            total_hours = round(float(total or 0.0), 2)
            db.execute(
                update(AttendanceRecord)
                .where(AttendanceRecord.id == attendance_id)
                .values(total_ot_hours=total_hours)
            )
            return total_hours

    def add_ot_session(self, session: OTSession) -> OTSession:
        try:
            with self._session() as db:
                db.add(session)
        except IntegrityError as exc:
            raise ConflictError(
                "You already have an active OT session. Please end it first.",
                code="OT_SESSION_ALREADY_ACTIVE",
            ) from exc
        created = self.find_ot_session(session.session_id)
        if created is None:
            raise NotFoundError("OT session not found.")
        return created

    def find_ot_session(self, session_id: str) -> Optional[OTSession]:
        with self._session() as db:
            return db.scalar(
                select(OTSession)
                .options(selectinload(OTSession.attendance))
                .where(OTSession.session_id == session_id)
            )

    def list_open_ot_sessions(self, before: date) -> Sequence[OTSession]:
        with self._session() as db:
            return list(
                db.scalars(
                    select(OTSession)
                    .options(selectinload(OTSession.attendance))
                    .where(OTSession.status == OTSessionStatus.IN_PROGRESS, OTSession.work_date < before)
                    .order_by(OTSession.work_date.asc(), OTSession.start_time.asc())
                ).all()
            )

    def update_ot_session(
        self,
        session_id: str,
        patch: dict[str, Any],
        *,
        expected_status: OTSessionStatus | Iterable[OTSessionStatus] | None = None,
    ) -> Optional[OTSession]:
        allowed = _as_status_set(expected_status)
        with self._session() as db:
            session = db.scalar(
                select(OTSession).where(OTSession.session_id == session_id).with_for_update()
            )
            if session is None:
                raise NotFoundError("OT session not found.", code="OT_SESSION_NOT_FOUND")
            if allowed is not None and session.status not in allowed:
                return None
            for key, value in patch.items():
                setattr(session, key, value)
        return self.find_ot_session(session_id)

    def list_ot_sessions(
        self,
        start: date,
        end: date,
        *,
        statuses: Iterable[OTSessionStatus] | None = None,
    ) -> Sequence[OTSession]:
        statement = (
            select(OTSession)
            .options(selectinload(OTSession.attendance))
            .where(OTSession.work_date >= start, OTSession.work_date <= end)
            .order_by(OTSession.work_date.desc(), OTSession.start_time.desc())
        )
        if statuses is not None:
            statement = statement.where(OTSession.status.in_(list(statuses)))
        with self._session() as db:
            return list(db.scalars(statement).all())

    def set_sessions_payroll_locked(self, start: date, end: date, locked: bool) -> int:
        with self._session() as db:
            result = db.execute(
                update(OTSession)
                .where(OTSession.work_date >= start, OTSession.work_date <= end)
                .values(payroll_locked=locked)
            )
            return int(result.rowcount or 0)

    def create_notification(self, *, user_id: int, type: str, title: str, message: str) -> Notification:
        notification = Notification(user_id=user_id, type=type, title=title, message=message, is_read=False)
        with self._session() as db:
            db.add(notification)
        return notification

    def create_activity_log(self, entry: ActivityLog) -> ActivityLog:
        with self._session() as db:
            db.add(entry)
        return entry

    def get_payroll_period(self, month: int, year: int) -> Optional[PayrollPeriod]:
        with self._session() as db:
            return db.scalar(
                select(PayrollPeriod).where(PayrollPeriod.month == month, PayrollPeriod.year == year)
            )

    def create_payroll_period(self, period: PayrollPeriod) -> PayrollPeriod:
        try:
            with self._session() as db:
                db.add(period)
        except IntegrityError as exc:
            raise ConflictError("Payroll period already exists.") from exc
        return period

    def update_payroll_period(self, period_id: int, patch: dict[str, Any]) -> PayrollPeriod:
        with self._session() as db:
            period = db.get(PayrollPeriod, period_id)
            if period is None:
                raise NotFoundError("Payroll period not found.")
            for key, value in patch.items():
                setattr(period, key, value)
        return period

    def list_payroll_periods(self, year: int) -> Sequence[PayrollPeriod]:
        with self._session() as db:
            return list(
                db.scalars(
                    select(PayrollPeriod).where(PayrollPeriod.year == year).order_by(PayrollPeriod.month.asc())
                ).all()
            )
