from __future__ import annotations

import enum
from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from attendance_ot.db import Base


class UserRole(str, enum.Enum):
    EMPLOYEE = "employee"
    ADMIN = "admin"
    MASTER_ADMIN = "master_admin"


class OTType(str, enum.Enum):
    EARLY_ARRIVAL = "early_arrival"
    LATE_DEPARTURE = "late_departure"
    WEEKEND = "weekend"
    HOLIDAY = "holiday"


class OTSessionStatus(str, enum.Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    PENDING_REVIEW = "PENDING_REVIEW"
    APPROVED = "APPROVED"
    ADJUSTED = "ADJUSTED"
    REJECTED = "REJECTED"


class ReviewAction(str, enum.Enum):
    APPROVED = "APPROVED"
    ADJUSTED = "ADJUSTED"
    REJECTED = "REJECTED"


class PayrollPeriodStatus(str, enum.Enum):
    OPEN = "open"
    LOCKED = "locked"
    PROCESSED = "processed"


class AuditActorType(str, enum.Enum):
    EMPLOYEE = "EMPLOYEE"
    ADMIN = "ADMIN"
    SYSTEM = "SYSTEM"


class LocationValidationType(str, enum.Enum):
    EXACT = "exact"
    INDOOR_COMPENSATION = "indoor_compensation"
    PROXIMITY_BASED = "proximity_based"
    FAILED = "failed"


class DeviceType(str, enum.Enum):
    MOBILE = "mobile"
    TABLET = "tablet"
    DESKTOP = "desktop"


class LocationCapability(str, enum.Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    LIMITED = "limited"
    POOR = "poor"


TERMINAL_OT_STATUSES = frozenset({OTSessionStatus.APPROVED, OTSessionStatus.ADJUSTED, OTSessionStatus.REJECTED})
PAID_OT_STATUSES = frozenset({OTSessionStatus.COMPLETED, OTSessionStatus.APPROVED, OTSessionStatus.ADJUSTED})

JSONType = JSON().with_variant(JSONB(), "postgresql")


def _enum_column(enum_cls: type[enum.Enum], name: str) -> Enum:
    # Persist enum values (not member names) so raw SQL predicates read naturally.
    return Enum(
        enum_cls,
        name=name,
        values_callable=lambda members: [member.value for member in members],
        validate_strings=True,
    )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Department(Base):
    __tablename__ = "departments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    check_in_time: Mapped[str | None] = mapped_column(String(16), nullable=True)
    check_out_time: Mapped[str | None] = mapped_column(String(16), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))

    users: Mapped[list[User]] = relationship(back_populates="department")


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    department_id: Mapped[int | None] = mapped_column(
        ForeignKey("departments.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    role: Mapped[UserRole] = mapped_column(
        _enum_column(UserRole, "user_role"),
        nullable=False,
        default=UserRole.EMPLOYEE,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))

    department: Mapped[Department | None] = relationship(back_populates="users")
    attendance_records: Mapped[list[AttendanceRecord]] = relationship(back_populates="user")


class Holiday(Base):
    __tablename__ = "holidays"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    day: Mapped[date] = mapped_column(Date, nullable=False, unique=True, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    allow_ot: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))


class OfficeLocation(Base):
    __tablename__ = "office_locations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)
    radius_m: Mapped[int] = mapped_column(Integer, nullable=False, default=100, server_default=text("100"))
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))


class AttendanceRecord(Base):
    __tablename__ = "attendance_records"
    __table_args__ = (UniqueConstraint("user_id", "work_date", name="uq_attendance_records_user_day"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    work_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    check_in_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    check_out_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    check_in_latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    check_in_longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    check_in_accuracy_m: Mapped[float | None] = mapped_column(Float, nullable=True)
    location_validation_type: Mapped[LocationValidationType | None] = mapped_column(
        _enum_column(LocationValidationType, "location_validation_type"),
        nullable=True,
    )
    location_confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    is_ot_only: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    total_ot_hours: Mapped[float] = mapped_column(Float, nullable=False, default=0.0, server_default=text("0"))
    # Set when the scheduler fills in a forgotten check-out.
    auto_corrected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    auto_correction_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=_utcnow,
    )

    user: Mapped[User] = relationship(back_populates="attendance_records")
    ot_sessions: Mapped[list[OTSession]] = relationship(
        back_populates="attendance",
        order_by="OTSession.session_number",
    )


class OTSession(Base):
    __tablename__ = "ot_sessions"
    __table_args__ = (
        UniqueConstraint("attendance_id", "session_number", name="uq_ot_sessions_attendance_number"),
        Index(
            "uq_ot_sessions_one_open_per_user_day",
            "user_id",
            "work_date",
            unique=True,
            postgresql_where=text("status = 'in_progress'"),
            sqlite_where=text("status = 'in_progress'"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    session_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)
    attendance_id: Mapped[int] = mapped_column(
        ForeignKey("attendance_records.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    session_number: Mapped[int] = mapped_column(Integer, nullable=False)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    work_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    ot_type: Mapped[OTType] = mapped_column(_enum_column(OTType, "ot_type"), nullable=False)
    status: Mapped[OTSessionStatus] = mapped_column(
        _enum_column(OTSessionStatus, "ot_session_status"),
        nullable=False,
        default=OTSessionStatus.IN_PROGRESS,
    )
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ot_hours: Mapped[float] = mapped_column(Float, nullable=False, default=0.0, server_default=text("0"))

    start_image_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    start_latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    start_longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    start_address: Mapped[str | None] = mapped_column(Text, nullable=True)
    end_image_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    end_latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    end_longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    end_address: Mapped[str | None] = mapped_column(Text, nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    auto_closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    auto_closed_note: Mapped[str | None] = mapped_column(Text, nullable=True)

    reviewed_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    review_action: Mapped[ReviewAction | None] = mapped_column(
        _enum_column(ReviewAction, "ot_review_action"),
        nullable=True,
    )
    review_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    original_ot_hours: Mapped[float | None] = mapped_column(Float, nullable=True)
    adjusted_ot_hours: Mapped[float | None] = mapped_column(Float, nullable=True)

    payroll_locked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=_utcnow,
    )

    attendance: Mapped[AttendanceRecord] = relationship(back_populates="ot_sessions")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_OT_STATUSES


class PayrollPeriod(Base):
    __tablename__ = "payroll_periods"
    __table_args__ = (UniqueConstraint("month", "year", name="uq_payroll_periods_month_year"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[PayrollPeriodStatus] = mapped_column(
        _enum_column(PayrollPeriodStatus, "payroll_period_status"),
        nullable=False,
        default=PayrollPeriodStatus.OPEN,
    )
    locked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    locked_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    unlocked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    unlocked_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    unlock_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    @property
    def period_key(self) -> str:
        return f"payroll_{self.year}_{self.month:02d}"


class Notification(Base):
    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )


class ActivityLog(Base):
    __tablename__ = "activity_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ts_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    actor_type: Mapped[AuditActorType] = mapped_column(
        _enum_column(AuditActorType, "audit_actor_type"),
        nullable=False,
    )
    actor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    action: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    entity_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    details: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
