"""Initial attendance and OT schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19 00:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

user_role = postgresql.ENUM("employee", "admin", "master_admin", name="user_role", create_type=False)
location_validation_type = postgresql.ENUM(
    "exact",
    "indoor_compensation",
    "proximity_based",
    "failed",
    name="location_validation_type",
    create_type=False,
)
ot_type = postgresql.ENUM(
    "early_arrival",
    "late_departure",
    "weekend",
    "holiday",
    name="ot_type",
    create_type=False,
)
ot_session_status = postgresql.ENUM(
    "in_progress",
    "completed",
    "PENDING_REVIEW",
    "APPROVED",
    "ADJUSTED",
    "REJECTED",
    name="ot_session_status",
    create_type=False,
)
ot_review_action = postgresql.ENUM("APPROVED", "ADJUSTED", "REJECTED", name="ot_review_action", create_type=False)
payroll_period_status = postgresql.ENUM(
    "open",
    "locked",
    "processed",
    name="payroll_period_status",
    create_type=False,
)
audit_actor_type = postgresql.ENUM("EMPLOYEE", "ADMIN", "SYSTEM", name="audit_actor_type", create_type=False)

_ENUMS = (
    user_role,
    location_validation_type,
    ot_type,
    ot_session_status,
    ot_review_action,
    payroll_period_status,
    audit_actor_type,
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    for enum_type in _ENUMS:
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        "departments",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("check_in_time", sa.String(length=16), nullable=True),
        sa.Column("check_out_time", sa.String(length=16), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.UniqueConstraint("name", name="uq_departments_name"),
    )

    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("full_name", sa.String(length=255), nullable=False),
        sa.Column("department_id", sa.Integer(), nullable=True),
        sa.Column("role", user_role, nullable=False, server_default=sa.text("'employee'")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.ForeignKeyConstraint(["department_id"], ["departments.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_users_department_id", "users", ["department_id"])

    op.create_table(
        "holidays",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("day", sa.Date(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("allow_ot", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
    )
    op.create_index("ix_holidays_day", "holidays", ["day"], unique=True)

    op.create_table(
        "office_locations",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("latitude", sa.Float(), nullable=False),
        sa.Column("longitude", sa.Float(), nullable=False),
        sa.Column("radius_m", sa.Integer(), nullable=False, server_default=sa.text("100")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
    )

    op.create_table(
        "attendance_records",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("work_date", sa.Date(), nullable=False),
        sa.Column("check_in_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("check_out_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("check_in_latitude", sa.Float(), nullable=True),
        sa.Column("check_in_longitude", sa.Float(), nullable=True),
        sa.Column("check_in_accuracy_m", sa.Float(), nullable=True),
        sa.Column("location_validation_type", location_validation_type, nullable=True),
        sa.Column("location_confidence", sa.Float(), nullable=True),
        sa.Column("is_ot_only", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("total_ot_hours", sa.Float(), nullable=False, server_default=sa.text("0")),
        *_timestamps(),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("user_id", "work_date", name="uq_attendance_records_user_day"),
    )
    op.create_index("ix_attendance_records_user_id", "attendance_records", ["user_id"])
    op.create_index("ix_attendance_records_work_date", "attendance_records", ["work_date"])

    op.create_table(
        "ot_sessions",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("session_id", sa.String(length=64), nullable=False),
        sa.Column("attendance_id", sa.Integer(), nullable=False),
        sa.Column("session_number", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("work_date", sa.Date(), nullable=False),
        sa.Column("ot_type", ot_type, nullable=False),
        sa.Column("status", ot_session_status, nullable=False, server_default=sa.text("'in_progress'")),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ot_hours", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("start_image_url", sa.Text(), nullable=True),
        sa.Column("start_latitude", sa.Float(), nullable=True),
        sa.Column("start_longitude", sa.Float(), nullable=True),
        sa.Column("start_address", sa.Text(), nullable=True),
        sa.Column("end_image_url", sa.Text(), nullable=True),
        sa.Column("end_latitude", sa.Float(), nullable=True),
        sa.Column("end_longitude", sa.Float(), nullable=True),
        sa.Column("end_address", sa.Text(), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("auto_closed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("auto_closed_note", sa.Text(), nullable=True),
        sa.Column("reviewed_by", sa.Integer(), nullable=True),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("review_action", ot_review_action, nullable=True),
        sa.Column("review_notes", sa.Text(), nullable=True),
        sa.Column("original_ot_hours", sa.Float(), nullable=True),
        sa.Column("adjusted_ot_hours", sa.Float(), nullable=True),
        sa.Column("payroll_locked", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        *_timestamps(),
        sa.ForeignKeyConstraint(["attendance_id"], ["attendance_records.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="RESTRICT"),
        sa.UniqueConstraint("attendance_id", "session_number", name="uq_ot_sessions_attendance_number"),
    )
    op.create_index("ix_ot_sessions_session_id", "ot_sessions", ["session_id"], unique=True)
    op.create_index("ix_ot_sessions_attendance_id", "ot_sessions", ["attendance_id"])
    op.create_index("ix_ot_sessions_work_date", "ot_sessions", ["work_date"])
    op.create_index(
        "uq_ot_sessions_one_open_per_user_day",
        "ot_sessions",
        ["user_id", "work_date"],
        unique=True,
        postgresql_where=sa.text("status = 'in_progress'"),
    )

    op.create_table(
        "payroll_periods",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("status", payroll_period_status, nullable=False, server_default=sa.text("'open'")),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("locked_by", sa.Integer(), nullable=True),
        sa.Column("unlocked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("unlocked_by", sa.Integer(), nullable=True),
        sa.Column("unlock_reason", sa.Text(), nullable=True),
        sa.UniqueConstraint("month", "year", name="uq_payroll_periods_month_year"),
    )

    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("type", sa.String(length=64), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_notifications_user_id", "notifications", ["user_id"])

    op.create_table(
        "activity_logs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("ts_utc", sa.DateTime(timezone=True), nullable=False),
        sa.Column("actor_type", audit_actor_type, nullable=False),
        sa.Column("actor_id", sa.String(length=64), nullable=False),
        sa.Column("action", sa.String(length=100), nullable=False),
        sa.Column("entity_type", sa.String(length=64), nullable=True),
        sa.Column("entity_id", sa.String(length=64), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column(
            "details",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
    )
    op.create_index("ix_activity_logs_action", "activity_logs", ["action"])
    op.create_index("ix_activity_logs_entity_id", "activity_logs", ["entity_id"])


def downgrade() -> None:
    op.drop_index("ix_activity_logs_entity_id", table_name="activity_logs")
    op.drop_index("ix_activity_logs_action", table_name="activity_logs")
    op.drop_table("activity_logs")
    op.drop_index("ix_notifications_user_id", table_name="notifications")
    op.drop_table("notifications")
    op.drop_table("payroll_periods")
    op.drop_index("uq_ot_sessions_one_open_per_user_day", table_name="ot_sessions")
    op.drop_index("ix_ot_sessions_work_date", table_name="ot_sessions")
    op.drop_index("ix_ot_sessions_attendance_id", table_name="ot_sessions")
    op.drop_index("ix_ot_sessions_session_id", table_name="ot_sessions")
    op.drop_table("ot_sessions")
    op.drop_index("ix_attendance_records_work_date", table_name="attendance_records")
    op.drop_index("ix_attendance_records_user_id", table_name="attendance_records")
    op.drop_table("attendance_records")
    op.drop_table("office_locations")
    op.drop_index("ix_holidays_day", table_name="holidays")
    op.drop_table("holidays")
    op.drop_index("ix_users_department_id", table_name="users")
    op.drop_table("users")
    op.drop_table("departments")

    bind = op.get_bind()
    for enum_type in reversed(_ENUMS):
        enum_type.drop(bind, checkfirst=True)
