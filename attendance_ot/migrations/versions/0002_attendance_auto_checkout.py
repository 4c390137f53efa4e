"""Track automatic check-out corrections on attendance records

Revision ID: 0002_attendance_auto_checkout
Revises: 0001_initial
Create Date: 2026-10-19 12:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "0002_attendance_auto_checkout"
down_revision: Union[str, None] = "0001_initial"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column("attendance_records", sa.Column("auto_corrected_at", sa.DateTime(timezone=True), nullable=True))
    op.add_column("attendance_records", sa.Column("auto_correction_reason", sa.Text(), nullable=True))


def downgrade() -> None:
    op.drop_column("attendance_records", "auto_correction_reason")
    op.drop_column("attendance_records", "auto_corrected_at")
