"""Auto-closeout settings, location heartbeats and pending countdowns

Revision ID: 0002_auto_closeout
Revises: 0001_initial
Create Date: 2026-10-19 00:00:01
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0002_auto_closeout"
down_revision: Union[str, None] = "0001_initial"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

closeout_reason = postgresql.ENUM(
    "GPS_BLOCKED",
    "OUTSIDE_BRANCH",
    name="closeout_reason",
    create_type=False,
)
pending_closeout_status = postgresql.ENUM(
    "PENDING",
    "CANCELLED",
    "DONE",
    name="pending_closeout_status",
    create_type=False,
)
pending_cancel_reason = postgresql.ENUM(
    "RECOVERED",
    "ALREADY_CLOSED",
    "DISABLED",
    name="pending_cancel_reason",
    create_type=False,
)


def upgrade() -> None:
    bind = op.get_bind()
    closeout_reason.create(bind, checkfirst=True)
    pending_closeout_status.create(bind, checkfirst=True)
    pending_cancel_reason.create(bind, checkfirst=True)

    op.create_table(
        "auto_closeout_settings",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("grace_seconds", sa.Integer(), nullable=False, server_default=sa.text("900")),
        sa.Column("confirm_samples", sa.Integer(), nullable=False, server_default=sa.text("3")),
        sa.Column("sample_interval_seconds", sa.Integer(), nullable=False, server_default=sa.text("15")),
        sa.Column("max_accuracy_meters", sa.Integer(), nullable=False, server_default=sa.text("80")),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("tenant_id", name="uq_auto_closeout_settings_tenant_id"),
        sa.CheckConstraint("grace_seconds BETWEEN 60 AND 3600", name="ck_auto_closeout_settings_grace"),
        sa.CheckConstraint("confirm_samples BETWEEN 1 AND 10", name="ck_auto_closeout_settings_samples"),
        sa.CheckConstraint(
            "sample_interval_seconds BETWEEN 5 AND 60",
            name="ck_auto_closeout_settings_interval",
        ),
    )

    op.create_table(
        "location_heartbeats",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column("session_id", sa.Integer(), nullable=True),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("inside_area", sa.Boolean(), nullable=False),
        sa.Column("signal_usable", sa.Boolean(), nullable=False),
        sa.Column("reason", sa.String(length=50), nullable=True),
        sa.Column("lat", sa.Float(), nullable=True),
        sa.Column("lon", sa.Float(), nullable=True),
        sa.Column("accuracy_m", sa.Float(), nullable=True),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["session_id"], ["attendance_sessions.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("employee_id", name="uq_location_heartbeats_employee_id"),
    )
    op.create_index("ix_location_heartbeats_tenant_id", "location_heartbeats", ["tenant_id"])

    op.create_table(
        "pending_auto_closeouts",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("session_id", sa.Integer(), nullable=False),
        sa.Column("reason", closeout_reason, nullable=False),
        sa.Column("ends_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "status",
            pending_closeout_status,
            nullable=False,
            server_default=sa.text("'PENDING'"),
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_reason", pending_cancel_reason, nullable=True),
        sa.Column("done_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "session_already_closed",
            sa.Boolean(),
            nullable=False,
            server_default=sa.text("false"),
        ),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["session_id"], ["attendance_sessions.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_pending_auto_closeouts_tenant_id", "pending_auto_closeouts", ["tenant_id"])
    op.create_index("ix_pending_auto_closeouts_employee_id", "pending_auto_closeouts", ["employee_id"])
    op.create_index("ix_pending_auto_closeouts_session_id", "pending_auto_closeouts", ["session_id"])
    op.create_index(
        "ix_pending_auto_closeouts_status_ends_at",
        "pending_auto_closeouts",
        ["status", "ends_at"],
    )
    op.create_index(
        "uq_pending_auto_closeouts_live",
        "pending_auto_closeouts",
        ["employee_id", "session_id"],
        unique=True,
        postgresql_where=sa.text("status = 'PENDING'"),
    )


def downgrade() -> None:
    op.drop_index("uq_pending_auto_closeouts_live", table_name="pending_auto_closeouts")
    op.drop_index("ix_pending_auto_closeouts_status_ends_at", table_name="pending_auto_closeouts")
    op.drop_index("ix_pending_auto_closeouts_session_id", table_name="pending_auto_closeouts")
    op.drop_index("ix_pending_auto_closeouts_employee_id", table_name="pending_auto_closeouts")
    op.drop_index("ix_pending_auto_closeouts_tenant_id", table_name="pending_auto_closeouts")
    op.drop_table("pending_auto_closeouts")
    op.drop_index("ix_location_heartbeats_tenant_id", table_name="location_heartbeats")
    op.drop_table("location_heartbeats")
    op.drop_table("auto_closeout_settings")

    bind = op.get_bind()
    pending_cancel_reason.drop(bind, checkfirst=True)
    pending_closeout_status.drop(bind, checkfirst=True)
    closeout_reason.drop(bind, checkfirst=True)
