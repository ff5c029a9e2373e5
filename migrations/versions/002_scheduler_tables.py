"""Create scheduler state, background jobs and notifications.

Revision ID: 002
Revises: 001
Create Date: 2026-10-19

"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "002_scheduler_tables"
down_revision: str | None = "001_core_schema"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

JOB_TYPE = ("escalation", "notification", "auto_unsnooze")
JOB_STATUS = ("pending", "processing", "completed", "failed")
CHANNEL = ("email", "sms", "push", "slack", "webhook", "whatsapp")
NOTIFICATION_STATUS = ("pending", "sent", "failed")


def upgrade() -> None:
    bind = op.get_bind()
    postgresql.ENUM(*JOB_TYPE, name="jobtype").create(bind, checkfirst=True)
    postgresql.ENUM(*JOB_STATUS, name="jobstatus").create(bind, checkfirst=True)
    postgresql.ENUM(*CHANNEL, name="notificationchannel").create(bind, checkfirst=True)
    postgresql.ENUM(*NOTIFICATION_STATUS, name="notificationstatus").create(
        bind, checkfirst=True
    )

    # Singleton row; inserted on first use by the scheduler
    op.create_table(
        "cron_scheduler_state",
        sa.Column("id", sa.String(length=32), nullable=False),
        sa.Column("locked_by", sa.String(length=64), nullable=True),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_success_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("last_rollup_date", sa.Date(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "background_jobs",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column(
            "type",
            postgresql.ENUM(*JOB_TYPE, name="jobtype", create_type=False),
            nullable=False,
        ),
        sa.Column(
            "status",
            postgresql.ENUM(*JOB_STATUS, name="jobstatus", create_type=False),
            nullable=False,
            server_default="pending",
        ),
        sa.Column(
            "payload",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column(
            "scheduled_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_background_jobs_status_scheduled",
        "background_jobs",
        ["status", "scheduled_at"],
    )

    op.create_table(
        "notifications",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("incident_id", sa.UUID(), nullable=False),
        sa.Column("user_id", sa.UUID(), nullable=False),
        sa.Column(
            "channel",
            postgresql.ENUM(*CHANNEL, name="notificationchannel", create_type=False),
            nullable=False,
        ),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column(
            "status",
            postgresql.ENUM(
                *NOTIFICATION_STATUS, name="notificationstatus", create_type=False
            ),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_msg", sa.Text(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.ForeignKeyConstraint(["incident_id"], ["incidents.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_notifications_incident_id", "notifications", ["incident_id"])
    op.create_index("ix_notifications_user_id", "notifications", ["user_id"])
    op.create_index(
        "ix_notifications_status_failed_at",
        "notifications",
        ["status", "failed_at"],
    )


def downgrade() -> None:
    op.drop_table("notifications")
    op.drop_table("background_jobs")
    op.drop_table("cron_scheduler_state")

    bind = op.get_bind()
    postgresql.ENUM(name="notificationstatus").drop(bind, checkfirst=True)
    postgresql.ENUM(name="notificationchannel").drop(bind, checkfirst=True)
    postgresql.ENUM(name="jobstatus").drop(bind, checkfirst=True)
    postgresql.ENUM(name="jobtype").drop(bind, checkfirst=True)
