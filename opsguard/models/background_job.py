"""Background job model.

PostgreSQL-backed job queue: workers claim due PENDING rows with
SELECT ... FOR UPDATE SKIP LOCKED so a job is processed by one worker.
"""

import enum
import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import DateTime, Enum, Index, Integer, Text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from opsguard.models.base import Base, TimestampMixin


class JobType(str, enum.Enum):
    """Kinds of deferred work."""

    ESCALATION = "escalation"
    NOTIFICATION = "notification"
    AUTO_UNSNOOZE = "auto_unsnooze"


class JobStatus(str, enum.Enum):
    """Lifecycle of a queued job."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class BackgroundJob(Base, TimestampMixin):
    """A unit of deferred work with retry bookkeeping."""

    __tablename__ = "background_jobs"
    __table_args__ = (
        Index("ix_background_jobs_status_scheduled", "status", "scheduled_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    type: Mapped[JobType] = mapped_column(
        Enum(
            JobType,
            name="jobtype",
            create_type=False,
            values_callable=lambda e: [member.value for member in e],
        ),
        nullable=False,
    )

    status: Mapped[JobStatus] = mapped_column(
        Enum(
            JobStatus,
            name="jobstatus",
            create_type=False,
            values_callable=lambda e: [member.value for member in e],
        ),
        nullable=False,
        default=JobStatus.PENDING,
    )

    payload: Mapped[dict[str, Any]] = mapped_column(
        JSONB,
        nullable=False,
        default=dict,
    )

    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)

    scheduled_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )

    started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    failed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<BackgroundJob(type={self.type.value}, status={self.status.value}, "
            f"attempts={self.attempts}/{self.max_attempts})>"
        )
