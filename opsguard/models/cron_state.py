"""Cron scheduler state model.

A single row (id = 'singleton') shared by every worker process. It is both
the distributed lock (locked_by / locked_at) and the scheduling clock.
"""

from datetime import date, datetime

from sqlalchemy import Date, DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from opsguard.models.base import Base

CRON_STATE_ID = "singleton"


class CronSchedulerState(Base):
    """Lease and bookkeeping for the background scheduler."""

    __tablename__ = "cron_scheduler_state"

    id: Mapped[str] = mapped_column(
        String(32),
        primary_key=True,
        default=CRON_STATE_ID,
    )

    # Worker id of the current lease holder
    locked_by: Mapped[str | None] = mapped_column(String(64), nullable=True)

    locked_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    next_run_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    last_run_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    last_success_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    last_rollup_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<CronSchedulerState(locked_by={self.locked_by}, "
            f"next_run_at={self.next_run_at})>"
        )
