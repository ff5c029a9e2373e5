"""Cron scheduler API schemas."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict


class CronStatusResponse(BaseModel):
    """Scheduler status for operators."""

    model_config = ConfigDict(from_attributes=True)

    running: bool
    schedule: str
    worker_id: str | None = None
    locked_by: str | None = None
    locked_at: datetime | None = None
    next_run_at: datetime | None = None
    last_run_at: datetime | None = None
    last_success_at: datetime | None = None
    last_error: str | None = None


class EscalationBatchResponse(BaseModel):
    """Result of an on-demand escalation batch."""

    model_config = ConfigDict(from_attributes=True)

    processed: int
    total: int
    errors: list[str] | None = None
