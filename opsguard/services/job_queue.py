"""PostgreSQL-backed background job queue.

Jobs are rows in background_jobs. Workers claim due PENDING jobs with
SELECT ... FOR UPDATE SKIP LOCKED, so concurrent workers never run the same
job. Failed jobs are retried with exponential backoff until max_attempts.
"""

import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from opsguard.config import settings
from opsguard.logging_config import get_logger
from opsguard.models.background_job import BackgroundJob, JobStatus, JobType
from opsguard.models.incident import EscalationStatus, Incident, IncidentStatus
from opsguard.models.notification import NotificationChannel
from opsguard.services.notifications import NotificationPayload, send_notification
from opsguard.services.snooze import unsnooze_incident

logger = get_logger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
RETRY_BASE_DELAY = timedelta(seconds=30)
RETRY_MAX_DELAY = timedelta(minutes=10)

# PROCESSING jobs older than this were abandoned by a crashed worker
STALE_JOB_TIMEOUT = timedelta(minutes=10)


class JobHandlerError(Exception):
    """A job handler could not complete its work."""


@dataclass
class JobRunResult:
    """Summary of one queue run."""

    processed: int
    failed: int
    total: int


JobHandler = Callable[[AsyncSession, dict[str, Any]], Awaitable[None]]


async def schedule_job(
    db: AsyncSession,
    job_type: JobType,
    payload: dict[str, Any],
    scheduled_at: datetime | None = None,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> BackgroundJob:
    """Queue a job. The caller owns the transaction."""
    job = BackgroundJob(
        type=job_type,
        status=JobStatus.PENDING,
        payload=payload,
        attempts=0,
        max_attempts=max_attempts,
        scheduled_at=scheduled_at or datetime.now(UTC),
    )
    db.add(job)
    await db.flush()

    logger.debug(
        "Job scheduled",
        job_type=job_type.value,
        scheduled_at=job.scheduled_at.isoformat(),
    )
    return job


async def schedule_escalation(
    db: AsyncSession,
    incident_id: uuid.UUID,
    at: datetime,
) -> BackgroundJob:
    return await schedule_job(
        db, JobType.ESCALATION, {"incident_id": str(incident_id)}, at
    )


async def schedule_auto_unsnooze(
    db: AsyncSession,
    incident_id: uuid.UUID,
    at: datetime,
) -> BackgroundJob:
    return await schedule_job(
        db, JobType.AUTO_UNSNOOZE, {"incident_id": str(incident_id)}, at
    )


async def schedule_notification(
    db: AsyncSession,
    incident_id: uuid.UUID,
    user_id: uuid.UUID,
    channel: NotificationChannel,
    title: str,
    message: str,
    at: datetime | None = None,
) -> BackgroundJob:
    return await schedule_job(
        db,
        JobType.NOTIFICATION,
        {
            "incident_id": str(incident_id),
            "user_id": str(user_id),
            "channel": channel.value,
            "title": title,
            "message": message,
        },
        at,
    )


def retry_backoff(attempts: int) -> timedelta:
    """Delay before retrying a job that has failed `attempts` times."""
    return min(RETRY_BASE_DELAY * (2 ** max(attempts - 1, 0)), RETRY_MAX_DELAY)


async def claim_pending_jobs(
    db: AsyncSession,
    limit: int,
    job_type: JobType | None = None,
) -> list[BackgroundJob]:
    """Claim due PENDING jobs for this worker and mark them PROCESSING.

    Rows locked by another worker's claim are skipped.
    """
    now = datetime.now(UTC)
    query = (
        select(BackgroundJob)
        .where(
            BackgroundJob.status == JobStatus.PENDING,
            BackgroundJob.scheduled_at <= now,
        )
        .order_by(BackgroundJob.scheduled_at.asc())
        .limit(limit)
        .with_for_update(skip_locked=True)
    )
    if job_type is not None:
        query = query.where(BackgroundJob.type == job_type)

    result = await db.execute(query)
    jobs = list(result.scalars().all())

    for job in jobs:
        job.status = JobStatus.PROCESSING
        job.started_at = now
    await db.commit()

    # Detached so a handler rollback cannot expire them
    for job in jobs:
        db.expunge(job)

    return jobs


async def recover_stale_jobs(db: AsyncSession) -> int:
    """Return abandoned PROCESSING jobs to PENDING."""
    cutoff = datetime.now(UTC) - STALE_JOB_TIMEOUT
    result = await db.execute(
        update(BackgroundJob)
        .where(
            BackgroundJob.status == JobStatus.PROCESSING,
            BackgroundJob.started_at < cutoff,
        )
        .values(status=JobStatus.PENDING, started_at=None)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if result.rowcount:
        logger.warning("Recovered stale background jobs", count=result.rowcount)
    return result.rowcount or 0


def _payload_uuid(payload: dict[str, Any], key: str) -> uuid.UUID:
    try:
        return uuid.UUID(str(payload[key]))
    except (KeyError, ValueError) as e:
        raise JobHandlerError(f"Invalid job payload: missing or bad {key}") from e


async def handle_escalation_job(db: AsyncSession, payload: dict[str, Any]) -> None:
    """Run a scheduled escalation step if the incident still needs it.

    The batch processor may already have handled the step; anything that is
    no longer ESCALATING and due is a no-op.
    """
    from opsguard.services.escalation_engine import (
        ESCALATABLE_STATUSES,
        execute_escalation,
    )

    incident_id = _payload_uuid(payload, "incident_id")
    result = await db.execute(
        select(
            Incident.status,
            Incident.escalation_status,
            Incident.next_escalation_at,
            Incident.current_escalation_step,
        ).where(Incident.id == incident_id)
    )
    row = result.one_or_none()
    if row is None:
        return

    status, escalation_status, next_escalation_at, current_step = row
    if (
        escalation_status != EscalationStatus.ESCALATING
        or status not in ESCALATABLE_STATUSES
        or next_escalation_at is None
        or next_escalation_at > datetime.now(UTC)
    ):
        return

    await execute_escalation(db, incident_id, current_step or 0)


async def handle_auto_unsnooze_job(db: AsyncSession, payload: dict[str, Any]) -> None:
    """Reopen a snoozed incident whose snooze has expired."""
    incident_id = _payload_uuid(payload, "incident_id")
    incident = await db.get(Incident, incident_id)
    if incident is None or incident.status != IncidentStatus.SNOOZED:
        return
    if incident.snoozed_until is not None and incident.snoozed_until > datetime.now(UTC):
        # Snooze was extended; a later job owns the wake-up
        return

    unsnooze_incident(db, incident, "Incident auto-unsnoozed (snooze duration expired)")


async def handle_notification_job(db: AsyncSession, payload: dict[str, Any]) -> None:
    incident_id = _payload_uuid(payload, "incident_id")
    user_id = _payload_uuid(payload, "user_id")
    try:
        channel = NotificationChannel(payload.get("channel", NotificationChannel.EMAIL.value))
    except ValueError as e:
        raise JobHandlerError(f"Unknown notification channel: {payload.get('channel')}") from e

    delivery = await send_notification(
        db,
        user_id,
        channel,
        NotificationPayload(
            incident_id=incident_id,
            title=payload.get("title", ""),
            message=payload.get("message", ""),
        ),
    )
    if not delivery.success:
        raise JobHandlerError(delivery.error or "Notification delivery failed")


JOB_HANDLERS: dict[JobType, JobHandler] = {
    JobType.ESCALATION: handle_escalation_job,
    JobType.AUTO_UNSNOOZE: handle_auto_unsnooze_job,
    JobType.NOTIFICATION: handle_notification_job,
}


async def process_job(db: AsyncSession, job: BackgroundJob) -> bool:
    """Run one claimed job and record the outcome.

    Returns:
        True if the job completed, False if it failed (it is rescheduled
        with backoff below max_attempts and marked FAILED at the cap).
    """
    job_id = job.id
    job_type = job.type
    attempt = (job.attempts or 0) + 1
    max_attempts = job.max_attempts or DEFAULT_MAX_ATTEMPTS

    try:
        handler = JOB_HANDLERS.get(job_type)
        if handler is None:
            raise JobHandlerError(f"No handler for job type {job_type}")
        await handler(db, dict(job.payload or {}))
    except Exception as e:
        await db.rollback()
        now = datetime.now(UTC)
        values: dict[str, Any] = {"attempts": attempt, "error": str(e) or type(e).__name__}
        if attempt >= max_attempts:
            values.update(status=JobStatus.FAILED, failed_at=now)
        else:
            values.update(
                status=JobStatus.PENDING,
                scheduled_at=now + retry_backoff(attempt),
                started_at=None,
            )
        await db.execute(
            update(BackgroundJob)
            .where(BackgroundJob.id == job_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await db.commit()

        logger.warning(
            "Background job failed",
            job_id=str(job_id),
            job_type=job_type.value,
            attempt=attempt,
            max_attempts=max_attempts,
            error=values["error"],
            final=attempt >= max_attempts,
        )
        return False

    await db.execute(
        update(BackgroundJob)
        .where(BackgroundJob.id == job_id)
        .values(
            status=JobStatus.COMPLETED,
            attempts=attempt,
            completed_at=datetime.now(UTC),
            error=None,
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return True


async def process_pending_jobs(
    db: AsyncSession,
    limit: int | None = None,
) -> JobRunResult:
    """Claim and run due jobs sequentially."""
    await recover_stale_jobs(db)
    jobs = await claim_pending_jobs(db, limit or settings.job_batch_size)

    processed = 0
    failed = 0
    for job in jobs:
        if await process_job(db, job):
            processed += 1
        else:
            failed += 1

    if jobs:
        logger.info(
            "Background jobs processed",
            processed=processed,
            failed=failed,
            total=len(jobs),
        )

    return JobRunResult(processed=processed, failed=failed, total=len(jobs))


async def get_next_pending_job_at(db: AsyncSession) -> datetime | None:
    """Earliest scheduled_at among PENDING jobs."""
    return await db.scalar(
        select(func.min(BackgroundJob.scheduled_at)).where(
            BackgroundJob.status == JobStatus.PENDING
        )
    )
