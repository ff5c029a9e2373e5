"""Distributed cron scheduler.

Every worker process runs one CronScheduler, but only the holder of the
lease on the cron_scheduler_state singleton row runs jobs. Instead of a
fixed interval, each tick computes when work is next due (the earliest
pending escalation or background job), clamps it to
[min_delay, max_delay], and re-arms a single APScheduler DateTrigger job
for that instant.

Tick lifecycle:
    acquire lease -> (denied: retry after lock_retry) -> run jobs in order
    -> persist next_run_at / last_run_at / last_success_at / last_error
    -> re-arm timer
"""

import asyncio
import secrets
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from sqlalchemy import or_, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from opsguard.config import settings
from opsguard.database import get_session_maker
from opsguard.logging_config import correlation_id_ctx, get_logger
from opsguard.models.cron_state import CRON_STATE_ID, CronSchedulerState
from opsguard.services.escalation_engine import (
    get_next_escalation_at,
    process_pending_escalations,
)
from opsguard.services.job_queue import get_next_pending_job_at, process_pending_jobs
from opsguard.services.notification_retry import retry_failed_notifications
from opsguard.services.sla_monitor import check_sla_breaches
from opsguard.services.snooze import process_auto_unsnooze
from opsguard.services.user_tokens import cleanup_user_tokens

logger = get_logger(__name__)

TICK_JOB_ID = "cron_tick"
STATE_READ_ERROR = "Failed to read state from database"

CronJob = Callable[[AsyncSession], Awaitable[Any]]

# Run in this order on every tick the lease holder executes
DEFAULT_JOBS: list[tuple[str, CronJob]] = [
    ("escalations", process_pending_escalations),
    ("background_jobs", process_pending_jobs),
    ("notification_retry", retry_failed_notifications),
    ("auto_unsnooze", process_auto_unsnooze),
    ("token_cleanup", cleanup_user_tokens),
    ("sla_check", check_sla_breaches),
]


@dataclass
class CronSchedulerStatus:
    """Scheduler status as reported to operators."""

    running: bool
    schedule: str = "dynamic"
    worker_id: str | None = None
    locked_by: str | None = None
    locked_at: datetime | None = None
    next_run_at: datetime | None = None
    last_run_at: datetime | None = None
    last_success_at: datetime | None = None
    last_error: str | None = None


def clamp_next_run(
    candidate: datetime | None,
    now: datetime,
    min_delay: timedelta,
    max_delay: timedelta,
) -> datetime:
    """Clamp a desired wake time into [now + min_delay, now + max_delay].

    With nothing pending (candidate None) the scheduler idles for max_delay.
    """
    earliest = now + min_delay
    latest = now + max_delay
    if candidate is None:
        return latest
    return min(max(candidate, earliest), latest)


def generate_worker_id() -> str:
    return f"worker-{secrets.token_hex(6)}"


async def ensure_scheduler_state(db: AsyncSession) -> None:
    """Create the singleton state row if it does not exist yet."""
    await db.execute(
        pg_insert(CronSchedulerState)
        .values(id=CRON_STATE_ID)
        .on_conflict_do_nothing(index_elements=["id"])
    )


class CronScheduler:
    """Lease-protected, dynamically re-armed job scheduler.

    Args:
        session_maker: Session factory; the application's by default.
        jobs: (name, job) pairs run in order on each tick.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession] | None = None,
        jobs: list[tuple[str, CronJob]] | None = None,
    ):
        self._session_maker = session_maker
        self._jobs = list(jobs) if jobs is not None else list(DEFAULT_JOBS)
        self._scheduler: AsyncIOScheduler | None = None
        self._running = False
        self._tick_lock = asyncio.Lock()
        self._last_delay = timedelta(seconds=settings.cron_max_delay_seconds)
        self.worker_id: str | None = None

    @property
    def running(self) -> bool:
        return self._running

    def _session(self) -> AsyncSession:
        session_maker = self._session_maker or get_session_maker()
        return session_maker()

    def start(self) -> bool:
        """Start the timer unless this environment must not run cron.

        Returns:
            True if the scheduler is running after the call.
        """
        if self._running:
            logger.warning("Cron scheduler already running", worker_id=self.worker_id)
            return True

        if settings.is_build_phase:
            logger.info("Cron scheduler not started during build phase")
            return False

        if not settings.internal_cron_enabled:
            logger.info(
                "Internal cron scheduler disabled",
                environment=settings.environment,
            )
            return False

        self.worker_id = generate_worker_id()
        self._last_delay = timedelta(seconds=settings.cron_max_delay_seconds)
        self._scheduler = AsyncIOScheduler(timezone=UTC)
        self._scheduler.start()
        self._running = True

        first_run = datetime.now(UTC) + timedelta(
            seconds=settings.cron_startup_delay_seconds
        )
        self._arm(first_run)

        logger.info(
            "Cron scheduler started",
            worker_id=self.worker_id,
            first_run_at=first_run.isoformat(),
        )
        return True

    async def stop(self) -> None:
        """Cancel the timer and release the lease if this worker holds it.

        Safe to call more than once.
        """
        if not self._running:
            return

        self._running = False
        if self._scheduler is not None:
            try:
                self._scheduler.remove_job(TICK_JOB_ID)
            except JobLookupError:
                pass
            self._scheduler.shutdown(wait=False)
            self._scheduler = None

        await self.release_lock()
        logger.info("Cron scheduler stopped", worker_id=self.worker_id)

    def _arm(self, run_at: datetime) -> None:
        """(Re)arm the single tick job for run_at."""
        if not self._running or self._scheduler is None:
            return
        self._scheduler.add_job(
            self.tick,
            trigger=DateTrigger(run_date=run_at),
            id=TICK_JOB_ID,
            name="Cron scheduler tick",
            replace_existing=True,
            misfire_grace_time=None,
            coalesce=True,
        )

    async def tick(self) -> None:
        """Run one scheduling cycle and re-arm the timer.

        Never raises; failures are logged and the timer is re-armed on the
        last known delay.
        """
        if not self._running:
            return

        token = correlation_id_ctx.set(f"tick-{secrets.token_hex(4)}")
        try:
            async with self._tick_lock:
                delay = await self._run_tick()
        except Exception as e:
            logger.error("Cron tick failed", exc_info=True, error=str(e))
            delay = self._last_delay
        finally:
            correlation_id_ctx.reset(token)

        self._arm(datetime.now(UTC) + delay)

    async def _run_tick(self) -> timedelta:
        now = datetime.now(UTC)

        try:
            async with self._session() as db:
                acquired = await self.acquire_lock(db, now)
        except Exception as e:
            logger.error("Failed to acquire cron lock", error=str(e))
            return self._last_delay

        if not acquired:
            logger.debug("Cron lock held by another worker", worker_id=self.worker_id)
            return timedelta(seconds=settings.cron_lock_retry_seconds)

        errors = await self.run_jobs()
        return await self._record_run(now, errors)

    async def acquire_lock(self, db: AsyncSession, now: datetime) -> bool:
        """Take or refresh the lease on the singleton state row.

        One conditional UPDATE: it matches when the row is unlocked, already
        ours, or its lease is older than the lock timeout.
        """
        stale_before = now - timedelta(seconds=settings.cron_lock_timeout_seconds)

        await ensure_scheduler_state(db)
        result = await db.execute(
            update(CronSchedulerState)
            .where(
                CronSchedulerState.id == CRON_STATE_ID,
                or_(
                    CronSchedulerState.locked_by.is_(None),
                    CronSchedulerState.locked_by == self.worker_id,
                    CronSchedulerState.locked_at < stale_before,
                ),
            )
            .values(locked_by=self.worker_id, locked_at=now)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return result.rowcount == 1

    async def release_lock(self) -> None:
        """Release the lease; a lease held by another worker is untouched."""
        if self.worker_id is None:
            return
        try:
            async with self._session() as db:
                await db.execute(
                    update(CronSchedulerState)
                    .where(
                        CronSchedulerState.id == CRON_STATE_ID,
                        CronSchedulerState.locked_by == self.worker_id,
                    )
                    .values(locked_by=None, locked_at=None)
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
        except Exception as e:
            logger.error(
                "Failed to release cron lock",
                worker_id=self.worker_id,
                error=str(e),
            )

    async def run_jobs(self) -> list[str]:
        """Run every job in order, each in its own session.

        Returns:
            Error descriptions; empty when every job succeeded.
        """
        errors: list[str] = []

        for name, job in self._jobs:
            try:
                async with self._session() as db:
                    result = await job(db)
            except Exception as e:
                logger.error("Cron job failed", exc_info=True, job=name, error=str(e))
                errors.append(f"{name}: {e}")
                continue

            job_errors = getattr(result, "errors", None)
            if job_errors:
                errors.append(f"{name}: {len(job_errors)} failed ({job_errors[0]})")
            logger.debug("Cron job completed", job=name, result=repr(result))

        return errors

    async def compute_next_run(self, db: AsyncSession, now: datetime) -> datetime:
        """When the next tick should fire, clamped to the configured bounds."""
        candidates = [
            value
            for value in (
                await get_next_escalation_at(db),
                await get_next_pending_job_at(db),
            )
            if value is not None
        ]
        return clamp_next_run(
            min(candidates) if candidates else None,
            now,
            timedelta(seconds=settings.cron_min_delay_seconds),
            timedelta(seconds=settings.cron_max_delay_seconds),
        )

    async def _record_run(self, run_at: datetime, errors: list[str]) -> timedelta:
        """Persist the run outcome and return the delay until the next tick."""
        now = datetime.now(UTC)
        values: dict[str, Any] = {
            "last_run_at": run_at,
            "last_error": "; ".join(errors) if errors else None,
        }
        if not errors:
            values["last_success_at"] = now

        try:
            async with self._session() as db:
                next_run = await self.compute_next_run(db, now)
                values["next_run_at"] = next_run
                await db.execute(
                    update(CronSchedulerState)
                    .where(
                        CronSchedulerState.id == CRON_STATE_ID,
                        CronSchedulerState.locked_by == self.worker_id,
                    )
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
        except Exception as e:
            logger.error("Failed to persist cron state", error=str(e))
            return self._last_delay

        self._last_delay = max(next_run - now, timedelta(0))
        logger.info(
            "Cron tick complete",
            next_run_at=next_run.isoformat(),
            errors=len(errors),
        )
        return self._last_delay

    async def get_status(self) -> CronSchedulerStatus:
        """Local running flag plus the shared state row."""
        status = CronSchedulerStatus(running=self._running, worker_id=self.worker_id)

        try:
            async with self._session() as db:
                state = await db.get(CronSchedulerState, CRON_STATE_ID)
        except Exception as e:
            logger.warning("Failed to read cron state", error=str(e))
            status.last_error = STATE_READ_ERROR
            return status

        if state is not None:
            status.locked_by = state.locked_by
            status.locked_at = state.locked_at
            status.next_run_at = state.next_run_at
            status.last_run_at = state.last_run_at
            status.last_success_at = state.last_success_at
            status.last_error = state.last_error

        return status


# Default instance driven by the application lifespan
_scheduler: CronScheduler | None = None


def get_cron_scheduler() -> CronScheduler:
    global _scheduler
    if _scheduler is None:
        _scheduler = CronScheduler()
    return _scheduler


def start_cron_scheduler() -> bool:
    return get_cron_scheduler().start()


async def stop_cron_scheduler() -> None:
    if _scheduler is not None:
        await _scheduler.stop()


async def get_cron_scheduler_status() -> CronSchedulerStatus:
    return await get_cron_scheduler().get_status()


@asynccontextmanager
async def cron_scheduler_lifespan() -> AsyncGenerator[None, None]:
    """Async context manager for scheduler lifecycle.

    Use this in FastAPI lifespan to manage scheduler start/stop.
    """
    start_cron_scheduler()
    try:
        yield
    finally:
        await stop_cron_scheduler()
