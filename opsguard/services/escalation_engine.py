"""Incident escalation engine.

Executes escalation policy steps for incidents: resolves who to page,
notifies them, records the incident timeline, and schedules the next step.
A per-incident lock (Incident.escalation_processing_at) guarantees that at
most one worker executes a step for a given incident at a time, across
every running process.
"""

import enum
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from opsguard.config import settings
from opsguard.database import is_retryable_db_error
from opsguard.logging_config import get_logger
from opsguard.models.escalation_policy import (
    EscalationPolicy,
    EscalationStep,
    EscalationTargetType,
)
from opsguard.models.incident import (
    EscalationStatus,
    Incident,
    IncidentEvent,
    IncidentStatus,
)
from opsguard.models.service import Service
from opsguard.services.escalation_target import resolve_escalation_target
from opsguard.services.job_queue import schedule_escalation
from opsguard.services.notifications import (
    NotificationPayload,
    parse_channels,
    send_user_notification,
)

logger = get_logger(__name__)

# Incident statuses that are still paged
ESCALATABLE_STATUSES = (IncidentStatus.OPEN, IncidentStatus.SNOOZED)

# Re-read under the incident lock
LOCKED_REFRESH_FIELDS = [
    "escalation_status",
    "current_escalation_step",
    "next_escalation_at",
    "assignee_id",
]


class EscalationOutcome(str, enum.Enum):
    """Result of attempting one escalation step."""

    ESCALATED = "escalated"
    NO_POLICY = "no_policy"
    ALREADY_COMPLETED = "already_completed"
    ALREADY_IN_PROGRESS = "already_in_progress"
    EXHAUSTED = "exhausted"
    INVALID_TARGET = "invalid_target"
    NO_RECIPIENTS = "no_recipients"


OUTCOME_REASONS: dict[EscalationOutcome, str] = {
    EscalationOutcome.NO_POLICY: "No escalation policy configured",
    EscalationOutcome.ALREADY_COMPLETED: "Escalation already completed",
    EscalationOutcome.EXHAUSTED: "All escalation steps exhausted",
    EscalationOutcome.ALREADY_IN_PROGRESS: "Escalation already in progress",
    EscalationOutcome.INVALID_TARGET: "Invalid target configuration",
    EscalationOutcome.NO_RECIPIENTS: "No users to notify",
}


@dataclass
class EscalationResult:
    """What happened when an escalation step was attempted."""

    outcome: EscalationOutcome
    step_index: int | None = None
    target_type: EscalationTargetType | None = None
    notified_user_ids: list[uuid.UUID] = field(default_factory=list)
    next_step_scheduled: bool = False

    @property
    def escalated(self) -> bool:
        return self.outcome == EscalationOutcome.ESCALATED

    @property
    def reason(self) -> str | None:
        return OUTCOME_REASONS.get(self.outcome)


@dataclass
class EscalationBatchResult:
    """Summary of one batch run."""

    processed: int
    total: int
    errors: list[str] | None = None


EscalationExecutor = Callable[
    [AsyncSession, uuid.UUID, int | None], Awaitable[EscalationResult]
]


async def load_incident_for_escalation(
    db: AsyncSession,
    incident_id: uuid.UUID,
) -> Incident | None:
    """Load an incident with its service, policy and ordered steps."""
    result = await db.execute(
        select(Incident)
        .where(Incident.id == incident_id)
        .options(
            selectinload(Incident.service)
            .selectinload(Service.policy)
            .selectinload(EscalationPolicy.steps)
        )
    )
    return result.scalar_one_or_none()


def get_policy_steps(incident: Incident) -> list[EscalationStep]:
    service = incident.service
    if service is None or service.policy is None:
        return []
    return sorted(service.policy.steps, key=lambda s: s.step_order)


async def try_acquire_incident_lock(
    db: AsyncSession,
    incident_id: uuid.UUID,
    now: datetime,
) -> bool:
    """Claim the per-incident processing lock.

    A single conditional UPDATE: it succeeds when nobody holds the lock or
    the holder's claim is older than the escalation lock timeout. The claim
    is committed immediately so other workers see it.

    Returns:
        True if this caller now holds the lock.
    """
    stale_before = now - timedelta(seconds=settings.escalation_lock_timeout_seconds)
    result = await db.execute(
        update(Incident)
        .where(
            Incident.id == incident_id,
            or_(
                Incident.escalation_processing_at.is_(None),
                Incident.escalation_processing_at < stale_before,
            ),
        )
        .values(escalation_processing_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount == 1


async def release_incident_lock(db: AsyncSession, incident_id: uuid.UUID) -> None:
    """Clear the per-incident processing lock."""
    await db.execute(
        update(Incident)
        .where(Incident.id == incident_id)
        .values(escalation_processing_at=None)
        .execution_options(synchronize_session=False)
    )
    await db.commit()


def add_incident_event(db: AsyncSession, incident_id: uuid.UUID, message: str) -> None:
    """Append an entry to the incident timeline."""
    db.add(IncidentEvent(incident_id=incident_id, message=message))


def build_notification_title(incident: Incident, step_index: int) -> str:
    title = f"[OpsGuard] Incident: {incident.title}"
    if step_index > 0:
        title += f" (Escalation Level {step_index + 1})"
    return title


def describe_target(step: EscalationStep, user_count: int) -> str:
    if step.target_type == EscalationTargetType.USER:
        return f"user {step.target_id}"
    plural = "" if user_count == 1 else "s"
    return f"{step.target_type.value} {step.target_id} ({user_count} user{plural})"


async def execute_escalation(
    db: AsyncSession,
    incident_id: uuid.UUID,
    step_index: int | None = None,
) -> EscalationResult:
    """Execute one escalation step for an incident.

    Args:
        db: Database session. Committed by this function.
        incident_id: Incident's UUID.
        step_index: Step to execute; defaults to the incident's current
            step, then to the first step.

    Returns:
        EscalationResult describing the outcome. Expected non-escalations
        (no policy, completed, exhausted, locked, invalid target, nobody to
        page) are outcomes, not exceptions.

    Raises:
        Exception: Database or collaborator failures while the incident lock
            is held propagate after the transaction is rolled back and the
            lock is released.
    """
    incident = await load_incident_for_escalation(db, incident_id)
    if incident is None:
        return EscalationResult(outcome=EscalationOutcome.NO_POLICY)

    steps = get_policy_steps(incident)
    if not steps:
        # Stop the batch processor from reselecting the incident
        incident.escalation_status = EscalationStatus.NONE
        incident.current_escalation_step = None
        incident.next_escalation_at = None
        await db.commit()
        return EscalationResult(outcome=EscalationOutcome.NO_POLICY)

    if incident.escalation_status == EscalationStatus.COMPLETED:
        return EscalationResult(outcome=EscalationOutcome.ALREADY_COMPLETED)

    if step_index is None:
        step_index = incident.current_escalation_step or 0

    if step_index >= len(steps):
        incident.escalation_status = EscalationStatus.COMPLETED
        incident.current_escalation_step = None
        incident.next_escalation_at = None
        incident.escalation_processing_at = None
        await db.commit()
        return EscalationResult(
            outcome=EscalationOutcome.EXHAUSTED, step_index=step_index
        )

    now = datetime.now(UTC)
    if not await try_acquire_incident_lock(db, incident_id, now):
        logger.debug(
            "Escalation already in progress",
            incident_id=str(incident_id),
        )
        return EscalationResult(
            outcome=EscalationOutcome.ALREADY_IN_PROGRESS, step_index=step_index
        )

    try:
        # Another worker may have run this step between the load and the lock
        await db.refresh(incident, LOCKED_REFRESH_FIELDS)
        stale = _stale_step_outcome(incident, step_index, now)
        if stale is not None:
            logger.debug(
                "Escalation step no longer due",
                incident_id=str(incident_id),
                step=step_index + 1,
                outcome=stale.value,
            )
            return EscalationResult(outcome=stale, step_index=step_index)
        return await _run_step(db, incident, steps, step_index, now)
    except Exception:
        await db.rollback()
        raise
    finally:
        try:
            await release_incident_lock(db, incident_id)
        except Exception as e:
            logger.error(
                "Failed to release incident lock",
                exc_info=True,
                incident_id=str(incident_id),
                error=str(e),
            )


def _stale_step_outcome(
    incident: Incident,
    step_index: int,
    now: datetime,
) -> EscalationOutcome | None:
    """Outcome to report when the locked incident no longer needs step_index."""
    if incident.escalation_status == EscalationStatus.COMPLETED:
        return EscalationOutcome.ALREADY_COMPLETED
    if incident.escalation_status != EscalationStatus.ESCALATING:
        return None
    if (
        (incident.current_escalation_step or 0) != step_index
        or incident.next_escalation_at is None
        or incident.next_escalation_at > now
    ):
        return EscalationOutcome.ALREADY_IN_PROGRESS
    return None


async def _run_step(
    db: AsyncSession,
    incident: Incident,
    steps: list[EscalationStep],
    start_index: int,
    now: datetime,
) -> EscalationResult:
    """Execute from start_index, skipping steps that resolve to nobody.

    Every path commits; the caller releases the incident lock.
    """
    for index in range(start_index, len(steps)):
        step = steps[index]

        if step.target_id is None:
            add_incident_event(
                db,
                incident.id,
                f"Escalation step {index + 1} has invalid target configuration. "
                "Escalation halted until the policy is fixed.",
            )
            incident.current_escalation_step = index
            incident.next_escalation_at = None
            await db.commit()
            logger.warning(
                "Escalation step has invalid target",
                incident_id=str(incident.id),
                step=index + 1,
                target_type=step.target_type.value,
            )
            return EscalationResult(
                outcome=EscalationOutcome.INVALID_TARGET,
                step_index=index,
                target_type=step.target_type,
            )

        user_ids = await resolve_escalation_target(
            db,
            step.target_type,
            step.target_id,
            at_time=now,
            notify_only_team_lead=step.notify_only_team_lead,
        )
        if not user_ids:
            add_incident_event(
                db,
                incident.id,
                f"Escalation step {index + 1} ({step.target_type.value}: "
                f"{step.target_id}) resolved to no users. Skipping.",
            )
            continue

        return await _notify_step(db, incident, steps, index, user_ids, now)

    incident.escalation_status = EscalationStatus.COMPLETED
    incident.current_escalation_step = None
    incident.next_escalation_at = None
    await db.commit()
    logger.info("Escalation found nobody to notify", incident_id=str(incident.id))
    return EscalationResult(
        outcome=EscalationOutcome.NO_RECIPIENTS, step_index=start_index
    )


async def _notify_step(
    db: AsyncSession,
    incident: Incident,
    steps: list[EscalationStep],
    index: int,
    user_ids: list[uuid.UUID],
    now: datetime,
) -> EscalationResult:
    step = steps[index]
    title = build_notification_title(incident, index)
    payload = NotificationPayload(
        incident_id=incident.id,
        title=title,
        message=title,
        channels=parse_channels(step.notification_channels),
        escalation_level=index + 1,
    )

    for user_id in user_ids:
        await send_user_notification(db, user_id, payload)

    if index == 0 and incident.assignee_id is None:
        incident.assignee_id = user_ids[0]

    delay = f", after {step.delay_minutes} minute delay" if step.delay_minutes > 0 else ""
    add_incident_event(
        db,
        incident.id,
        f"Escalated to {describe_target(step, len(user_ids))} (Level {index + 1}{delay})",
    )

    next_index = index + 1
    next_step_scheduled = next_index < len(steps)
    if next_step_scheduled:
        next_step = steps[next_index]
        next_at = now + timedelta(minutes=next_step.delay_minutes)
        add_incident_event(
            db,
            incident.id,
            f"Next escalation step scheduled for {next_at.isoformat()} "
            f"({next_step.delay_minutes} minute delay)",
        )
        incident.escalation_status = EscalationStatus.ESCALATING
        incident.current_escalation_step = next_index
        incident.next_escalation_at = next_at
        await schedule_escalation(db, incident.id, next_at)
    else:
        incident.escalation_status = EscalationStatus.COMPLETED
        incident.current_escalation_step = None
        incident.next_escalation_at = None

    await db.commit()

    logger.info(
        "Escalation executed",
        incident_id=str(incident.id),
        level=index + 1,
        target_type=step.target_type.value,
        recipients=len(user_ids),
        next_step_scheduled=next_step_scheduled,
    )

    return EscalationResult(
        outcome=EscalationOutcome.ESCALATED,
        step_index=index,
        target_type=step.target_type,
        notified_user_ids=list(user_ids),
        next_step_scheduled=next_step_scheduled,
    )


async def process_pending_escalations(
    db: AsyncSession,
    executor: EscalationExecutor | None = None,
    batch_size: int | None = None,
) -> EscalationBatchResult:
    """Execute every escalation step that is due.

    Candidates are ESCALATING incidents that are still open or snoozed and
    whose next_escalation_at has passed, oldest first. They are processed
    sequentially; one incident failing does not stop the batch.

    Args:
        db: Database session.
        executor: Step executor, execute_escalation by default.
        batch_size: Maximum incidents per run (settings default).

    Returns:
        EscalationBatchResult with errors None when nothing failed.
    """
    executor = executor or execute_escalation
    limit = batch_size or settings.escalation_batch_size
    now = datetime.now(UTC)

    result = await db.execute(
        select(Incident.id, Incident.current_escalation_step)
        .where(
            Incident.escalation_status == EscalationStatus.ESCALATING,
            Incident.next_escalation_at <= now,
            Incident.status.in_(ESCALATABLE_STATUSES),
        )
        .order_by(Incident.next_escalation_at.asc())
        .limit(limit)
    )
    candidates = result.all()

    processed = 0
    errors: list[str] = []

    for incident_id, current_step in candidates:
        try:
            outcome = await executor(db, incident_id, current_step or 0)
        except Exception as e:
            errors.append(f"Incident {incident_id}: {e}")
            retryable = is_retryable_db_error(e)
            logger.error(
                "Escalation failed",
                exc_info=True,
                incident_id=str(incident_id),
                retryable=retryable,
            )
            await db.rollback()
            if retryable:
                try:
                    await release_incident_lock(db, incident_id)
                except Exception as release_error:
                    logger.error(
                        "Failed to release incident lock after error",
                        incident_id=str(incident_id),
                        error=str(release_error),
                    )
            continue

        if outcome.escalated:
            processed += 1
        else:
            logger.debug(
                "Escalation skipped",
                incident_id=str(incident_id),
                reason=outcome.reason,
            )

    if candidates:
        logger.info(
            "Escalation batch complete",
            processed=processed,
            total=len(candidates),
            errors=len(errors),
        )

    return EscalationBatchResult(
        processed=processed,
        total=len(candidates),
        errors=errors or None,
    )


async def get_next_escalation_at(db: AsyncSession) -> datetime | None:
    """Earliest pending escalation time across ESCALATING incidents."""
    return await db.scalar(
        select(func.min(Incident.next_escalation_at)).where(
            Incident.escalation_status == EscalationStatus.ESCALATING,
            Incident.next_escalation_at.is_not(None),
        )
    )
