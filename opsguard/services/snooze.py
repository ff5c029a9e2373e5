"""Snooze expiry.

A snoozed incident is paused for responders but keeps its escalation
position. When the snooze ends it is reopened and escalation resumes at
the step it was on.
"""

from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from opsguard.logging_config import get_logger
from opsguard.models.incident import (
    EscalationStatus,
    Incident,
    IncidentEvent,
    IncidentStatus,
)

logger = get_logger(__name__)


def unsnooze_incident(db: AsyncSession, incident: Incident, message: str) -> None:
    """Reopen a snoozed incident and make its escalation due now.

    Incidents whose escalation already completed stay completed. The caller
    commits.
    """
    now = datetime.now(UTC)
    incident.status = IncidentStatus.OPEN
    incident.snoozed_until = None
    incident.snooze_reason = None

    if incident.escalation_status != EscalationStatus.COMPLETED:
        incident.escalation_status = EscalationStatus.ESCALATING
        incident.next_escalation_at = now

    db.add(IncidentEvent(incident_id=incident.id, message=message))


async def process_auto_unsnooze(db: AsyncSession) -> int:
    """Reopen every incident whose snooze period has passed.

    Returns:
        Number of incidents reopened.
    """
    now = datetime.now(UTC)
    result = await db.execute(
        select(Incident)
        .where(
            Incident.status == IncidentStatus.SNOOZED,
            Incident.snoozed_until <= now,
        )
        .with_for_update(skip_locked=True)
    )
    incidents = list(result.scalars().all())

    for incident in incidents:
        unsnooze_incident(db, incident, "Incident auto-unsnoozed (snooze duration expired)")

    await db.commit()

    if incidents:
        logger.info("Auto-unsnoozed incidents", count=len(incidents))

    return len(incidents)
