"""SLA breach monitoring.

Services may set acknowledge and resolve targets in minutes from incident
creation. Active incidents are checked against them and anything breached
or about to breach is reported.
"""

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Literal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from opsguard.config import settings
from opsguard.logging_config import get_logger
from opsguard.models.incident import Incident, IncidentStatus
from opsguard.models.service import Service

logger = get_logger(__name__)

BreachType = Literal["ack", "resolve"]

ACTIVE_STATUSES = (
    IncidentStatus.OPEN,
    IncidentStatus.ACKNOWLEDGED,
    IncidentStatus.SNOOZED,
)


@dataclass
class SLAWarning:
    """An incident at or near an SLA target."""

    incident_id: uuid.UUID
    title: str
    breach_type: BreachType
    # Negative once the target has passed
    time_remaining: timedelta

    @property
    def breached(self) -> bool:
        return self.time_remaining <= timedelta(0)


@dataclass
class SLABreachCheckResult:
    checked_at: datetime
    active_incident_count: int
    warnings: list[SLAWarning] = field(default_factory=list)

    @property
    def warning_count(self) -> int:
        return len(self.warnings)

    @property
    def breach_count(self) -> int:
        return sum(1 for w in self.warnings if w.breached)


def evaluate_incident_sla(
    incident: Incident,
    target_ack_minutes: int | None,
    target_resolve_minutes: int | None,
    now: datetime,
    warning_threshold: timedelta,
) -> list[SLAWarning]:
    """SLA warnings for one incident; empty when comfortably within target."""
    warnings: list[SLAWarning] = []

    checks: list[tuple[BreachType, int | None, bool]] = [
        ("ack", target_ack_minutes, incident.acknowledged_at is None),
        ("resolve", target_resolve_minutes, incident.resolved_at is None),
    ]
    for breach_type, target_minutes, pending in checks:
        if target_minutes is None or not pending:
            continue
        deadline = incident.created_at + timedelta(minutes=target_minutes)
        remaining = deadline - now
        if remaining <= warning_threshold:
            warnings.append(
                SLAWarning(
                    incident_id=incident.id,
                    title=incident.title,
                    breach_type=breach_type,
                    time_remaining=remaining,
                )
            )

    return warnings


async def check_sla_breaches(
    db: AsyncSession,
    warning_threshold_minutes: int | None = None,
) -> SLABreachCheckResult:
    """Check active incidents against their service SLA targets.

    Args:
        db: Database session (read only).
        warning_threshold_minutes: Report incidents this close to a target
            (settings default).
    """
    now = datetime.now(UTC)
    threshold = timedelta(
        minutes=(
            warning_threshold_minutes
            if warning_threshold_minutes is not None
            else settings.sla_warning_threshold_minutes
        )
    )

    result = await db.execute(
        select(Incident, Service.target_ack_minutes, Service.target_resolve_minutes)
        .join(Service, Service.id == Incident.service_id)
        .where(Incident.status.in_(ACTIVE_STATUSES))
    )
    rows = result.all()

    warnings: list[SLAWarning] = []
    for incident, target_ack, target_resolve in rows:
        warnings.extend(
            evaluate_incident_sla(incident, target_ack, target_resolve, now, threshold)
        )

    for warning in warnings:
        logger.warning(
            "SLA breached" if warning.breached else "SLA breach approaching",
            incident_id=str(warning.incident_id),
            breach_type=warning.breach_type,
            minutes_remaining=round(warning.time_remaining.total_seconds() / 60),
        )

    return SLABreachCheckResult(
        checked_at=now,
        active_incident_count=len(rows),
        warnings=warnings,
    )
