"""Escalation target resolution.

Maps an escalation step's target (user, team or on-call schedule) to the
concrete users to page. An empty list means "nobody to notify" and is never
an error.
"""

import uuid
from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload, with_loader_criteria

from opsguard.logging_config import get_logger
from opsguard.models.escalation_policy import EscalationTargetType
from opsguard.models.oncall import OnCallLayer, OnCallOverride, OnCallSchedule
from opsguard.models.user import Team, TeamMember
from opsguard.services.oncall import (
    find_on_call_user_ids,
    layer_from_model,
    override_from_model,
)

logger = get_logger(__name__)


async def get_team_user_ids(
    db: AsyncSession,
    team_id: uuid.UUID,
    notify_only_team_lead: bool = False,
) -> list[uuid.UUID]:
    """Members of a team who receive team notifications.

    Args:
        db: Database session.
        team_id: Team's UUID.
        notify_only_team_lead: Return only the lead, and only if the lead
            has team notifications enabled.

    Returns:
        User ids to notify; empty if the team does not exist.
    """
    team_result = await db.execute(select(Team.team_lead_id).where(Team.id == team_id))
    team_row = team_result.one_or_none()
    if team_row is None:
        return []
    team_lead_id = team_row[0]

    members_result = await db.execute(
        select(TeamMember.user_id).where(
            TeamMember.team_id == team_id,
            TeamMember.receive_team_notifications.is_(True),
        )
    )
    member_ids = list(members_result.scalars().all())

    if notify_only_team_lead:
        if team_lead_id is not None and team_lead_id in member_ids:
            return [team_lead_id]
        return []

    return member_ids


async def get_on_call_user_ids(
    db: AsyncSession,
    schedule_id: uuid.UUID,
    at_time: datetime,
) -> list[uuid.UUID]:
    """Users on call for a schedule at a given instant.

    Overrides active at at_time take precedence over rotation layers.
    """
    result = await db.execute(
        select(OnCallSchedule)
        .where(OnCallSchedule.id == schedule_id)
        .options(
            selectinload(OnCallSchedule.layers).selectinload(OnCallLayer.users),
            selectinload(OnCallSchedule.overrides),
            with_loader_criteria(
                OnCallOverride,
                (OnCallOverride.start <= at_time) & (OnCallOverride.end > at_time),
            ),
        )
        # Overrides loaded earlier in the session were filtered for another instant
        .execution_options(populate_existing=True)
    )
    schedule = result.scalar_one_or_none()
    if schedule is None:
        return []

    layers = [layer_from_model(layer) for layer in schedule.layers]
    overrides = [override_from_model(override) for override in schedule.overrides]
    if not layers and not overrides:
        return []

    return find_on_call_user_ids(layers, overrides, at_time, schedule.time_zone)


async def resolve_escalation_target(
    db: AsyncSession,
    target_type: EscalationTargetType | str,
    target_id: uuid.UUID,
    at_time: datetime | None = None,
    notify_only_team_lead: bool = False,
) -> list[uuid.UUID]:
    """Resolve an escalation target to a list of user ids.

    Args:
        db: Database session.
        target_type: USER, TEAM or SCHEDULE. Anything else resolves to [].
        target_id: Id of the user, team or schedule.
        at_time: Instant to evaluate on-call schedules at (default now).
        notify_only_team_lead: For TEAM targets, page only the lead.

    Returns:
        User ids to notify, possibly empty.
    """
    try:
        if not isinstance(target_type, EscalationTargetType):
            target_type = EscalationTargetType(target_type.lower())
    except (AttributeError, ValueError):
        logger.warning(
            "Unknown escalation target type",
            target_type=str(target_type),
            target_id=str(target_id),
        )
        return []

    if target_type == EscalationTargetType.USER:
        return [target_id]

    if target_type == EscalationTargetType.TEAM:
        return await get_team_user_ids(db, target_id, notify_only_team_lead)

    return await get_on_call_user_ids(db, target_id, at_time or datetime.now(UTC))
