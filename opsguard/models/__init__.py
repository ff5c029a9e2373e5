# Database Models
from opsguard.models.background_job import BackgroundJob, JobStatus, JobType
from opsguard.models.base import Base, TimestampMixin
from opsguard.models.cron_state import CRON_STATE_ID, CronSchedulerState
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
from opsguard.models.notification import (
    Notification,
    NotificationChannel,
    NotificationStatus,
)
from opsguard.models.oncall import (
    OnCallLayer,
    OnCallLayerUser,
    OnCallOverride,
    OnCallSchedule,
)
from opsguard.models.service import Service
from opsguard.models.user import Team, TeamMember, User
from opsguard.models.user_token import UserToken

__all__ = [
    "BackgroundJob",
    "Base",
    "CRON_STATE_ID",
    "CronSchedulerState",
    "EscalationPolicy",
    "EscalationStatus",
    "EscalationStep",
    "EscalationTargetType",
    "Incident",
    "IncidentEvent",
    "IncidentStatus",
    "JobStatus",
    "JobType",
    "Notification",
    "NotificationChannel",
    "NotificationStatus",
    "OnCallLayer",
    "OnCallLayerUser",
    "OnCallOverride",
    "OnCallSchedule",
    "Service",
    "Team",
    "TeamMember",
    "TimestampMixin",
    "User",
    "UserToken",
]
