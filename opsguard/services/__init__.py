# Business Logic Services
from opsguard.services.cron_scheduler import (
    CronScheduler,
    CronSchedulerStatus,
    get_cron_scheduler_status,
    start_cron_scheduler,
    stop_cron_scheduler,
)
from opsguard.services.escalation_engine import (
    EscalationBatchResult,
    EscalationOutcome,
    EscalationResult,
    execute_escalation,
    process_pending_escalations,
)
from opsguard.services.escalation_target import resolve_escalation_target

__all__ = [
    "CronScheduler",
    "CronSchedulerStatus",
    "EscalationBatchResult",
    "EscalationOutcome",
    "EscalationResult",
    "execute_escalation",
    "get_cron_scheduler_status",
    "process_pending_escalations",
    "resolve_escalation_target",
    "start_cron_scheduler",
    "stop_cron_scheduler",
]
