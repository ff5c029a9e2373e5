"""Retry sweep for failed notifications.

Failed notifications are retried with exponential backoff (5 s, 10 s,
20 s, ... capped at 5 minutes) until they reach MAX_RETRY_ATTEMPTS.
"""

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from opsguard.logging_config import get_logger
from opsguard.models.incident import Incident
from opsguard.models.notification import Notification, NotificationStatus
from opsguard.services.notifications import NotificationPayload, dispatch_to_channel

logger = get_logger(__name__)

MAX_RETRY_ATTEMPTS = 3
INITIAL_RETRY_DELAY = timedelta(seconds=5)
MAX_RETRY_DELAY = timedelta(minutes=5)
RETRY_BATCH_SIZE = 100


@dataclass
class NotificationRetryResult:
    """Counts from one retry sweep."""

    retried: int
    succeeded: int
    failed: int


def retry_delay(attempts: int) -> timedelta:
    """Backoff before the next retry of a notification with `attempts` tries."""
    return min(INITIAL_RETRY_DELAY * (2 ** max(attempts, 0)), MAX_RETRY_DELAY)


def is_ready_for_retry(notification: Notification, now: datetime) -> bool:
    if notification.failed_at is None:
        return False
    return now - notification.failed_at >= retry_delay(notification.attempts or 0)


async def retry_failed_notifications(db: AsyncSession) -> NotificationRetryResult:
    """Re-deliver failed notifications whose backoff has elapsed.

    Oldest failures are retried first, at most RETRY_BATCH_SIZE per sweep.
    Each row is updated to SENT, or back to FAILED with attempts incremented.
    """
    result = await db.execute(
        select(Notification, Incident.title)
        .join(Incident, Incident.id == Notification.incident_id)
        .where(
            Notification.status == NotificationStatus.FAILED,
            Notification.failed_at.is_not(None),
            Notification.attempts < MAX_RETRY_ATTEMPTS,
        )
        .order_by(Notification.failed_at.asc())
        .limit(RETRY_BATCH_SIZE)
    )
    rows = result.all()

    now = datetime.now(UTC)
    ready = [(n, title) for n, title in rows if is_ready_for_retry(n, now)]

    succeeded = 0
    failed = 0

    for notification, title in ready:
        payload = NotificationPayload(
            incident_id=notification.incident_id,
            title=title,
            message=notification.message,
        )
        delivery = await dispatch_to_channel(
            notification.channel, notification.user_id, payload
        )

        notification.attempts = (notification.attempts or 0) + 1
        if delivery.success:
            notification.status = NotificationStatus.SENT
            notification.sent_at = datetime.now(UTC)
            notification.failed_at = None
            notification.error_msg = None
            succeeded += 1
            logger.info(
                "Notification retry succeeded",
                notification_id=str(notification.id),
                channel=notification.channel.value,
            )
        else:
            notification.status = NotificationStatus.FAILED
            notification.failed_at = datetime.now(UTC)
            notification.error_msg = delivery.error or "Retry failed"
            failed += 1

    if ready:
        await db.commit()

    return NotificationRetryResult(retried=len(ready), succeeded=succeeded, failed=failed)


async def get_notification_retry_stats(db: AsyncSession) -> dict[str, int]:
    """Pending, failed, and failed-in-the-last-24h notification counts."""
    day_ago = datetime.now(UTC) - timedelta(hours=24)

    pending = await db.scalar(
        select(func.count(Notification.id)).where(
            Notification.status == NotificationStatus.PENDING
        )
    )
    failed = await db.scalar(
        select(func.count(Notification.id)).where(
            Notification.status == NotificationStatus.FAILED
        )
    )
    failed_recent = await db.scalar(
        select(func.count(Notification.id)).where(
            Notification.status == NotificationStatus.FAILED,
            Notification.failed_at >= day_ago,
        )
    )

    return {
        "pending": pending or 0,
        "failed": failed or 0,
        "failed_recent": failed_recent or 0,
    }
