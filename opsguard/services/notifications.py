"""User notification dispatch.

Every delivery attempt is recorded as a Notification row so that failures
can be retried by the retry sweep. Channel senders are pluggable; the
webhook channel is built in, other channels are provided by whichever
provider integration registers a sender for them.
"""

import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from opsguard.config import settings
from opsguard.logging_config import get_logger
from opsguard.models.notification import (
    Notification,
    NotificationChannel,
    NotificationStatus,
)

logger = get_logger(__name__)


class NotificationDeliveryError(Exception):
    """A channel provider rejected or failed to deliver a notification."""


@dataclass
class NotificationPayload:
    """What to tell a user about an incident."""

    incident_id: uuid.UUID
    title: str
    message: str
    channels: list[NotificationChannel] = field(default_factory=list)
    escalation_level: int | None = None


@dataclass
class DeliveryResult:
    """Outcome of delivering on a single channel."""

    success: bool
    error: str | None = None


@dataclass
class NotificationResult:
    """Outcome of notifying one user across channels."""

    success: bool
    channels: dict[str, DeliveryResult] = field(default_factory=dict)


ChannelSender = Callable[[uuid.UUID, NotificationPayload], Awaitable[None]]

_channel_senders: dict[NotificationChannel, ChannelSender] = {}


def register_channel_sender(channel: NotificationChannel, sender: ChannelSender) -> None:
    """Install the sender used for a channel.

    A sender raises NotificationDeliveryError (or any exception) on failure.
    """
    _channel_senders[channel] = sender


def unregister_channel_sender(channel: NotificationChannel) -> None:
    _channel_senders.pop(channel, None)


async def send_webhook(user_id: uuid.UUID, payload: NotificationPayload) -> None:
    """POST the notification as JSON to the configured webhook URL.

    Raises:
        NotificationDeliveryError: If no URL is configured or the receiver
            does not answer with a 2xx status.
    """
    if not settings.notification_webhook_url:
        raise NotificationDeliveryError("Notification webhook URL is not configured")

    body = {
        "type": "incident.escalation",
        "incident_id": str(payload.incident_id),
        "user_id": str(user_id),
        "title": payload.title,
        "message": payload.message,
        "escalation_level": payload.escalation_level,
        "sent_at": datetime.now(UTC).isoformat(),
    }

    try:
        async with httpx.AsyncClient(
            timeout=settings.notification_webhook_timeout_seconds
        ) as client:
            response = await client.post(settings.notification_webhook_url, json=body)
    except httpx.HTTPError as e:
        raise NotificationDeliveryError(f"Webhook request failed: {e}") from e

    if not response.is_success:
        raise NotificationDeliveryError(
            f"Webhook returned {response.status_code}: {response.text[:200]}"
        )


register_channel_sender(NotificationChannel.WEBHOOK, send_webhook)


async def dispatch_to_channel(
    channel: NotificationChannel,
    user_id: uuid.UUID,
    payload: NotificationPayload,
) -> DeliveryResult:
    """Deliver on one channel without touching the database."""
    sender = _channel_senders.get(channel)
    if sender is None:
        return DeliveryResult(
            success=False,
            error=f"No provider configured for channel {channel.value}",
        )

    try:
        await sender(user_id, payload)
    except Exception as e:
        logger.warning(
            "Notification delivery failed",
            channel=channel.value,
            user_id=str(user_id),
            incident_id=str(payload.incident_id),
            error=str(e),
        )
        return DeliveryResult(success=False, error=str(e) or type(e).__name__)

    return DeliveryResult(success=True)


async def send_notification(
    db: AsyncSession,
    user_id: uuid.UUID,
    channel: NotificationChannel,
    payload: NotificationPayload,
) -> DeliveryResult:
    """Record and deliver a notification on a single channel.

    The row is flushed as PENDING before delivery and updated to SENT or
    FAILED afterwards. The caller owns the transaction.
    """
    now = datetime.now(UTC)
    notification = Notification(
        incident_id=payload.incident_id,
        user_id=user_id,
        channel=channel,
        message=payload.message,
        status=NotificationStatus.PENDING,
        attempts=0,
    )
    db.add(notification)
    await db.flush()

    result = await dispatch_to_channel(channel, user_id, payload)

    notification.attempts = 1
    if result.success:
        notification.status = NotificationStatus.SENT
        notification.sent_at = now
    else:
        notification.status = NotificationStatus.FAILED
        notification.failed_at = now
        notification.error_msg = result.error
    await db.flush()

    return result


async def send_user_notification(
    db: AsyncSession,
    user_id: uuid.UUID,
    payload: NotificationPayload,
) -> NotificationResult:
    """Notify a user on every channel in the payload (email by default).

    Returns:
        NotificationResult; success is True if at least one channel
        delivered.
    """
    channels = payload.channels or [NotificationChannel.EMAIL]
    outcome = NotificationResult(success=False)

    for channel in channels:
        delivery = await send_notification(db, user_id, channel, payload)
        outcome.channels[channel.value] = delivery
        if delivery.success:
            outcome.success = True

    if not outcome.success:
        logger.warning(
            "User could not be notified on any channel",
            user_id=str(user_id),
            incident_id=str(payload.incident_id),
            channels=[c.value for c in channels],
        )

    return outcome


def parse_channels(values: list[str] | None) -> list[NotificationChannel]:
    """Parse stored channel names, skipping unknown ones."""
    channels: list[NotificationChannel] = []
    for value in values or []:
        try:
            channel = NotificationChannel(str(value).lower())
        except ValueError:
            logger.warning("Ignoring unknown notification channel", channel=value)
            continue
        if channel not in channels:
            channels.append(channel)
    return channels
