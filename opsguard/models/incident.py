"""Incident and incident event models.

The escalation scheduler owns four columns on Incident:
escalation_status, current_escalation_step, next_escalation_at and
escalation_processing_at. A non-null escalation_processing_at is the
per-incident lock: some worker is executing a step right now.
"""

import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import DateTime, Enum, ForeignKey, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from opsguard.models.base import Base, TimestampMixin


class IncidentStatus(str, enum.Enum):
    """Responder-facing incident lifecycle."""

    OPEN = "open"
    ACKNOWLEDGED = "acknowledged"
    SNOOZED = "snoozed"
    RESOLVED = "resolved"


class EscalationStatus(str, enum.Enum):
    """Where the incident is in its escalation policy."""

    NONE = "none"
    ESCALATING = "escalating"
    PAUSED = "paused"
    COMPLETED = "completed"


class Incident(Base, TimestampMixin):
    """An incident raised against a service."""

    __tablename__ = "incidents"
    __table_args__ = (
        # Batch processor scans due escalations
        Index(
            "ix_incidents_escalation_due",
            "escalation_status",
            "next_escalation_at",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    title: Mapped[str] = mapped_column(String(500), nullable=False)

    status: Mapped[IncidentStatus] = mapped_column(
        Enum(
            IncidentStatus,
            name="incidentstatus",
            create_type=False,
            values_callable=lambda e: [member.value for member in e],
        ),
        nullable=False,
        default=IncidentStatus.OPEN,
    )

    service_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("services.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    assignee_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )

    escalation_status: Mapped[EscalationStatus] = mapped_column(
        Enum(
            EscalationStatus,
            name="escalationstatus",
            create_type=False,
            values_callable=lambda e: [member.value for member in e],
        ),
        nullable=False,
        default=EscalationStatus.NONE,
    )

    current_escalation_step: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
    )

    next_escalation_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    escalation_processing_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    snoozed_until: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    snooze_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    acknowledged_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    resolved_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    service = relationship("Service")
    events = relationship(
        "IncidentEvent",
        back_populates="incident",
        cascade="all, delete-orphan",
        order_by="IncidentEvent.created_at",
    )

    def __repr__(self) -> str:
        return (
            f"<Incident(id={self.id}, status={self.status.value}, "
            f"escalation={self.escalation_status.value}, "
            f"step={self.current_escalation_step})>"
        )


class IncidentEvent(Base):
    """Append-only timeline entry for an incident."""

    __tablename__ = "incident_events"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    incident_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("incidents.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    message: Mapped[str] = mapped_column(Text, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )

    incident = relationship("Incident", back_populates="events")
