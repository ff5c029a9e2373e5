"""Service model.

Incidents belong to a service; the service decides which escalation policy
pages for them and which SLA targets apply.
"""

import uuid

from sqlalchemy import ForeignKey, Integer, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from opsguard.models.base import Base, TimestampMixin


class Service(Base, TimestampMixin):
    """A monitored service."""

    __tablename__ = "services"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    name: Mapped[str] = mapped_column(String(200), nullable=False)

    escalation_policy_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("escalation_policies.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    # SLA targets in minutes from incident creation; null disables the check
    target_ack_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    target_resolve_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)

    policy = relationship("EscalationPolicy")

    def __repr__(self) -> str:
        return f"<Service(id={self.id}, name={self.name})>"
