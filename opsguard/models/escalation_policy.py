"""Escalation policy models.

A policy is an ordered list of steps. Each step names one target (a user, a
team or an on-call schedule), the channels to page on, and how long to wait
after the previous step before it fires.
"""

import enum
import uuid

from sqlalchemy import Boolean, Enum, ForeignKey, Integer, String
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from opsguard.models.base import Base, TimestampMixin


class EscalationTargetType(str, enum.Enum):
    """Kind of target an escalation step pages."""

    USER = "user"
    TEAM = "team"
    SCHEDULE = "schedule"


class EscalationPolicy(Base, TimestampMixin):
    """Ordered set of escalation steps shared by services."""

    __tablename__ = "escalation_policies"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    name: Mapped[str] = mapped_column(String(200), nullable=False)

    steps = relationship(
        "EscalationStep",
        back_populates="policy",
        cascade="all, delete-orphan",
        order_by="EscalationStep.step_order",
    )

    def __repr__(self) -> str:
        return f"<EscalationPolicy(id={self.id}, name={self.name})>"


class EscalationStep(Base, TimestampMixin):
    """One step of an escalation policy."""

    __tablename__ = "escalation_steps"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    policy_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("escalation_policies.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    step_order: Mapped[int] = mapped_column(Integer, nullable=False)

    # Minutes to wait after the previous step before this one fires
    delay_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    target_type: Mapped[EscalationTargetType] = mapped_column(
        Enum(
            EscalationTargetType,
            name="escalationtargettype",
            create_type=False,
            values_callable=lambda e: [member.value for member in e],
        ),
        nullable=False,
    )

    target_user_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )

    target_team_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("teams.id", ondelete="SET NULL"),
        nullable=True,
    )

    target_schedule_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("oncall_schedules.id", ondelete="SET NULL"),
        nullable=True,
    )

    # JSON array of NotificationChannel values; empty means email only
    notification_channels: Mapped[list[str]] = mapped_column(
        JSONB,
        nullable=False,
        default=list,
    )

    # TEAM targets only: page the lead instead of every member
    notify_only_team_lead: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )

    policy = relationship("EscalationPolicy", back_populates="steps")

    @property
    def target_id(self) -> uuid.UUID | None:
        """The target id matching target_type, or None when unset."""
        if self.target_type == EscalationTargetType.USER:
            return self.target_user_id
        if self.target_type == EscalationTargetType.TEAM:
            return self.target_team_id
        if self.target_type == EscalationTargetType.SCHEDULE:
            return self.target_schedule_id
        return None

    def __repr__(self) -> str:
        return (
            f"<EscalationStep(order={self.step_order}, "
            f"type={self.target_type.value}, delay={self.delay_minutes}m)>"
        )
