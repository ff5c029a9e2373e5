"""On-call schedule models.

A schedule is a stack of rotation layers plus time-bounded overrides. Layer
times are stored in UTC; hour/weekday restrictions are interpreted in the
schedule's own time zone.
"""

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, Float, ForeignKey, Integer, String
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from opsguard.models.base import Base, TimestampMixin


class OnCallSchedule(Base, TimestampMixin):
    """Named on-call schedule."""

    __tablename__ = "oncall_schedules"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    name: Mapped[str] = mapped_column(String(200), nullable=False)

    # IANA zone name, e.g. "Europe/Berlin"
    time_zone: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        default="UTC",
    )

    layers = relationship(
        "OnCallLayer",
        back_populates="schedule",
        cascade="all, delete-orphan",
        order_by="OnCallLayer.priority",
    )
    overrides = relationship(
        "OnCallOverride",
        back_populates="schedule",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<OnCallSchedule(id={self.id}, name={self.name})>"


class OnCallLayer(Base, TimestampMixin):
    """A rotation: users take turns for rotation_length_hours each."""

    __tablename__ = "oncall_layers"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    schedule_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("oncall_schedules.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    name: Mapped[str] = mapped_column(String(200), nullable=False)

    start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    end: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    rotation_length_hours: Mapped[float] = mapped_column(Float, nullable=False)

    # Duty length inside each rotation; null means the whole rotation
    shift_length_hours: Mapped[float | None] = mapped_column(Float, nullable=True)

    # {"days_of_week": [0-6, Sunday=0], "start_hour": 0-23, "end_hour": 0-23}
    restrictions: Mapped[dict[str, Any] | None] = mapped_column(
        JSONB,
        nullable=True,
    )

    # Higher priority wins where layers overlap
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    schedule = relationship("OnCallSchedule", back_populates="layers")
    users = relationship(
        "OnCallLayerUser",
        back_populates="layer",
        cascade="all, delete-orphan",
        order_by="OnCallLayerUser.position",
    )


class OnCallLayerUser(Base):
    """A user's slot in a layer's rotation order."""

    __tablename__ = "oncall_layer_users"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    layer_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("oncall_layers.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )

    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    layer = relationship("OnCallLayer", back_populates="users")


class OnCallOverride(Base, TimestampMixin):
    """Time-bounded replacement of whoever the rotation puts on call."""

    __tablename__ = "oncall_overrides"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    schedule_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("oncall_schedules.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )

    start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Only replace this user's blocks; null replaces anyone
    replaces_user_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )

    schedule = relationship("OnCallSchedule", back_populates="overrides")
