"""On-call schedule evaluation.

Expands rotation layers into concrete on-call blocks, applies overrides,
resolves overlapping layers by priority, and answers "who is on call at T".
All datetimes are timezone-aware; weekday/hour restrictions are evaluated in
the schedule's time zone.
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, time, timedelta
from typing import Any, Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from opsguard.logging_config import get_logger

logger = get_logger(__name__)

# Upper bound on rotation blocks generated per layer (a year of 1h rotations)
MAX_BLOCKS_PER_LAYER = 10_000

BlockSource = Literal["rotation", "override"]


@dataclass
class LayerInput:
    """A rotation layer; users are in rotation order."""

    id: str
    name: str
    start: datetime
    end: datetime | None
    rotation_length_hours: float
    users: list[uuid.UUID]
    shift_length_hours: float | None = None
    restrictions: dict[str, Any] | None = None
    priority: int = 0


@dataclass
class OverrideInput:
    """A time-bounded override."""

    id: str
    user_id: uuid.UUID
    start: datetime
    end: datetime
    replaces_user_id: uuid.UUID | None = None


@dataclass
class OnCallBlock:
    """A span of time during which one user is on call."""

    id: str
    start: datetime
    end: datetime
    user_id: uuid.UUID
    layer_id: str
    layer_name: str
    source: BlockSource = "rotation"
    meta: dict[str, Any] = field(default_factory=dict)


def get_zone(time_zone: str | None) -> ZoneInfo:
    """Return the ZoneInfo for a schedule, falling back to UTC."""
    if not time_zone:
        return ZoneInfo("UTC")
    try:
        return ZoneInfo(time_zone)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown schedule time zone, using UTC", time_zone=time_zone)
        return ZoneInfo("UTC")


def _sunday_based_weekday(value: datetime) -> int:
    # 0=Sunday ... 6=Saturday
    return value.isoweekday() % 7


def _allowed_hours_for_day(
    day_start: datetime,
    day_end: datetime,
    start_hour: int | None,
    end_hour: int | None,
) -> list[tuple[datetime, datetime]]:
    """Allowed sub-intervals of one local day for an hour restriction."""
    local_date = day_start.date()
    tz = day_start.tzinfo

    def at(hour: int) -> datetime:
        return datetime.combine(local_date, time(hour), tzinfo=tz)

    if start_hour is not None and end_hour is not None:
        if start_hour <= end_hour:
            return [(at(start_hour), at(end_hour))]
        # Overnight range, e.g. 18:00 - 06:00
        return [(day_start, at(end_hour)), (at(start_hour), day_end)]
    if start_hour is not None:
        return [(at(start_hour), day_end)]
    if end_hour is not None:
        return [(day_start, at(end_hour))]
    return [(day_start, day_end)]


def restriction_windows(
    start: datetime,
    end: datetime,
    restrictions: dict[str, Any] | None,
    tz: ZoneInfo,
) -> list[tuple[datetime, datetime]]:
    """Split [start, end) into the parts a layer's restrictions allow.

    Returns UTC intervals. Without restrictions the whole span is returned.
    """
    if not restrictions:
        return [(start, end)]

    days_of_week = restrictions.get("days_of_week") or []
    start_hour = restrictions.get("start_hour")
    end_hour = restrictions.get("end_hour")

    windows: list[tuple[datetime, datetime]] = []
    local_day = start.astimezone(tz).date()
    last_day = end.astimezone(tz).date()

    while local_day <= last_day:
        day_start = datetime.combine(local_day, time(0), tzinfo=tz)
        day_end = datetime.combine(local_day + timedelta(days=1), time(0), tzinfo=tz)
        local_day += timedelta(days=1)

        if days_of_week and _sunday_based_weekday(day_start) not in days_of_week:
            continue

        for allowed_start, allowed_end in _allowed_hours_for_day(
            day_start, day_end, start_hour, end_hour
        ):
            clipped_start = max(allowed_start.astimezone(UTC), start)
            clipped_end = min(allowed_end.astimezone(UTC), end)
            if clipped_start < clipped_end:
                windows.append((clipped_start, clipped_end))

    # Merge touching windows (overnight ranges spanning midnight)
    merged: list[tuple[datetime, datetime]] = []
    for window in sorted(windows):
        if merged and merged[-1][1] >= window[0]:
            merged[-1] = (merged[-1][0], max(merged[-1][1], window[1]))
        else:
            merged.append(window)
    return merged


def generate_layer_blocks(
    layer: LayerInput,
    window_start: datetime,
    window_end: datetime,
    tz: ZoneInfo | None = None,
) -> list[OnCallBlock]:
    """Expand one layer into blocks clamped to [window_start, window_end)."""
    if not layer.users:
        return []

    rotation = timedelta(hours=layer.rotation_length_hours)
    shift = timedelta(hours=layer.shift_length_hours or layer.rotation_length_hours)
    if rotation <= timedelta(0) or shift <= timedelta(0):
        return []

    tz = tz or ZoneInfo("UTC")
    effective_start = max(window_start, layer.start)
    if layer.end is not None and effective_start >= layer.end:
        return []

    index = int((effective_start - layer.start) / rotation) if effective_start > layer.start else 0
    # A duty longer than its rotation can still cover the window start
    if shift > rotation:
        index = max(0, index - int(shift / rotation))

    blocks: list[OnCallBlock] = []
    for _ in range(MAX_BLOCKS_PER_LAYER):
        block_start = layer.start + index * rotation
        if block_start >= window_end:
            break
        if layer.end is not None and block_start >= layer.end:
            break

        block_end = block_start + shift
        if layer.end is not None and block_end > layer.end:
            block_end = layer.end

        if block_end <= effective_start:
            index += 1
            continue

        user_id = layer.users[index % len(layer.users)]
        clamped_start = max(block_start, effective_start)
        clamped_end = min(block_end, window_end)

        if clamped_start < clamped_end:
            windows = restriction_windows(
                clamped_start, clamped_end, layer.restrictions, tz
            )
            for position, (start, end) in enumerate(windows):
                block_id = f"{layer.id}-{index}"
                if len(windows) > 1:
                    block_id = f"{block_id}-{position}"
                blocks.append(
                    OnCallBlock(
                        id=block_id,
                        start=start,
                        end=end,
                        user_id=user_id,
                        layer_id=layer.id,
                        layer_name=layer.name,
                    )
                )
        index += 1
    else:
        logger.warning(
            "On-call layer expansion hit block limit",
            layer_id=layer.id,
            limit=MAX_BLOCKS_PER_LAYER,
        )

    return blocks


def apply_overrides(
    blocks: list[OnCallBlock],
    overrides: list[OverrideInput],
) -> list[OnCallBlock]:
    """Replace the covered part of each block with the override user."""
    result = list(blocks)

    for override in sorted(overrides, key=lambda o: o.start):
        next_blocks: list[OnCallBlock] = []
        for block in result:
            if override.end <= block.start or override.start >= block.end:
                next_blocks.append(block)
                continue

            if override.replaces_user_id and override.replaces_user_id != block.user_id:
                next_blocks.append(block)
                continue

            override_start = max(override.start, block.start)
            override_end = min(override.end, block.end)

            if block.start < override_start:
                next_blocks.append(replace(block, end=override_start))

            next_blocks.append(
                replace(
                    block,
                    id=f"{block.id}-override-{override.id}",
                    start=override_start,
                    end=override_end,
                    user_id=override.user_id,
                    source="override",
                )
            )

            if override_end < block.end:
                next_blocks.append(replace(block, start=override_end))
        result = next_blocks

    return sorted(result, key=lambda b: b.start)


def build_schedule_blocks(
    layers: list[LayerInput],
    overrides: list[OverrideInput],
    window_start: datetime,
    window_end: datetime,
    time_zone: str | None = None,
) -> list[OnCallBlock]:
    """Rotation blocks for every layer with overrides applied."""
    tz = get_zone(time_zone)
    blocks = [
        block
        for layer in layers
        for block in generate_layer_blocks(layer, window_start, window_end, tz)
    ]
    return apply_overrides(blocks, overrides)


def get_final_schedule_blocks(
    blocks: list[OnCallBlock],
    layer_priority: dict[str, int],
) -> list[OnCallBlock]:
    """Flatten overlapping blocks into a single non-overlapping timeline.

    Where blocks overlap, the block whose layer has the highest priority
    wins. Consecutive blocks for the same user are merged.
    """
    if not blocks:
        return []

    # (time, is_start, block); ends sort before starts at the same instant
    events: list[tuple[datetime, int, OnCallBlock]] = []
    for block in blocks:
        events.append((block.start, 1, block))
        events.append((block.end, 0, block))
    events.sort(key=lambda e: (e[0], e[1]))

    segments: list[OnCallBlock] = []
    active: dict[str, OnCallBlock] = {}
    last_time: datetime | None = None
    last_winner: OnCallBlock | None = None

    for event_time, is_start, block in events:
        if last_time is not None and last_winner is not None and event_time > last_time:
            segments.append(
                replace(
                    last_winner,
                    id=f"final-{last_winner.id}-{int(last_time.timestamp())}",
                    start=last_time,
                    end=event_time,
                    layer_name="Final Schedule",
                )
            )

        if is_start:
            active[block.id] = block
        else:
            active.pop(block.id, None)

        last_winner = max(
            active.values(),
            key=lambda b: layer_priority.get(b.layer_id, 0),
            default=None,
        )
        last_time = event_time

    merged: list[OnCallBlock] = []
    for segment in segments:
        if merged and merged[-1].user_id == segment.user_id and merged[-1].end == segment.start:
            merged[-1] = replace(merged[-1], end=segment.end)
        else:
            merged.append(segment)
    return merged


def find_on_call_user_ids(
    layers: list[LayerInput],
    overrides: list[OverrideInput],
    at_time: datetime,
    time_zone: str | None = None,
) -> list[uuid.UUID]:
    """Users on call at at_time.

    An override covering at_time wins over the rotation. Overrides that do
    not target a specific user apply even when no layer covers at_time.
    """
    active_overrides = [o for o in overrides if o.start <= at_time < o.end]

    window_end = at_time + timedelta(minutes=1)
    blocks = build_schedule_blocks(
        layers, active_overrides, at_time, window_end, time_zone
    )
    priorities = {layer.id: layer.priority for layer in layers}
    final_blocks = get_final_schedule_blocks(blocks, priorities)

    user_ids: list[uuid.UUID] = []
    for block in final_blocks:
        if block.start <= at_time < block.end and block.user_id not in user_ids:
            user_ids.append(block.user_id)

    if not user_ids:
        for override in active_overrides:
            if override.replaces_user_id is None and override.user_id not in user_ids:
                user_ids.append(override.user_id)

    return user_ids


def layer_from_model(layer: Any) -> LayerInput:
    """Build a LayerInput from an OnCallLayer row with its users loaded."""
    return LayerInput(
        id=str(layer.id),
        name=layer.name,
        start=layer.start,
        end=layer.end,
        rotation_length_hours=layer.rotation_length_hours,
        shift_length_hours=layer.shift_length_hours,
        restrictions=layer.restrictions,
        priority=layer.priority or 0,
        users=[lu.user_id for lu in sorted(layer.users, key=lambda lu: lu.position)],
    )


def override_from_model(override: Any) -> OverrideInput:
    """Build an OverrideInput from an OnCallOverride row."""
    return OverrideInput(
        id=str(override.id),
        user_id=override.user_id,
        start=override.start,
        end=override.end,
        replaces_user_id=override.replaces_user_id,
    )
