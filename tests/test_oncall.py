"""Tests for on-call schedule evaluation."""

import uuid
from datetime import UTC, datetime, timedelta
from types import SimpleNamespace
from zoneinfo import ZoneInfo

from opsguard.services.oncall import (
    MAX_BLOCKS_PER_LAYER,
    LayerInput,
    OnCallBlock,
    OverrideInput,
    apply_overrides,
    build_schedule_blocks,
    find_on_call_user_ids,
    generate_layer_blocks,
    get_final_schedule_blocks,
    get_zone,
    layer_from_model,
    override_from_model,
)

ALICE = uuid.uuid4()
BOB = uuid.uuid4()
CAROL = uuid.uuid4()

# Monday
MONDAY = datetime(2026, 1, 5, tzinfo=UTC)


def daily_layer(**overrides) -> LayerInput:
    values = {
        "id": "l1",
        "name": "Primary",
        "start": MONDAY,
        "end": None,
        "rotation_length_hours": 24,
        "users": [ALICE, BOB],
    }
    values.update(overrides)
    return LayerInput(**values)


def block(user_id, start, end, layer_id="l1", block_id=None) -> OnCallBlock:
    return OnCallBlock(
        id=block_id or f"{layer_id}-{int(start.timestamp())}",
        start=start,
        end=end,
        user_id=user_id,
        layer_id=layer_id,
        layer_name=layer_id,
    )


class TestGenerateLayerBlocks:
    """Rotation expansion."""

    def test_rotates_users_in_order(self):
        blocks = generate_layer_blocks(
            daily_layer(), MONDAY, MONDAY + timedelta(days=2)
        )

        assert [b.id for b in blocks] == ["l1-0", "l1-1"]
        assert [b.user_id for b in blocks] == [ALICE, BOB]
        assert blocks[0].start == MONDAY
        assert blocks[0].end == MONDAY + timedelta(days=1)
        assert blocks[1].end == MONDAY + timedelta(days=2)

    def test_window_starting_mid_rotation_is_clamped(self):
        window_start = MONDAY + timedelta(days=1, hours=12)

        blocks = generate_layer_blocks(
            daily_layer(), window_start, MONDAY + timedelta(days=2)
        )

        assert len(blocks) == 1
        assert blocks[0].id == "l1-1"
        assert blocks[0].user_id == BOB
        assert blocks[0].start == window_start

    def test_shift_shorter_than_rotation(self):
        blocks = generate_layer_blocks(
            daily_layer(shift_length_hours=8), MONDAY, MONDAY + timedelta(days=1)
        )

        assert len(blocks) == 1
        assert blocks[0].end == MONDAY + timedelta(hours=8)

    def test_layer_end_truncates_blocks(self):
        layer = daily_layer(end=MONDAY + timedelta(hours=30))

        blocks = generate_layer_blocks(layer, MONDAY, MONDAY + timedelta(days=3))

        assert len(blocks) == 2
        assert blocks[-1].end == MONDAY + timedelta(hours=30)

    def test_layer_without_users(self):
        assert generate_layer_blocks(
            daily_layer(users=[]), MONDAY, MONDAY + timedelta(days=1)
        ) == []

    def test_window_after_layer_end(self):
        layer = daily_layer(end=MONDAY + timedelta(days=1))

        assert generate_layer_blocks(
            layer, MONDAY + timedelta(days=2), MONDAY + timedelta(days=3)
        ) == []

    def test_weekday_hour_restriction_in_schedule_zone(self):
        layer = daily_layer(
            rotation_length_hours=168,
            restrictions={"days_of_week": [1, 2, 3, 4, 5], "start_hour": 9, "end_hour": 17},
        )
        window_start = MONDAY + timedelta(days=1)

        blocks = generate_layer_blocks(
            layer,
            window_start,
            window_start + timedelta(days=1),
            ZoneInfo("America/New_York"),
        )

        # 09:00-17:00 New York on Tuesday is 14:00-22:00 UTC in January
        assert len(blocks) == 1
        assert blocks[0].id == "l1-0"
        assert blocks[0].start == window_start + timedelta(hours=14)
        assert blocks[0].end == window_start + timedelta(hours=22)

    def test_restricted_days_excluded(self):
        # Sunday only; window covers Monday
        layer = daily_layer(rotation_length_hours=168, restrictions={"days_of_week": [0]})

        assert generate_layer_blocks(layer, MONDAY, MONDAY + timedelta(days=1)) == []

    def test_overnight_restriction_spans_midnight(self):
        layer = daily_layer(
            rotation_length_hours=168,
            restrictions={"start_hour": 18, "end_hour": 6},
        )

        blocks = generate_layer_blocks(
            layer,
            MONDAY + timedelta(hours=12),
            MONDAY + timedelta(days=2),
        )

        assert [b.id for b in blocks] == ["l1-0-0", "l1-0-1"]
        assert blocks[0].start == MONDAY + timedelta(hours=18)
        assert blocks[0].end == MONDAY + timedelta(days=1, hours=6)
        assert blocks[1].start == MONDAY + timedelta(days=1, hours=18)
        assert blocks[1].end == MONDAY + timedelta(days=2)

    def test_block_count_is_capped(self):
        layer = daily_layer(rotation_length_hours=1, users=[ALICE])

        blocks = generate_layer_blocks(layer, MONDAY, MONDAY + timedelta(days=1000))

        assert len(blocks) == MAX_BLOCKS_PER_LAYER


class TestApplyOverrides:
    """Override splicing."""

    def test_override_splits_block(self):
        base = block(ALICE, MONDAY, MONDAY + timedelta(days=1), block_id="l1-0")
        override = OverrideInput(
            id="o1",
            user_id=CAROL,
            start=MONDAY + timedelta(hours=10),
            end=MONDAY + timedelta(hours=12),
        )

        blocks = apply_overrides([base], [override])

        assert [(b.user_id, b.source) for b in blocks] == [
            (ALICE, "rotation"),
            (CAROL, "override"),
            (ALICE, "rotation"),
        ]
        assert blocks[1].id == "l1-0-override-o1"
        assert blocks[0].end == blocks[1].start
        assert blocks[1].end == blocks[2].start

    def test_override_for_other_user_is_ignored(self):
        base = block(ALICE, MONDAY, MONDAY + timedelta(days=1))
        override = OverrideInput(
            id="o1",
            user_id=CAROL,
            start=MONDAY,
            end=MONDAY + timedelta(days=1),
            replaces_user_id=BOB,
        )

        assert apply_overrides([base], [override]) == [base]

    def test_override_covering_whole_block(self):
        base = block(ALICE, MONDAY, MONDAY + timedelta(hours=8))
        override = OverrideInput(
            id="o1",
            user_id=CAROL,
            start=MONDAY - timedelta(hours=1),
            end=MONDAY + timedelta(hours=9),
        )

        blocks = apply_overrides([base], [override])

        assert len(blocks) == 1
        assert blocks[0].user_id == CAROL
        assert blocks[0].start == MONDAY
        assert blocks[0].end == MONDAY + timedelta(hours=8)


class TestFinalScheduleBlocks:
    """Priority flattening."""

    def test_higher_priority_layer_wins_overlap(self):
        blocks = [
            block(ALICE, MONDAY, MONDAY + timedelta(hours=24), layer_id="l1"),
            block(
                BOB,
                MONDAY + timedelta(hours=8),
                MONDAY + timedelta(hours=16),
                layer_id="l2",
            ),
        ]

        final = get_final_schedule_blocks(blocks, {"l1": 0, "l2": 1})

        assert [b.user_id for b in final] == [ALICE, BOB, ALICE]
        assert final[1].start == MONDAY + timedelta(hours=8)
        assert final[1].end == MONDAY + timedelta(hours=16)
        assert all(b.layer_name == "Final Schedule" for b in final)

    def test_adjacent_segments_for_same_user_merge(self):
        blocks = [
            block(ALICE, MONDAY, MONDAY + timedelta(hours=12), block_id="a"),
            block(
                ALICE,
                MONDAY + timedelta(hours=12),
                MONDAY + timedelta(hours=24),
                block_id="b",
            ),
        ]

        final = get_final_schedule_blocks(blocks, {})

        assert len(final) == 1
        assert final[0].start == MONDAY
        assert final[0].end == MONDAY + timedelta(hours=24)

    def test_empty(self):
        assert get_final_schedule_blocks([], {}) == []


class TestFindOnCallUserIds:
    """Who is on call at an instant."""

    def test_rotation_user(self):
        at = MONDAY + timedelta(hours=10)

        assert find_on_call_user_ids([daily_layer()], [], at) == [ALICE]
        assert find_on_call_user_ids([daily_layer()], [], at + timedelta(days=1)) == [BOB]

    def test_active_override_wins(self):
        at = MONDAY + timedelta(hours=10)
        override = OverrideInput(
            id="o1", user_id=CAROL, start=at - timedelta(hours=1), end=at + timedelta(hours=1)
        )

        assert find_on_call_user_ids([daily_layer()], [override], at) == [CAROL]

    def test_expired_override_ignored(self):
        at = MONDAY + timedelta(hours=10)
        override = OverrideInput(
            id="o1", user_id=CAROL, start=at - timedelta(hours=3), end=at - timedelta(hours=1)
        )

        assert find_on_call_user_ids([daily_layer()], [override], at) == [ALICE]

    def test_targeted_override_for_someone_else(self):
        at = MONDAY + timedelta(hours=10)
        override = OverrideInput(
            id="o1",
            user_id=CAROL,
            start=at - timedelta(hours=1),
            end=at + timedelta(hours=1),
            replaces_user_id=BOB,
        )

        assert find_on_call_user_ids([daily_layer()], [override], at) == [ALICE]

    def test_override_without_layers(self):
        at = MONDAY + timedelta(hours=10)
        override = OverrideInput(
            id="o1", user_id=CAROL, start=at - timedelta(hours=1), end=at + timedelta(hours=1)
        )

        assert find_on_call_user_ids([], [override], at) == [CAROL]

    def test_priority_between_layers(self):
        at = MONDAY + timedelta(hours=10)
        secondary = daily_layer(id="l2", users=[CAROL], priority=5)

        assert find_on_call_user_ids([daily_layer(), secondary], [], at) == [CAROL]

    def test_nobody_on_call_outside_restrictions(self):
        layer = daily_layer(restrictions={"start_hour": 9, "end_hour": 17})

        assert find_on_call_user_ids([layer], [], MONDAY + timedelta(hours=20)) == []


class TestHelpers:
    def test_unknown_zone_falls_back_to_utc(self):
        assert get_zone("Not/AZone") == ZoneInfo("UTC")
        assert get_zone(None) == ZoneInfo("UTC")
        assert get_zone("Europe/Berlin") == ZoneInfo("Europe/Berlin")

    def test_build_schedule_blocks_applies_overrides(self):
        override = OverrideInput(
            id="o1", user_id=CAROL, start=MONDAY, end=MONDAY + timedelta(hours=1)
        )

        blocks = build_schedule_blocks(
            [daily_layer()], [override], MONDAY, MONDAY + timedelta(days=1), "UTC"
        )

        assert blocks[0].user_id == CAROL
        assert blocks[1].user_id == ALICE

    def test_layer_from_model_orders_users_by_position(self):
        layer = SimpleNamespace(
            id=uuid.uuid4(),
            name="Primary",
            start=MONDAY,
            end=None,
            rotation_length_hours=24,
            shift_length_hours=None,
            restrictions=None,
            priority=None,
            users=[
                SimpleNamespace(user_id=BOB, position=1),
                SimpleNamespace(user_id=ALICE, position=0),
            ],
        )

        result = layer_from_model(layer)

        assert result.users == [ALICE, BOB]
        assert result.priority == 0
        assert result.id == str(layer.id)

    def test_override_from_model(self):
        override = SimpleNamespace(
            id=uuid.uuid4(),
            user_id=CAROL,
            start=MONDAY,
            end=MONDAY + timedelta(hours=1),
            replaces_user_id=ALICE,
        )

        result = override_from_model(override)

        assert result.user_id == CAROL
        assert result.replaces_user_id == ALICE
