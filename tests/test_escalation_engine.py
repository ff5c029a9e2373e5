"""Tests for the escalation engine."""

import uuid
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy.exc import DBAPIError

from opsguard.models.escalation_policy import (
    EscalationPolicy,
    EscalationStep,
    EscalationTargetType,
)
from opsguard.models.incident import EscalationStatus, Incident, IncidentStatus
from opsguard.models.service import Service
from opsguard.services.escalation_engine import (
    EscalationOutcome,
    EscalationResult,
    LOCKED_REFRESH_FIELDS,
    build_notification_title,
    describe_target,
    execute_escalation,
    get_next_escalation_at,
    process_pending_escalations,
    try_acquire_incident_lock,
)

ENGINE = "opsguard.services.escalation_engine"


def make_step(
    order: int,
    target_type: EscalationTargetType = EscalationTargetType.TEAM,
    target: uuid.UUID | None = None,
    delay_minutes: int = 0,
    set_target: bool = True,
) -> EscalationStep:
    step = EscalationStep(
        step_order=order,
        delay_minutes=delay_minutes,
        target_type=target_type,
        notification_channels=["sms"],
        notify_only_team_lead=False,
    )
    if set_target:
        target = target or uuid.uuid4()
        if target_type == EscalationTargetType.USER:
            step.target_user_id = target
        elif target_type == EscalationTargetType.TEAM:
            step.target_team_id = target
        else:
            step.target_schedule_id = target
    return step


def make_incident(
    steps: list[EscalationStep] | None,
    escalation_status: EscalationStatus = EscalationStatus.ESCALATING,
    current_step: int | None = 0,
) -> Incident:
    policy = EscalationPolicy(name="Primary", steps=steps) if steps is not None else None
    return Incident(
        id=uuid.uuid4(),
        title="Database down",
        status=IncidentStatus.OPEN,
        escalation_status=escalation_status,
        current_escalation_step=current_step,
        next_escalation_at=datetime.now(UTC),
        service=Service(name="api", policy=policy),
    )


def db_results(incident: Incident | None, lock_rowcount: int = 1) -> list[MagicMock]:
    load = MagicMock()
    load.scalar_one_or_none.return_value = incident
    lock = MagicMock()
    lock.rowcount = lock_rowcount
    release = MagicMock()
    return [load, lock, release]


def added_messages(mock_db) -> list[str]:
    return [c.args[0].message for c in mock_db.add.call_args_list]


class TestEscalationResult:
    def test_reason_and_escalated(self):
        assert EscalationResult(outcome=EscalationOutcome.ESCALATED).escalated is True
        assert EscalationResult(outcome=EscalationOutcome.ESCALATED).reason is None
        assert (
            EscalationResult(outcome=EscalationOutcome.ALREADY_IN_PROGRESS).reason
            == "Escalation already in progress"
        )


class TestFormatting:
    def test_title_includes_level_after_first_step(self):
        incident = make_incident([])

        assert build_notification_title(incident, 0) == "[OpsGuard] Incident: Database down"
        assert build_notification_title(incident, 2) == (
            "[OpsGuard] Incident: Database down (Escalation Level 3)"
        )

    def test_describe_target(self):
        user_step = make_step(0, EscalationTargetType.USER)
        team_step = make_step(0, EscalationTargetType.TEAM)

        assert describe_target(user_step, 1) == f"user {user_step.target_user_id}"
        assert describe_target(team_step, 2) == f"team {team_step.target_team_id} (2 users)"
        assert describe_target(team_step, 1).endswith("(1 user)")


class TestExecuteEscalationPreconditions:
    """Outcomes decided before the incident lock is taken."""

    @pytest.mark.asyncio
    async def test_missing_incident(self, mock_db):
        mock_db.execute.side_effect = db_results(None)

        result = await execute_escalation(mock_db, uuid.uuid4())

        assert result.outcome == EscalationOutcome.NO_POLICY
        mock_db.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_policy_stops_escalation(self, mock_db):
        incident = make_incident(None)
        mock_db.execute.side_effect = db_results(incident)

        result = await execute_escalation(mock_db, incident.id)

        assert result.outcome == EscalationOutcome.NO_POLICY
        assert incident.escalation_status == EscalationStatus.NONE
        assert incident.next_escalation_at is None
        mock_db.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_already_completed(self, mock_db):
        incident = make_incident([make_step(0)], EscalationStatus.COMPLETED)
        mock_db.execute.side_effect = db_results(incident)

        result = await execute_escalation(mock_db, incident.id)

        assert result.outcome == EscalationOutcome.ALREADY_COMPLETED
        assert mock_db.execute.await_count == 1

    @pytest.mark.asyncio
    async def test_step_past_end_exhausts(self, mock_db):
        incident = make_incident([make_step(0), make_step(1)])
        mock_db.execute.side_effect = db_results(incident)

        result = await execute_escalation(mock_db, incident.id, 2)

        assert result.outcome == EscalationOutcome.EXHAUSTED
        assert incident.escalation_status == EscalationStatus.COMPLETED
        assert incident.current_escalation_step is None
        assert incident.next_escalation_at is None
        assert mock_db.execute.await_count == 1

    @pytest.mark.asyncio
    async def test_lock_held_elsewhere(self, mock_db):
        incident = make_incident([make_step(0)])
        mock_db.execute.side_effect = db_results(incident, lock_rowcount=0)

        with patch(f"{ENGINE}.resolve_escalation_target", new_callable=AsyncMock) as mock_resolve:
            result = await execute_escalation(mock_db, incident.id)

        assert result.outcome == EscalationOutcome.ALREADY_IN_PROGRESS
        mock_resolve.assert_not_awaited()
        # Load and lock only; the lock is not ours to release
        assert mock_db.execute.await_count == 2


class TestExecuteEscalationSteps:
    """Step execution under the incident lock."""

    @pytest.mark.asyncio
    async def test_escalates_and_schedules_next_step(self, mock_db):
        steps = [make_step(0), make_step(1, delay_minutes=5)]
        incident = make_incident(steps)
        users = [uuid.uuid4(), uuid.uuid4()]
        mock_db.execute.side_effect = db_results(incident)
        before = datetime.now(UTC)

        with (
            patch(f"{ENGINE}.resolve_escalation_target", new_callable=AsyncMock, return_value=users),
            patch(f"{ENGINE}.send_user_notification", new_callable=AsyncMock) as mock_notify,
            patch(f"{ENGINE}.schedule_escalation", new_callable=AsyncMock) as mock_schedule,
        ):
            result = await execute_escalation(mock_db, incident.id)

        assert result.outcome == EscalationOutcome.ESCALATED
        assert result.step_index == 0
        assert result.notified_user_ids == users
        assert result.next_step_scheduled is True
        assert mock_notify.await_count == 2

        payload = mock_notify.call_args.args[2]
        assert payload.title == "[OpsGuard] Incident: Database down"
        assert payload.escalation_level == 1
        assert [c.value for c in payload.channels] == ["sms"]

        assert incident.assignee_id == users[0]
        assert incident.escalation_status == EscalationStatus.ESCALATING
        assert incident.current_escalation_step == 1
        mock_db.refresh.assert_awaited_once_with(incident, LOCKED_REFRESH_FIELDS)
        assert before + timedelta(minutes=5) <= incident.next_escalation_at
        assert incident.next_escalation_at <= datetime.now(UTC) + timedelta(minutes=5)
        mock_schedule.assert_awaited_once_with(
            mock_db, incident.id, incident.next_escalation_at
        )

        messages = added_messages(mock_db)
        assert messages[0] == (
            f"Escalated to team {steps[0].target_team_id} (2 users) (Level 1)"
        )
        assert messages[1].startswith("Next escalation step scheduled for ")
        assert messages[1].endswith("(5 minute delay)")

        # Load, lock, release
        assert mock_db.execute.await_count == 3
        release_stmt = mock_db.execute.call_args_list[2].args[0]
        assert release_stmt.compile().params["escalation_processing_at"] is None

    @pytest.mark.asyncio
    async def test_last_step_completes(self, mock_db):
        steps = [make_step(0), make_step(1, delay_minutes=10)]
        incident = make_incident(steps, current_step=1)
        incident.assignee_id = None
        mock_db.execute.side_effect = db_results(incident)

        with (
            patch(f"{ENGINE}.resolve_escalation_target", new_callable=AsyncMock, return_value=[uuid.uuid4()]),
            patch(f"{ENGINE}.send_user_notification", new_callable=AsyncMock) as mock_notify,
            patch(f"{ENGINE}.schedule_escalation", new_callable=AsyncMock) as mock_schedule,
        ):
            result = await execute_escalation(mock_db, incident.id)

        assert result.outcome == EscalationOutcome.ESCALATED
        assert result.next_step_scheduled is False
        assert incident.escalation_status == EscalationStatus.COMPLETED
        assert incident.current_escalation_step is None
        assert incident.next_escalation_at is None
        # Later steps never take the assignee
        assert incident.assignee_id is None
        mock_schedule.assert_not_awaited()
        assert mock_notify.call_args.args[2].title.endswith("(Escalation Level 2)")
        assert added_messages(mock_db)[0].endswith("(Level 2, after 10 minute delay)")

    @pytest.mark.asyncio
    async def test_existing_assignee_is_kept(self, mock_db):
        incident = make_incident([make_step(0)])
        assignee = uuid.uuid4()
        incident.assignee_id = assignee
        mock_db.execute.side_effect = db_results(incident)

        with (
            patch(f"{ENGINE}.resolve_escalation_target", new_callable=AsyncMock, return_value=[uuid.uuid4()]),
            patch(f"{ENGINE}.send_user_notification", new_callable=AsyncMock),
            patch(f"{ENGINE}.schedule_escalation", new_callable=AsyncMock),
        ):
            await execute_escalation(mock_db, incident.id)

        assert incident.assignee_id == assignee

    @pytest.mark.asyncio
    async def test_invalid_target_halts(self, mock_db):
        steps = [make_step(0, EscalationTargetType.USER, set_target=False), make_step(1)]
        incident = make_incident(steps)
        mock_db.execute.side_effect = db_results(incident)

        with patch(f"{ENGINE}.send_user_notification", new_callable=AsyncMock) as mock_notify:
            result = await execute_escalation(mock_db, incident.id)

        assert result.outcome == EscalationOutcome.INVALID_TARGET
        assert result.step_index == 0
        assert incident.escalation_status == EscalationStatus.ESCALATING
        assert incident.next_escalation_at is None
        assert "invalid target configuration" in added_messages(mock_db)[0]
        mock_notify.assert_not_awaited()
        assert mock_db.execute.await_count == 3

    @pytest.mark.asyncio
    async def test_step_without_recipients_is_skipped(self, mock_db):
        steps = [make_step(0), make_step(1)]
        incident = make_incident(steps)
        user = uuid.uuid4()
        mock_db.execute.side_effect = db_results(incident)

        with (
            patch(f"{ENGINE}.resolve_escalation_target", new_callable=AsyncMock, side_effect=[[], [user]]),
            patch(f"{ENGINE}.send_user_notification", new_callable=AsyncMock),
            patch(f"{ENGINE}.schedule_escalation", new_callable=AsyncMock),
        ):
            result = await execute_escalation(mock_db, incident.id)

        assert result.outcome == EscalationOutcome.ESCALATED
        assert result.step_index == 1
        assert added_messages(mock_db)[0].endswith("resolved to no users. Skipping.")
        assert incident.escalation_status == EscalationStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_nobody_to_notify_completes(self, mock_db):
        incident = make_incident([make_step(0), make_step(1)])
        mock_db.execute.side_effect = db_results(incident)

        with patch(f"{ENGINE}.resolve_escalation_target", new_callable=AsyncMock, return_value=[]):
            result = await execute_escalation(mock_db, incident.id)

        assert result.outcome == EscalationOutcome.NO_RECIPIENTS
        assert result.escalated is False
        assert incident.escalation_status == EscalationStatus.COMPLETED
        assert len(added_messages(mock_db)) == 2

    @pytest.mark.asyncio
    async def test_failure_rolls_back_and_releases_lock(self, mock_db):
        incident = make_incident([make_step(0)])
        mock_db.execute.side_effect = db_results(incident)

        with (
            patch(f"{ENGINE}.resolve_escalation_target", new_callable=AsyncMock, return_value=[uuid.uuid4()]),
            patch(
                f"{ENGINE}.send_user_notification",
                new_callable=AsyncMock,
                side_effect=RuntimeError("provider down"),
            ),
        ):
            with pytest.raises(RuntimeError, match="provider down"):
                await execute_escalation(mock_db, incident.id)

        mock_db.rollback.assert_awaited_once()
        assert mock_db.execute.await_count == 3
        release_stmt = mock_db.execute.call_args_list[2].args[0]
        assert "UPDATE incidents" in str(release_stmt)

    @pytest.mark.asyncio
    async def test_release_failure_does_not_mask_result(self, mock_db):
        incident = make_incident([make_step(0)])
        load, lock, _ = db_results(incident)
        mock_db.execute.side_effect = [load, lock, ConnectionError("lost")]

        with (
            patch(f"{ENGINE}.resolve_escalation_target", new_callable=AsyncMock, return_value=[uuid.uuid4()]),
            patch(f"{ENGINE}.send_user_notification", new_callable=AsyncMock),
            patch(f"{ENGINE}.schedule_escalation", new_callable=AsyncMock),
        ):
            result = await execute_escalation(mock_db, incident.id)

        assert result.outcome == EscalationOutcome.ESCALATED


class TestStepRecheckedUnderLock:
    """State another worker changed between the load and the lock."""

    @pytest.mark.asyncio
    async def test_step_already_run_elsewhere_is_not_repeated(self, mock_db):
        incident = make_incident([make_step(0), make_step(1, delay_minutes=5)])
        mock_db.execute.side_effect = db_results(incident)

        async def advanced_by_other_worker(obj, attribute_names=None):
            obj.current_escalation_step = 1
            obj.next_escalation_at = datetime.now(UTC) + timedelta(minutes=5)

        mock_db.refresh.side_effect = advanced_by_other_worker

        with (
            patch(f"{ENGINE}.resolve_escalation_target", new_callable=AsyncMock) as mock_resolve,
            patch(f"{ENGINE}.send_user_notification", new_callable=AsyncMock) as mock_notify,
            patch(f"{ENGINE}.schedule_escalation", new_callable=AsyncMock) as mock_schedule,
        ):
            result = await execute_escalation(mock_db, incident.id, 0)

        assert result.outcome == EscalationOutcome.ALREADY_IN_PROGRESS
        assert result.step_index == 0
        mock_resolve.assert_not_awaited()
        mock_notify.assert_not_awaited()
        mock_schedule.assert_not_awaited()
        assert incident.current_escalation_step == 1
        mock_db.add.assert_not_called()

        # Load, lock, release
        assert mock_db.execute.await_count == 3
        release_stmt = mock_db.execute.call_args_list[2].args[0]
        assert release_stmt.compile().params["escalation_processing_at"] is None

    @pytest.mark.asyncio
    async def test_step_not_yet_due(self, mock_db):
        incident = make_incident([make_step(0), make_step(1)])
        mock_db.execute.side_effect = db_results(incident)

        async def rescheduled(obj, attribute_names=None):
            obj.next_escalation_at = datetime.now(UTC) + timedelta(minutes=1)

        mock_db.refresh.side_effect = rescheduled

        with patch(f"{ENGINE}.resolve_escalation_target", new_callable=AsyncMock) as mock_resolve:
            result = await execute_escalation(mock_db, incident.id)

        assert result.outcome == EscalationOutcome.ALREADY_IN_PROGRESS
        mock_resolve.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_completed_elsewhere(self, mock_db):
        incident = make_incident([make_step(0)])
        mock_db.execute.side_effect = db_results(incident)

        async def completed(obj, attribute_names=None):
            obj.escalation_status = EscalationStatus.COMPLETED
            obj.current_escalation_step = None
            obj.next_escalation_at = None

        mock_db.refresh.side_effect = completed

        with patch(f"{ENGINE}.resolve_escalation_target", new_callable=AsyncMock) as mock_resolve:
            result = await execute_escalation(mock_db, incident.id, 0)

        assert result.outcome == EscalationOutcome.ALREADY_COMPLETED
        mock_resolve.assert_not_awaited()
        assert mock_db.execute.await_count == 3

    @pytest.mark.asyncio
    async def test_first_trigger_runs_without_schedule(self, mock_db):
        incident = make_incident(
            [make_step(0)], EscalationStatus.NONE, current_step=None
        )
        incident.next_escalation_at = None
        mock_db.execute.side_effect = db_results(incident)

        with (
            patch(f"{ENGINE}.resolve_escalation_target", new_callable=AsyncMock, return_value=[uuid.uuid4()]),
            patch(f"{ENGINE}.send_user_notification", new_callable=AsyncMock),
            patch(f"{ENGINE}.schedule_escalation", new_callable=AsyncMock),
        ):
            result = await execute_escalation(mock_db, incident.id, 0)

        assert result.outcome == EscalationOutcome.ESCALATED


class TestIncidentLock:
    @pytest.mark.asyncio
    async def test_lock_reclaims_stale_claims(self, mock_db):
        result = MagicMock()
        result.rowcount = 1
        mock_db.execute.return_value = result
        now = datetime(2026, 1, 5, 12, 0, tzinfo=UTC)

        assert await try_acquire_incident_lock(mock_db, uuid.uuid4(), now) is True

        stmt = mock_db.execute.call_args.args[0]
        sql = str(stmt)
        params = stmt.compile().params
        assert "escalation_processing_at IS NULL" in sql
        assert now - timedelta(seconds=300) in params.values()
        assert params["escalation_processing_at"] == now
        mock_db.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_lock_denied(self, mock_db):
        result = MagicMock()
        result.rowcount = 0
        mock_db.execute.return_value = result

        assert await try_acquire_incident_lock(mock_db, uuid.uuid4(), datetime.now(UTC)) is False


def candidates_result(rows) -> MagicMock:
    result = MagicMock()
    result.all.return_value = rows
    return result


class TestProcessPendingEscalations:
    """Batch processing of due escalations."""

    @pytest.mark.asyncio
    async def test_counts_escalated_only(self, mock_db):
        first, second = uuid.uuid4(), uuid.uuid4()
        mock_db.execute.return_value = candidates_result([(first, 1), (second, None)])
        executor = AsyncMock(
            side_effect=[
                EscalationResult(outcome=EscalationOutcome.ESCALATED),
                EscalationResult(outcome=EscalationOutcome.ALREADY_IN_PROGRESS),
            ]
        )

        result = await process_pending_escalations(mock_db, executor=executor)

        assert result.processed == 1
        assert result.total == 2
        assert result.errors is None
        executor.assert_any_await(mock_db, first, 1)
        executor.assert_any_await(mock_db, second, 0)

    @pytest.mark.asyncio
    async def test_failure_isolated_and_reported(self, mock_db):
        failing, ok = uuid.uuid4(), uuid.uuid4()
        mock_db.execute.return_value = candidates_result([(failing, 0), (ok, 0)])
        executor = AsyncMock(
            side_effect=[
                ValueError("bad data"),
                EscalationResult(outcome=EscalationOutcome.ESCALATED),
            ]
        )

        with patch(f"{ENGINE}.release_incident_lock", new_callable=AsyncMock) as mock_release:
            result = await process_pending_escalations(mock_db, executor=executor)

        assert result.processed == 1
        assert result.errors == [f"Incident {failing}: bad data"]
        mock_db.rollback.assert_awaited_once()
        mock_release.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_retryable_failure_releases_lock(self, mock_db):
        incident_id = uuid.uuid4()
        mock_db.execute.return_value = candidates_result([(incident_id, 0)])

        class SerializationFailure(Exception):
            sqlstate = "40001"

        error = DBAPIError("UPDATE incidents", {}, SerializationFailure("conflict"))
        executor = AsyncMock(side_effect=error)

        with patch(f"{ENGINE}.release_incident_lock", new_callable=AsyncMock) as mock_release:
            result = await process_pending_escalations(mock_db, executor=executor)

        assert result.processed == 0
        assert len(result.errors) == 1
        mock_release.assert_awaited_once_with(mock_db, incident_id)

    @pytest.mark.asyncio
    async def test_empty_batch_and_limit(self, mock_db):
        mock_db.execute.return_value = candidates_result([])

        result = await process_pending_escalations(mock_db, batch_size=7)

        assert (result.processed, result.total, result.errors) == (0, 0, None)
        stmt = mock_db.execute.call_args.args[0]
        assert 7 in stmt.compile().params.values()
        assert "ORDER BY incidents.next_escalation_at ASC" in str(stmt)


class TestNextEscalationAt:
    @pytest.mark.asyncio
    async def test_returns_earliest(self, mock_db):
        due = datetime(2026, 1, 5, 12, 0, tzinfo=UTC)
        mock_db.scalar.return_value = due

        assert await get_next_escalation_at(mock_db) == due
