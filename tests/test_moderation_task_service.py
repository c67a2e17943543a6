from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from modtasks.datatypes.action_datatypes import ActionType
from modtasks.datatypes.intent_datatypes import ComplexIntent, MentionedUser, TimeExpression
from modtasks.datatypes.task_datatypes import CancelConditionType, TaskStatus, TaskType
from modtasks.services.moderation_task_service import (
    NO_ACTION_MESSAGE,
    UNCLEAR_INTENT_MESSAGE,
    ModerationTaskService,
)
from modtasks.tasks.action_scheduler import ActionScheduler, ScheduledActionStatus
from modtasks.tasks.task_manager import MONITORING_ENDED_RESULT, READY_RESULT, TaskManager
from modtasks.tasks.task_store import MemoryTaskStore, TaskStoreError

from conftest import ALICE, GUILD_ID, MODERATOR, apology_condition, make_task_input

ALICE_MENTION = MentionedUser(user_id=ALICE.user_id, user_name=ALICE.user_name)


@pytest.fixture()
def executor() -> AsyncMock:
    executor = AsyncMock()
    executor.execute.return_value = "done"
    return executor


@pytest.fixture()
def scheduler(clock) -> ActionScheduler:
    return ActionScheduler(clock=clock)


@pytest.fixture()
def service(manager, scheduler, executor) -> ModerationTaskService:
    return ModerationTaskService(manager, scheduler, executor)


async def _submit(service, text, mentions=(ALICE_MENTION,)):
    return await service.submit_instruction(text, list(mentions), MODERATOR, GUILD_ID)


@pytest.mark.asyncio
async def test_scheduled_task_executes_when_due(service, executor, clock) -> None:
    submission = await _submit(service, "kick @alice after 5 minutes")

    assert submission.accepted
    task = submission.task
    assert task.type is TaskType.SCHEDULED
    assert task.status is TaskStatus.PENDING
    assert task.action.type is ActionType.KICK
    assert task.action.reason == "Complex request by mod"
    assert task.action.severity == 7
    assert submission.message.startswith("I'll kick alice after 5 minutes")

    await clock.advance(299)
    executor.execute.assert_not_awaited()

    await clock.advance(1)
    executor.execute.assert_awaited_once()
    assert task.status is TaskStatus.COMPLETED
    assert task.executed_at == clock.now()
    assert task.result == "done"


@pytest.mark.asyncio
async def test_cancel_phrase_from_target_prevents_execution(service, executor, scheduler, clock) -> None:
    submission = await _submit(service, "timeout @alice after 5 minutes and cancel if she says sorry")
    task = submission.task
    assert task.cancel_condition.type is CancelConditionType.MESSAGE_PATTERN
    assert task.cancel_condition.value == "sorry"

    await clock.advance(60)
    # Someone else apologising does nothing
    assert await service.handle_message(GUILD_ID, "2", "bob", "sorry!") == []

    cancelled = await service.handle_message(GUILD_ID, ALICE.user_id, "alice", "I'm SORRY, ok?")
    assert cancelled == [task.id]
    assert task.status is TaskStatus.CANCELLED
    assert scheduler.get_scheduled(task.id).status is ScheduledActionStatus.CANCELLED

    await clock.advance(600)
    executor.execute.assert_not_awaited()


@pytest.mark.asyncio
async def test_apology_monitoring_is_cancelled_by_any_apology(service, executor, clock) -> None:
    submission = await _submit(service, 'timeout @alice after 10 minutes but watch her for "apology"')
    task = submission.task

    assert task.type is TaskType.CONDITIONAL
    assert task.status is TaskStatus.MONITORING
    assert task.cancel_condition == apology_condition()
    assert service.execution_time(task) == task.created_at + timedelta(minutes=10)

    await clock.advance(1)
    assert await service.handle_message(GUILD_ID, ALICE.user_id, "alice", "my bad, won't happen again") == [task.id]

    await clock.advance(900)
    executor.execute.assert_not_awaited()
    assert task.status is TaskStatus.CANCELLED


@pytest.mark.asyncio
async def test_monitoring_task_executes_after_window(service, executor, clock) -> None:
    submission = await _submit(service, "ban @alice but watch them for 10 minutes")
    task = submission.task
    assert task.type is TaskType.CONDITIONAL
    assert task.execute_at is None

    await clock.advance(600)

    executor.execute.assert_awaited_once()
    assert task.status is TaskStatus.COMPLETED


@pytest.mark.asyncio
async def test_immediate_task_runs_on_submit(service, executor) -> None:
    submission = await _submit(service, "warn @alice")

    assert submission.task.type is TaskType.IMMEDIATE
    executor.execute.assert_awaited_once()
    assert submission.task.status is TaskStatus.COMPLETED


@pytest.mark.asyncio
async def test_executor_failure_marks_task_failed(service, executor, scheduler, clock) -> None:
    executor.execute.side_effect = RuntimeError("missing permissions")
    submission = await _submit(service, "kick @alice after 1 minute")

    await clock.advance(60)

    task = submission.task
    assert task.status is TaskStatus.FAILED
    assert task.error == "missing permissions"
    assert task.executed_at is None
    assert scheduler.get_scheduled(task.id).status is ScheduledActionStatus.CANCELLED


@pytest.mark.asyncio
async def test_submission_refusals(service, manager) -> None:
    no_action = await _submit(service, "hello there")
    assert not no_action.accepted
    assert no_action.message == NO_ACTION_MESSAGE

    unclear = await _submit(service, "ban", mentions=())
    assert not unclear.accepted
    assert unclear.message == UNCLEAR_INTENT_MESSAGE

    no_target = await service.submit_intent(
        ComplexIntent(primary_action=ActionType.BAN, raw="ban after 5 minutes", confidence=80,
                      time_expression=TimeExpression(raw="", delay_ms=300_000)),
        MODERATOR,
        GUILD_ID,
    )
    assert not no_target.accepted
    assert no_target.message == "I need to know who you want me to ban. Please mention them."
    assert manager.tasks == {}


@pytest.mark.asyncio
async def test_execute_task_skips_resolved_tasks(service, executor, manager, clock) -> None:
    task = await manager.create_task(make_task_input(execute_at=clock.now() + timedelta(minutes=1)))
    assert await service.cancel_task(task.id) is True

    await service.execute_task(task.id)
    await service.execute_task("missing")

    executor.execute.assert_not_awaited()
    assert task.result == "Cancelled by moderator"


@pytest.mark.asyncio
async def test_cancel_task_refuses_finished_tasks(service, manager) -> None:
    submission = await _submit(service, "warn @alice")
    assert await service.cancel_task(submission.task.id) is False
    assert await service.cancel_task("missing") is False


@pytest.mark.asyncio
async def test_resume_re_arms_loaded_tasks(service, store, clock, executor) -> None:
    await _submit(service, "kick @alice after 5 minutes")
    await _submit(service, "warn @alice")

    manager = TaskManager(store, clock=clock)
    await manager.load()
    scheduler = ActionScheduler(clock=clock)
    restarted_executor = AsyncMock()
    restarted_executor.execute.return_value = "done"
    restarted = ModerationTaskService(manager, scheduler, restarted_executor)

    assert await restarted.resume_active_tasks() == 1
    assert len(scheduler.get_pending()) == 1

    # The original service is gone; only the restarted one should act
    service.scheduler.shutdown()
    await clock.advance(300)
    restarted_executor.execute.assert_awaited_once()


@pytest.mark.asyncio
async def test_start_and_stop(service, manager) -> None:
    assert await service.start() == 0
    assert manager.is_running

    await service.stop()
    assert not manager.is_running


@pytest.mark.asyncio
async def test_monitoring_window_is_not_the_action_duration(service) -> None:
    submission = await _submit(
        service, "timeout @alice after 2 minutes but watch them for 10 minutes and cancel if they apologize"
    )
    task = submission.task

    assert task.monitoring.duration_ms == 600_000
    assert task.action.duration_ms is None


@pytest.mark.asyncio
async def test_plain_duration_is_the_action_duration(service) -> None:
    submission = await _submit(service, "timeout @alice for 30 minutes after 5 minutes")

    assert submission.task.monitoring is None
    assert submission.task.action.duration_ms == 1_800_000


# -------------------- sweep and timer racing --------------------

@pytest.mark.asyncio
async def test_sweep_first_then_timer_executes_once(service, executor, manager, clock) -> None:
    submission = await _submit(service, "kick @alice after 5 minutes")
    task = submission.task

    # Reach the deadline without firing timers, so the sweep gets there first
    clock.set(task.execute_at)
    await manager.process_tasks()
    assert task.status is TaskStatus.COMPLETED
    assert task.result == READY_RESULT
    assert task.executed_at is None

    await clock.advance(0)
    await manager.process_tasks()
    await clock.advance(600)

    executor.execute.assert_awaited_once()
    assert task.status is TaskStatus.COMPLETED
    assert task.executed_at == task.execute_at
    assert task.result == "done"


@pytest.mark.asyncio
async def test_timer_first_then_sweep_leaves_outcome_alone(service, executor, manager, clock) -> None:
    submission = await _submit(service, "ban @alice but watch them for 10 minutes")
    task = submission.task

    await clock.advance(600)
    executed_at = task.executed_at
    assert executed_at is not None

    await manager.process_tasks()
    await clock.advance(60)
    await manager.process_tasks()

    executor.execute.assert_awaited_once()
    assert task.status is TaskStatus.COMPLETED
    assert task.result == "done"
    assert task.result != MONITORING_ENDED_RESULT
    assert task.executed_at == executed_at


# -------------------- cancelling ready tasks --------------------

@pytest.mark.asyncio
async def test_ready_task_awaiting_its_deadline_can_be_cancelled(service, executor, scheduler, manager, clock) -> None:
    submission = await _submit(service, "timeout @alice after 10 minutes but watch them for 2 minutes")
    task = submission.task
    assert service.execution_time(task) == task.created_at + timedelta(minutes=10)

    await clock.advance(180)
    await manager.process_tasks()
    assert task.is_ready
    assert manager.get_monitoring_tasks(GUILD_ID) == []
    assert service.get_open_tasks(GUILD_ID) == [task]

    assert await service.cancel_task(task.id, "Cancelled by mod") is True
    assert task.status is TaskStatus.CANCELLED
    assert scheduler.get_scheduled(task.id).status is ScheduledActionStatus.CANCELLED

    await clock.advance(600)
    executor.execute.assert_not_awaited()
    assert service.get_open_tasks(GUILD_ID) == []


@pytest.mark.asyncio
async def test_executed_task_is_not_open(service) -> None:
    submission = await _submit(service, "warn @alice")

    assert submission.task.executed_at is not None
    assert service.get_open_tasks(GUILD_ID) == []
    assert await service.cancel_task(submission.task.id) is False


# -------------------- persistence failures --------------------

class FlakyStore(MemoryTaskStore):
    fail_writes = False

    async def write(self, records) -> None:
        if self.fail_writes:
            raise TaskStoreError("disk full")
        await super().write(records)


@pytest.mark.asyncio
async def test_store_failure_at_start_does_not_strand_task(clock, executor) -> None:
    store = FlakyStore()
    manager = TaskManager(store, clock=clock)
    service = ModerationTaskService(manager, ActionScheduler(clock=clock), executor)
    task = await manager.create_task(make_task_input(execute_at=clock.now() + timedelta(minutes=1)))

    store.fail_writes = True
    with pytest.raises(TaskStoreError):
        await service.execute_task(task.id)

    executor.execute.assert_awaited_once()
    assert task.status is TaskStatus.COMPLETED
    assert task.executed_at == clock.now()

    store.fail_writes = False
    await manager.save()
    [record] = await store.read()
    assert record["status"] == "completed"
