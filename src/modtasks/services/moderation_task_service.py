"""
Glue between parsed intents, the task table, the scheduler and the
moderation executor.

The service turns an accepted :class:`ComplexIntent` into a durable task,
arms the scheduler for it and supplies the callback that performs the action.
The callback re-reads the task right before acting, so a task cancelled by a
message or a moderator after its timer was armed is never executed.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Protocol, Sequence

from modtasks.configuration.app_configuration import DEFAULT_MIN_CONFIDENCE
from modtasks.datatypes.action_datatypes import TaskAction
from modtasks.datatypes.intent_datatypes import ComplexIntent, MentionedUser
from modtasks.datatypes.task_datatypes import (
    CancelCondition,
    CancelConditionType,
    CreateTaskInput,
    MonitoringConfig,
    Task,
    TaskStatus,
    TaskType,
    TaskUpdate,
    TaskUser,
)
from modtasks.monitoring.user_monitor import UserMonitor
from modtasks.nlp.intent_parser import ComplexIntentParser
from modtasks.tasks.action_scheduler import ActionScheduler
from modtasks.tasks.task_manager import MONITORING_ENDED_RESULT, READY_RESULT, TaskManager
from modtasks.tasks.task_store import TaskStoreError
from modtasks.util.logger import get_logger

logger = get_logger("moderation_task_service")

COMPLEX_ACTION_SEVERITY = 7
UNCLEAR_INTENT_MESSAGE = "I'm not quite sure what you want me to do. Could you rephrase that?"
NO_ACTION_MESSAGE = "I couldn't find a moderation action (timeout, ban, kick or warn) in that instruction."

# Sweep results that mark eligibility without an execution having happened
_UNEXECUTED_RESULTS = (READY_RESULT, MONITORING_ENDED_RESULT)


class ActionExecutor(Protocol):
    """Performs the real moderation action of a task."""

    async def execute(self, task: Task) -> str:
        """Apply ``task.action`` to ``task.target``; returns a short result text."""
        ...


@dataclass(slots=True)
class TaskSubmission:
    accepted: bool
    message: str
    task: Optional[Task] = None


class ModerationTaskService:
    """
    Owns the task workflow: submit, schedule, execute, cancel and resume.

    Args:
        task_manager: Task table and lifecycle authority.
        scheduler: Timer owner for deferred execution.
        executor: Performs the moderation action when a task fires.
        user_monitor: Message-side cancel checks; built from ``task_manager``
            when omitted.
        intent_parser: Used by :meth:`submit_instruction` and for confirmations.
        min_confidence: Intents scoring below this are sent back for rephrasing.
    """

    def __init__(
        self,
        task_manager: TaskManager,
        scheduler: ActionScheduler,
        executor: ActionExecutor,
        *,
        user_monitor: UserMonitor | None = None,
        intent_parser: ComplexIntentParser | None = None,
        min_confidence: int = DEFAULT_MIN_CONFIDENCE,
    ) -> None:
        self.task_manager = task_manager
        self.scheduler = scheduler
        self.executor = executor
        self.user_monitor = user_monitor or UserMonitor(task_manager)
        self.intent_parser = intent_parser or ComplexIntentParser(clock=task_manager.clock)
        self.min_confidence = min_confidence

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> int:
        """Re-arm the loaded tasks that have not run yet and start the sweep."""
        resumed = await self.resume_active_tasks()
        self.task_manager.start()
        return resumed

    async def stop(self) -> None:
        await self.task_manager.stop()
        self.scheduler.shutdown()
        await self.task_manager.store.close()

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit_instruction(
        self,
        text: str,
        mentioned_users: Sequence[MentionedUser],
        created_by: TaskUser,
        guild_id: str,
    ) -> TaskSubmission:
        intent = self.intent_parser.parse(text, mentioned_users)
        if intent is None:
            return TaskSubmission(accepted=False, message=NO_ACTION_MESSAGE)
        return await self.submit_intent(intent, created_by, guild_id)

    async def submit_intent(self, intent: ComplexIntent, created_by: TaskUser, guild_id: str) -> TaskSubmission:
        """Create and arm a task for ``intent``, or explain why it was refused."""
        if intent.confidence < self.min_confidence:
            logger.info("[TASK SERVICE] Rejected intent with %d%% confidence", intent.confidence)
            return TaskSubmission(accepted=False, message=UNCLEAR_INTENT_MESSAGE)

        if intent.target is None:
            return TaskSubmission(
                accepted=False,
                message=f"I need to know who you want me to {intent.primary_action}. Please mention them.",
            )

        task = await self.task_manager.create_task(self.build_task_input(intent, created_by, guild_id))
        await self.arm(task)

        return TaskSubmission(accepted=True, message=self.intent_parser.describe_intent(intent), task=task)

    @staticmethod
    def build_task_input(intent: ComplexIntent, created_by: TaskUser, guild_id: str) -> CreateTaskInput:
        time_expression = intent.time_expression

        if intent.monitoring is not None:
            task_type = TaskType.CONDITIONAL
        elif time_expression is not None and time_expression.delay_ms:
            task_type = TaskType.SCHEDULED
        else:
            task_type = TaskType.IMMEDIATE

        monitoring = None
        if intent.monitoring is not None:
            monitoring = MonitoringConfig(
                watch_for=intent.monitoring.watch_for,
                duration_ms=intent.monitoring.duration_ms,
            )

        cancel_condition = None
        if monitoring is not None and "apolog" in monitoring.watch_for.lower():
            cancel_condition = CancelCondition(type=CancelConditionType.USER_ACTION, value="apology")
        elif intent.cancellation_triggers:
            cancel_condition = CancelCondition(
                type=CancelConditionType.MESSAGE_PATTERN,
                value=intent.cancellation_triggers[0].pattern,
            )

        return CreateTaskInput(
            type=task_type,
            action=TaskAction(
                type=intent.primary_action,
                reason=f"Complex request by {created_by.user_name}",
                # With monitoring the duration is the watch window, not the action's length
                duration_ms=time_expression.duration_ms if time_expression and monitoring is None else None,
                severity=COMPLEX_ACTION_SEVERITY,
            ),
            target=TaskUser(user_id=str(intent.target.user_id), user_name=intent.target.user_name),
            created_by=created_by,
            guild_id=str(guild_id),
            execute_at=time_expression.execute_at if time_expression else None,
            cancel_condition=cancel_condition,
            monitoring=monitoring,
        )

    # ------------------------------------------------------------------
    # Scheduling and execution
    # ------------------------------------------------------------------

    def execution_time(self, task: Task) -> datetime:
        """When the task's action becomes due.

        A monitoring window always runs to its end first, so the later of the
        explicit ``execute_at`` and the end of monitoring wins.
        """
        candidates: List[datetime] = []
        if task.execute_at is not None:
            candidates.append(task.execute_at)
        if task.monitoring is not None:
            candidates.append(task.created_at + timedelta(milliseconds=task.monitoring.duration_ms))
        return max(candidates) if candidates else self.task_manager.clock.now()

    async def arm(self, task: Task) -> None:
        timed = dataclasses.replace(task, execute_at=self.execution_time(task))
        await self.scheduler.schedule(timed, lambda: self.execute_task(task.id))

    async def execute_task(self, task_id: str) -> None:
        """Scheduler callback: act on the task unless it was resolved meanwhile.

        Raises whatever the executor raised, after recording ``failed``.
        """
        task = self.task_manager.get_task(task_id)
        if task is None:
            logger.warning("[TASK SERVICE] Task %s disappeared before execution", task_id)
            return
        if task.status in (TaskStatus.CANCELLED, TaskStatus.FAILED) or task.executed_at is not None:
            logger.info("[TASK SERVICE] Skipping task %s (status=%s)", task_id, task.status)
            return

        if task.status is not TaskStatus.EXECUTING:
            try:
                await self.task_manager.update_task(task_id, TaskUpdate(status=TaskStatus.EXECUTING))
            except TaskStoreError as exc:
                # The in-memory status has moved on, the next snapshot records the outcome
                logger.error("[TASK SERVICE] Could not persist start of task %s, executing anyway: %s", task_id, exc)

        try:
            result = await self.executor.execute(task)
        except Exception as exc:
            logger.error("[TASK SERVICE] Task %s failed: %s", task_id, exc)
            await self.task_manager.update_task(task_id, TaskUpdate(status=TaskStatus.FAILED, error=str(exc)))
            raise

        await self.task_manager.update_task(
            task_id,
            TaskUpdate(
                status=TaskStatus.COMPLETED,
                executed_at=self.task_manager.clock.now(),
                result=result or f"{task.action.type} applied to {task.target.user_name}",
            ),
        )
        logger.info("[TASK SERVICE] Task %s executed: %s on %s", task_id, task.action.type, task.target.user_name)

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    async def handle_message(self, guild_id: str, author_id: str, author_name: str, content: str) -> List[str]:
        """Run cancel checks for a message; returns the ids of cancelled tasks."""
        events = await self.user_monitor.process_message(guild_id, author_id, author_name, content)
        cancelled = [event.task_id for event in events if event.matched]
        for task_id in cancelled:
            self.scheduler.cancel(task_id)
        return cancelled

    def get_open_tasks(self, guild_id: str) -> List[Task]:
        """Tasks a moderator can still cancel, including ones the sweep marked ready."""
        return [
            task for task in self.task_manager.get_guild_tasks(guild_id)
            if task.status.is_active or task.is_ready
        ]

    async def cancel_task(self, task_id: str, reason: str = "Cancelled by moderator") -> bool:
        task = self.task_manager.get_task(task_id)
        if task is None or not (task.status.is_active or task.is_ready):
            return False

        await self.task_manager.update_task(task_id, TaskUpdate(status=TaskStatus.CANCELLED, result=reason))
        self.scheduler.cancel(task_id)
        logger.info("[TASK SERVICE] Task %s cancelled: %s", task_id, reason)
        return True

    # ------------------------------------------------------------------
    # Restart
    # ------------------------------------------------------------------

    @staticmethod
    def is_resumable(task: Task) -> bool:
        if task.executed_at is not None:
            return False
        if task.status.is_active or task.status is TaskStatus.EXECUTING:
            return True
        return task.status is TaskStatus.COMPLETED and task.result in _UNEXECUTED_RESULTS

    async def resume_active_tasks(self) -> int:
        """Re-arm timers for loaded tasks whose action has not run yet."""
        resumed = 0
        for task in list(self.task_manager.tasks.values()):
            if not self.is_resumable(task):
                continue
            await self.arm(task)
            resumed += 1
        if resumed:
            logger.info("[TASK SERVICE] Resumed %d tasks", resumed)
        return resumed
