"""
Task lifecycle authority.

The :class:`TaskManager` owns the in-memory task table, enforces the task
state machine, evaluates cancel conditions against inbound messages and runs
the periodic sweep. Every mutation goes through :meth:`TaskManager.update_task`,
which re-persists the whole table through the injected :class:`TaskStore`.

State machine::

    pending    -> completed | cancelled | executing
    monitoring -> completed | cancelled | executing
    executing  -> completed | failed

The sweep and the scheduler's timer are independent and may both try to
complete the same task. Re-asserting the current status is therefore always
accepted, and a terminal task refuses to move to a different status (first
writer wins). The one exception is a task the sweep marked ``completed`` as
"ready" without executing it: it may still start executing, fail or be
cancelled by a moderator.
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import timedelta
from typing import Dict, List, Optional

from modtasks.configuration.app_configuration import (
    DEFAULT_SWEEP_INTERVAL_SECONDS,
    DEFAULT_TERMINAL_RETENTION_HOURS,
)
from modtasks.datatypes.task_datatypes import (
    ACTIVE_STATUSES,
    CancelCondition,
    CancelConditionType,
    CreateTaskInput,
    Task,
    TaskStats,
    TaskStatus,
    TaskType,
    TaskUpdate,
)
from modtasks.tasks.clock import Clock, SystemClock
from modtasks.tasks.task_store import TaskStore, TaskStoreError
from modtasks.util.logger import get_logger

logger = get_logger("task_manager")

APOLOGY_PHRASES = ("sorry", "apologize", "apology", "my bad")

READY_RESULT = "Ready for execution"
MONITORING_ENDED_RESULT = "Monitoring period ended - executing action"

_TRANSITIONS = {
    TaskStatus.PENDING: frozenset({TaskStatus.COMPLETED, TaskStatus.CANCELLED, TaskStatus.EXECUTING}),
    TaskStatus.MONITORING: frozenset({TaskStatus.COMPLETED, TaskStatus.CANCELLED, TaskStatus.EXECUTING}),
    TaskStatus.EXECUTING: frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED}),
}
# A sweep "ready" marker has not executed anything yet
_READY_TRANSITIONS = frozenset({TaskStatus.EXECUTING, TaskStatus.FAILED, TaskStatus.CANCELLED})


def matches_cancel_condition(condition: CancelCondition, message_content: str) -> bool:
    """Return True when ``message_content`` satisfies ``condition``.

    Matching is case-insensitive substring containment of the condition value.
    A value naming the apology category matches any common apology phrase.
    Time- and trust-based conditions never match a message.
    """
    if condition.type not in (CancelConditionType.MESSAGE_PATTERN, CancelConditionType.USER_ACTION):
        return False

    lowered = message_content.lower()
    pattern = str(condition.value).lower().strip()
    if not pattern:
        return False

    if "apolog" in pattern:
        return any(phrase in lowered for phrase in APOLOGY_PHRASES)
    return pattern in lowered


class TaskManager:
    """
    In-memory task table with persistence, cancel matching and a sweep loop.

    Args:
        store: Backend receiving a full snapshot after every mutation.
        clock: Time source; defaults to the system clock.
        sweep_interval_seconds: Delay between sweep passes.
        terminal_retention_seconds: Age (since last update) after which a
            terminal task is deleted by the sweep.
    """

    def __init__(
        self,
        store: TaskStore,
        *,
        clock: Clock | None = None,
        sweep_interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
        terminal_retention_seconds: float = DEFAULT_TERMINAL_RETENTION_HOURS * 3600.0,
    ) -> None:
        self.store = store
        self.clock = clock or SystemClock()
        self.sweep_interval_seconds = sweep_interval_seconds
        self.terminal_retention = timedelta(seconds=terminal_retention_seconds)
        self.tasks: Dict[str, Task] = {}
        self._sweep_task: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def load(self) -> int:
        """Replace the table with the stored snapshot; returns the task count."""
        try:
            records = await self.store.read()
        except TaskStoreError as exc:
            logger.error("[TASK MANAGER] Could not load tasks: %s", exc)
            raise

        loaded: Dict[str, Task] = {}
        for record in records:
            try:
                task = Task.from_dict(record)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("[TASK MANAGER] Skipping malformed task record %r: %s", record.get("id"), exc)
                continue
            loaded[task.id] = task

        self.tasks = loaded
        logger.info("[TASK MANAGER] Loaded %d tasks", len(self.tasks))
        return len(self.tasks)

    async def save(self) -> None:
        await self.store.write([task.to_dict() for task in self.tasks.values()])

    # ------------------------------------------------------------------
    # Creation and lookup
    # ------------------------------------------------------------------

    @staticmethod
    def initial_status(task_input: CreateTaskInput) -> TaskStatus:
        if task_input.monitoring is not None:
            return TaskStatus.MONITORING
        if task_input.type is TaskType.SCHEDULED:
            return TaskStatus.PENDING
        return TaskStatus.EXECUTING

    async def create_task(self, task_input: CreateTaskInput) -> Task:
        now = self.clock.now()
        task = Task(
            id=str(uuid.uuid4()),
            type=task_input.type,
            action=task_input.action,
            target=task_input.target,
            created_by=task_input.created_by,
            guild_id=str(task_input.guild_id),
            status=self.initial_status(task_input),
            created_at=now,
            updated_at=now,
            condition=task_input.condition,
            execute_at=task_input.execute_at,
            cancel_condition=task_input.cancel_condition,
            monitoring=task_input.monitoring,
        )

        self.tasks[task.id] = task
        await self.save()

        logger.info(
            "[TASK MANAGER] Task %s created (%s %s on %s, status=%s)",
            task.id, task.type, task.action.type, task.target.user_name, task.status,
        )
        return task

    def get_task(self, task_id: str) -> Optional[Task]:
        return self.tasks.get(task_id)

    def get_guild_tasks(self, guild_id: str) -> List[Task]:
        return [task for task in self.tasks.values() if task.guild_id == str(guild_id)]

    def get_monitoring_tasks(self, guild_id: str | None = None) -> List[Task]:
        """Tasks still awaiting their outcome (monitoring or pending)."""
        return [
            task
            for task in self.tasks.values()
            if task.status in ACTIVE_STATUSES and (guild_id is None or task.guild_id == str(guild_id))
        ]

    def get_stats(self, guild_id: str | None = None) -> TaskStats:
        tasks = self.get_guild_tasks(guild_id) if guild_id is not None else list(self.tasks.values())
        stats = TaskStats(total=len(tasks))
        for task in tasks:
            setattr(stats, task.status.value, getattr(stats, task.status.value) + 1)
            stats.by_guild[task.guild_id] = stats.by_guild.get(task.guild_id, 0) + 1
        return stats

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    async def check_cancel_condition(self, task_id: str, message_content: str, user_id: str) -> bool:
        """Cancel the task if the target's message meets its cancel condition.

        Returns True when the task was cancelled; callers treat that as
        "suppress the pending execution". Messages from anyone other than the
        task's target never cancel it.
        """
        task = self.tasks.get(task_id)
        if task is None or task.cancel_condition is None:
            return False
        if task.status not in ACTIVE_STATUSES:
            return False
        if task.target.user_id != str(user_id):
            return False

        if not matches_cancel_condition(task.cancel_condition, message_content):
            return False

        logger.info("[TASK MANAGER] Cancel condition matched for task %s", task_id)
        await self.update_task(
            task_id,
            TaskUpdate(
                status=TaskStatus.CANCELLED,
                result=f'Cancelled: user said "{task.cancel_condition.value}"',
            ),
        )
        return True

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    @staticmethod
    def transition_allowed(task: Task, new_status: TaskStatus) -> bool:
        if new_status is task.status:
            return True
        if task.is_ready:
            return new_status in _READY_TRANSITIONS
        return new_status in _TRANSITIONS.get(task.status, frozenset())

    async def update_task(self, task_id: str, update: TaskUpdate) -> None:
        """Merge the fields present in ``update`` and persist the table.

        Unknown ids are logged and ignored: the task may already have been
        resolved and collected. All fields are applied before the first await,
        so a concurrent reader never sees a half-applied update.
        """
        task = self.tasks.get(task_id)
        if task is None:
            logger.warning("[TASK MANAGER] Task %s not found, update ignored", task_id)
            return

        if update.status is not None and not self.transition_allowed(task, update.status):
            logger.warning(
                "[TASK MANAGER] Ignoring %s -> %s for task %s (transition not allowed)",
                task.status, update.status, task_id,
            )
            return

        if update.status is not None:
            task.status = update.status
        if update.result is not None:
            task.result = update.result
        if update.error is not None:
            task.error = update.error
        if update.executed_at is not None:
            task.executed_at = update.executed_at
        task.updated_at = self.clock.now()

        await self.save()

    async def delete_task(self, task_id: str) -> bool:
        if self.tasks.pop(task_id, None) is None:
            logger.debug("[TASK MANAGER] Task %s already deleted", task_id)
            return False
        await self.save()
        return True

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    async def process_tasks(self) -> None:
        """One sweep pass: promote expired tasks and collect stale terminal ones.

        Promotion only marks eligibility; executing the action is left to the
        scheduler callback. A failure on one task is logged and the pass
        continues with the next.
        """
        now = self.clock.now()

        for task in list(self.tasks.values()):
            try:
                if (
                    task.type is TaskType.SCHEDULED
                    and task.status is TaskStatus.PENDING
                    and task.execute_at is not None
                    and now >= task.execute_at
                ):
                    logger.info("[TASK MANAGER] Scheduled task %s is ready to execute", task.id)
                    await self.update_task(task.id, TaskUpdate(status=TaskStatus.COMPLETED, result=READY_RESULT))

                elif task.status is TaskStatus.MONITORING and task.monitoring is not None:
                    elapsed_ms = (now - task.created_at).total_seconds() * 1000
                    if elapsed_ms >= task.monitoring.duration_ms:
                        logger.info("[TASK MANAGER] Monitoring period ended for task %s", task.id)
                        await self.update_task(
                            task.id, TaskUpdate(status=TaskStatus.COMPLETED, result=MONITORING_ENDED_RESULT)
                        )

                elif task.status.is_terminal and now - task.updated_at > self.terminal_retention:
                    logger.info("[TASK MANAGER] Cleaning up old task %s", task.id)
                    await self.delete_task(task.id)

            except TaskStoreError as exc:
                logger.error("[TASK MANAGER] Sweep could not persist task %s: %s", task.id, exc)

    async def _run_loop(self) -> None:
        logger.info("[TASK MANAGER] Starting sweep loop (interval=%.1fs)", self.sweep_interval_seconds)
        try:
            while True:
                await asyncio.sleep(self.sweep_interval_seconds)
                try:
                    await self.process_tasks()
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    logger.error("[TASK MANAGER] Unexpected error during sweep: %s", exc)
        except asyncio.CancelledError:
            logger.info("[TASK MANAGER] Sweep loop cancelled")
            raise

    def start(self) -> None:
        """Start the background sweep if it is not already running."""
        if self._sweep_task and not self._sweep_task.done():
            logger.warning("[TASK MANAGER] Sweep loop already running")
            return
        self._sweep_task = asyncio.create_task(self._run_loop(), name="modtasks-task-sweep")

    @property
    def is_running(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()

    async def stop(self) -> None:
        if self._sweep_task and not self._sweep_task.done():
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
        self._sweep_task = None
        logger.info("[TASK MANAGER] Sweep loop stopped")
