"""
Per-task timers for deferred moderation actions.

The scheduler knows nothing about persistence: it takes a task (only its
``id`` and ``execute_at`` are read) and an async callback, and keeps an
in-memory :class:`ScheduledAction` that owns the live timer handle.

Cancellation race
-----------------
A timer only runs its callback if the record is still ``pending`` when the
timer fires. ``cancel()`` flips the record to ``cancelled`` synchronously, so
a cancel that lands before the fire-time check always wins; a cancel that
arrives after the record left ``pending`` is refused.

Resolved records are evicted from memory ``record_retention_seconds`` after
they complete or are cancelled.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional

from modtasks.configuration.app_configuration import DEFAULT_SCHEDULER_RECORD_RETENTION_SECONDS
from modtasks.datatypes.task_datatypes import Task
from modtasks.tasks.clock import Clock, SystemClock, TimerHandle
from modtasks.util.logger import get_logger

logger = get_logger("action_scheduler")

ActionCallback = Callable[[], Awaitable[None]]


class ScheduledActionStatus(Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    def __str__(self) -> str:
        return self.value


@dataclass
class ScheduledAction:
    """
    Scheduling record for one task.

    Attributes:
        id: Record id (the task id).
        task_id: Durable task this record drives.
        execute_at: Deadline of the armed timer.
        action: Callback awaited when the timer fires.
        status: Scheduler-side state, independent of the durable task status.
        timer: Live timer handle while the record is pending.
        resolved_at: When the record completed or was cancelled.
    """
    id: str
    task_id: str
    execute_at: datetime
    action: ActionCallback
    status: ScheduledActionStatus = ScheduledActionStatus.PENDING
    timer: Optional[TimerHandle] = None
    resolved_at: Optional[datetime] = None


@dataclass(slots=True)
class SchedulerStats:
    pending: int = 0
    executing: int = 0
    completed: int = 0
    cancelled: int = 0


def _format_delay(seconds: float) -> str:
    seconds = int(seconds)
    minutes, hours = seconds // 60, seconds // 3600
    if hours > 0:
        return f"{hours}h {minutes % 60}m"
    if minutes > 0:
        return f"{minutes}m {seconds % 60}s"
    return f"{seconds}s"


class ActionScheduler:
    """
    Arms, reschedules and cancels one-shot timers keyed by task id.

    Args:
        clock: Time source and timer factory; defaults to the system clock.
        record_retention_seconds: How long resolved records stay queryable.
    """

    def __init__(
        self,
        *,
        clock: Clock | None = None,
        record_retention_seconds: float = DEFAULT_SCHEDULER_RECORD_RETENTION_SECONDS,
    ) -> None:
        self.clock = clock or SystemClock()
        self.record_retention_seconds = record_retention_seconds
        self.scheduled_actions: Dict[str, ScheduledAction] = {}

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def schedule(self, task: Task, action: ActionCallback) -> str:
        """Arm a timer for ``task.execute_at``, or run ``action`` now if it is due.

        Scheduling a task id that already has a pending record replaces it.

        Raises:
            ValueError: If the task has no ``execute_at``.
        """
        if task.execute_at is None:
            raise ValueError(f"Task {task.id} must have an execute_at to be scheduled")

        existing = self.scheduled_actions.get(task.id)
        if existing is not None and existing.status is ScheduledActionStatus.PENDING:
            logger.debug("[SCHEDULER] Replacing pending schedule for task %s", task.id)
            self._disarm(existing)

        delay = (task.execute_at - self.clock.now()).total_seconds()
        if delay <= 0:
            logger.info("[SCHEDULER] Executing task %s immediately (scheduled time passed)", task.id)
            await self._execute_now(task.id, action)
            return task.id

        record = ScheduledAction(id=task.id, task_id=task.id, execute_at=task.execute_at, action=action)
        self.scheduled_actions[record.id] = record
        self._arm(record, delay)

        logger.info("[SCHEDULER] Scheduled task %s for %s from now", task.id, _format_delay(delay))
        return record.id

    def _arm(self, record: ScheduledAction, delay: float) -> None:
        record.timer = self.clock.call_later(delay, lambda: self._execute(record.id))

    @staticmethod
    def _disarm(record: ScheduledAction) -> None:
        if record.timer is not None:
            record.timer.cancel()
            record.timer = None

    async def _execute(self, action_id: str) -> None:
        """Timer entry point: run the record only if it is still pending."""
        record = self.scheduled_actions.get(action_id)
        if record is None or record.status is not ScheduledActionStatus.PENDING:
            return

        logger.info("[SCHEDULER] Executing scheduled action %s", action_id)
        record.status = ScheduledActionStatus.EXECUTING
        record.timer = None
        await self._run(record)

    async def _execute_now(self, action_id: str, action: ActionCallback) -> None:
        record = ScheduledAction(
            id=action_id,
            task_id=action_id,
            execute_at=self.clock.now(),
            action=action,
            status=ScheduledActionStatus.EXECUTING,
        )
        self.scheduled_actions[action_id] = record
        await self._run(record)

    async def _run(self, record: ScheduledAction) -> None:
        try:
            await record.action()
            record.status = ScheduledActionStatus.COMPLETED
            logger.info("[SCHEDULER] Scheduled action %s completed", record.id)
        except Exception as exc:
            record.status = ScheduledActionStatus.CANCELLED
            logger.error("[SCHEDULER] Scheduled action %s failed: %s", record.id, exc)
        self._resolve(record)

    def _resolve(self, record: ScheduledAction) -> None:
        record.resolved_at = self.clock.now()
        self.clock.call_later(self.record_retention_seconds, lambda: self._evict(record))

    async def _evict(self, record: ScheduledAction) -> None:
        # The id may have been scheduled again since; only drop this record
        if self.scheduled_actions.get(record.id) is record:
            del self.scheduled_actions[record.id]

    # ------------------------------------------------------------------
    # Cancellation and rescheduling
    # ------------------------------------------------------------------

    def cancel(self, action_id: str) -> bool:
        """Cancel a pending record.

        Returns False for unknown ids and for records that already started or
        finished executing; cancelling an already-cancelled record returns True.
        """
        record = self.scheduled_actions.get(action_id)
        if record is None:
            return False

        if record.status is ScheduledActionStatus.CANCELLED:
            return True
        if record.status is not ScheduledActionStatus.PENDING:
            logger.debug("[SCHEDULER] Too late to cancel action %s (%s)", action_id, record.status)
            return False

        self._disarm(record)
        record.status = ScheduledActionStatus.CANCELLED
        self._resolve(record)
        logger.info("[SCHEDULER] Cancelled scheduled action %s", action_id)
        return True

    async def reschedule(self, action_id: str, new_execute_at: datetime) -> bool:
        """Move a pending record to ``new_execute_at``; runs it now if that time has passed."""
        record = self.scheduled_actions.get(action_id)
        if record is None or record.status is not ScheduledActionStatus.PENDING:
            return False

        self._disarm(record)
        record.execute_at = new_execute_at

        delay = (new_execute_at - self.clock.now()).total_seconds()
        if delay <= 0:
            await self._execute(action_id)
            return True

        self._arm(record, delay)
        logger.info("[SCHEDULER] Rescheduled action %s for %s from now", action_id, _format_delay(delay))
        return True

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_scheduled(self, action_id: str) -> Optional[ScheduledAction]:
        return self.scheduled_actions.get(action_id)

    def get_pending(self) -> List[ScheduledAction]:
        return [r for r in self.scheduled_actions.values() if r.status is ScheduledActionStatus.PENDING]

    def get_time_until_execution(self, action_id: str) -> Optional[int]:
        """Milliseconds until a pending record fires, or None if it is not pending."""
        record = self.scheduled_actions.get(action_id)
        if record is None or record.status is not ScheduledActionStatus.PENDING:
            return None
        return int((record.execute_at - self.clock.now()).total_seconds() * 1000)

    def get_stats(self) -> SchedulerStats:
        stats = SchedulerStats()
        for record in self.scheduled_actions.values():
            setattr(stats, record.status.value, getattr(stats, record.status.value) + 1)
        return stats

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def cleanup(self) -> int:
        """Drop every completed or cancelled record right away."""
        resolved = [
            action_id
            for action_id, record in self.scheduled_actions.items()
            if record.status in (ScheduledActionStatus.COMPLETED, ScheduledActionStatus.CANCELLED)
        ]
        for action_id in resolved:
            del self.scheduled_actions[action_id]
        if resolved:
            logger.info("[SCHEDULER] Cleaned up %d scheduled actions", len(resolved))
        return len(resolved)

    def shutdown(self) -> None:
        """Disarm every pending timer and forget all records."""
        for record in self.scheduled_actions.values():
            self._disarm(record)
        self.scheduled_actions.clear()
        logger.info("[SCHEDULER] Scheduler shutdown complete")
