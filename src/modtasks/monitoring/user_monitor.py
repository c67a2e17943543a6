"""
Feeds inbound guild messages into the cancel-condition check of every
active task that targets the message author, and keeps a bounded log of
what was checked.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Deque, List, Optional

from modtasks.tasks.task_manager import TaskManager
from modtasks.util.logger import get_logger

logger = get_logger("user_monitor")

MAX_EVENT_LOG_SIZE = 1000


@dataclass(slots=True)
class MonitorEvent:
    user_id: str
    user_name: str
    guild_id: str
    message: str
    timestamp: datetime
    matched: bool
    task_id: str
    matched_pattern: Optional[str] = None


@dataclass(slots=True)
class MonitorStats:
    total_events: int = 0
    matched_events: int = 0
    unique_users: int = 0
    active_tasks: int = 0


class UserMonitor:
    """Message-side entry point for cancel conditions."""

    def __init__(self, task_manager: TaskManager, *, max_events: int = MAX_EVENT_LOG_SIZE) -> None:
        self.task_manager = task_manager
        self.events: Deque[MonitorEvent] = deque(maxlen=max_events)

    async def process_message(
        self, guild_id: str, author_id: str, author_name: str, content: str
    ) -> List[MonitorEvent]:
        """Check the message against every active task targeting its author.

        Returns the events recorded for this message; the ones with
        ``matched`` set name tasks that were just cancelled.
        """
        guild_id, author_id = str(guild_id), str(author_id)
        tasks = [
            task
            for task in self.task_manager.get_monitoring_tasks(guild_id)
            if task.target.user_id == author_id
        ]
        if not tasks:
            return []

        logger.debug("[MONITOR] Checking %d active tasks for %s", len(tasks), author_name)

        recorded: List[MonitorEvent] = []
        for task in tasks:
            matched = await self.task_manager.check_cancel_condition(task.id, content, author_id)
            event = MonitorEvent(
                user_id=author_id,
                user_name=author_name,
                guild_id=guild_id,
                message=content,
                timestamp=self.task_manager.clock.now(),
                matched=matched,
                task_id=task.id,
                matched_pattern=task.cancel_condition.value if task.cancel_condition else None,
            )
            self.events.append(event)
            recorded.append(event)

            if matched:
                logger.info("[MONITOR] Cancel condition triggered for task %s by %s", task.id, author_name)

        return recorded

    def get_user_events(self, user_id: str, guild_id: str, limit: int = 10) -> List[MonitorEvent]:
        events = [e for e in self.events if e.user_id == str(user_id) and e.guild_id == str(guild_id)]
        return events[-limit:]

    def get_matched_events(self, guild_id: str | None = None, limit: int = 20) -> List[MonitorEvent]:
        events = [e for e in self.events if e.matched and (guild_id is None or e.guild_id == str(guild_id))]
        return events[-limit:]

    def cleanup(self, older_than: timedelta = timedelta(days=1)) -> int:
        """Drop events older than ``older_than``; returns how many were removed."""
        cutoff = self.task_manager.clock.now() - older_than
        kept = [e for e in self.events if e.timestamp > cutoff]
        removed = len(self.events) - len(kept)
        self.events = deque(kept, maxlen=self.events.maxlen)
        if removed:
            logger.info("[MONITOR] Cleaned up %d old monitor events", removed)
        return removed

    def get_stats(self, guild_id: str | None = None) -> MonitorStats:
        events = [e for e in self.events if guild_id is None or e.guild_id == str(guild_id)]
        return MonitorStats(
            total_events=len(events),
            matched_events=sum(1 for e in events if e.matched),
            unique_users=len({e.user_id for e in events}),
            active_tasks=len(self.task_manager.get_monitoring_tasks(guild_id)),
        )
