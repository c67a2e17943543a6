"""
Durable task records and their JSON representation.

A :class:`Task` is one deferred, monitored or conditional moderation intent.
Tasks are persisted as a JSON array of the dictionaries produced by
:meth:`Task.to_dict`; datetimes are written as ISO-8601 strings and rebuilt
as timezone-aware UTC datetimes by :meth:`Task.from_dict`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from modtasks.datatypes.action_datatypes import TaskAction


class TaskType(Enum):
    IMMEDIATE = "immediate"
    SCHEDULED = "scheduled"
    CONDITIONAL = "conditional"

    def __str__(self) -> str:
        return self.value


class TaskStatus(Enum):
    """Lifecycle states of a task.

    ``pending`` and ``monitoring`` are the only states in which a cancel
    condition is evaluated. ``completed``, ``cancelled`` and ``failed`` are
    terminal.
    """

    PENDING = "pending"
    MONITORING = "monitoring"
    EXECUTING = "executing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    def __str__(self) -> str:
        return self.value

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


ACTIVE_STATUSES = frozenset({TaskStatus.PENDING, TaskStatus.MONITORING})
TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.CANCELLED, TaskStatus.FAILED})


class TaskConditionType(Enum):
    TIME = "time"
    MESSAGE_PATTERN = "message_pattern"
    USER_ACTION = "user_action"
    TRUST_THRESHOLD = "trust_threshold"


class CancelConditionType(Enum):
    MESSAGE_PATTERN = "message_pattern"
    USER_ACTION = "user_action"
    TIMEOUT = "timeout"
    TRUST_INCREASE = "trust_increase"


# -------------------- datetime helpers --------------------

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def datetime_to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def iso_to_datetime(value: Any) -> Optional[datetime]:
    """Parse a serialized timestamp; naive values are taken to be UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        # Epoch milliseconds, as written by older snapshots
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# -------------------- value objects --------------------

@dataclass(slots=True)
class TaskUser:
    """A Discord user referenced by a task (target or creator)."""
    user_id: str
    user_name: str

    def to_dict(self) -> Dict[str, Any]:
        return {"user_id": self.user_id, "user_name": self.user_name}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TaskUser":
        return cls(user_id=str(data["user_id"]), user_name=str(data.get("user_name", "")))


@dataclass(slots=True)
class TaskCondition:
    type: TaskConditionType
    value: Any
    operator: Optional[str] = None
    check_interval_ms: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "value": self.value,
            "operator": self.operator,
            "check_interval_ms": self.check_interval_ms,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TaskCondition":
        return cls(
            type=TaskConditionType(data["type"]),
            value=data.get("value"),
            operator=data.get("operator"),
            check_interval_ms=data.get("check_interval_ms"),
        )


@dataclass(slots=True)
class CancelCondition:
    """Predicate over the target's messages that aborts an active task."""
    type: CancelConditionType
    value: str
    timeout_ms: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, "value": self.value, "timeout_ms": self.timeout_ms}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CancelCondition":
        return cls(
            type=CancelConditionType(data["type"]),
            value=str(data.get("value", "")),
            timeout_ms=data.get("timeout_ms"),
        )


@dataclass(slots=True)
class MonitoringConfig:
    watch_for: str
    duration_ms: int
    check_interval_ms: int = 5000
    on_match: str = "cancel"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "watch_for": self.watch_for,
            "duration_ms": self.duration_ms,
            "check_interval_ms": self.check_interval_ms,
            "on_match": self.on_match,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MonitoringConfig":
        return cls(
            watch_for=str(data.get("watch_for", "any violation")),
            duration_ms=int(data["duration_ms"]),
            check_interval_ms=int(data.get("check_interval_ms", 5000)),
            on_match=str(data.get("on_match", "cancel")),
        )


# -------------------- task entity --------------------

@dataclass
class Task:
    """
    Durable unit of deferred moderation work.

    Attributes:
        id: Unique task identifier (uuid4 string).
        type: Immediate, scheduled or conditional.
        action: Opaque payload for the external executor.
        target: User the action applies to; only their messages can cancel it.
        created_by: Moderator who issued the instruction.
        guild_id: Guild that owns the task.
        status: Current lifecycle state, see :class:`TaskStatus`.
        created_at / updated_at: Creation and last-mutation timestamps (UTC).
        execute_at: When a scheduled action becomes due.
        cancel_condition: Optional predicate aborting the task while active.
        monitoring: Optional watch window preceding execution.
        executed_at / result / error: Outcome fields written by ``update_task``.
    """
    id: str
    type: TaskType
    action: TaskAction
    target: TaskUser
    created_by: TaskUser
    guild_id: str
    status: TaskStatus
    created_at: datetime
    updated_at: datetime
    condition: Optional[TaskCondition] = None
    execute_at: Optional[datetime] = None
    cancel_condition: Optional[CancelCondition] = None
    monitoring: Optional[MonitoringConfig] = None
    executed_at: Optional[datetime] = None
    result: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_ready(self) -> bool:
        """Marked completed by the sweep while its action has not run yet."""
        return self.status is TaskStatus.COMPLETED and self.executed_at is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "action": self.action.to_dict(),
            "target": self.target.to_dict(),
            "created_by": self.created_by.to_dict(),
            "guild_id": self.guild_id,
            "condition": self.condition.to_dict() if self.condition else None,
            "execute_at": datetime_to_iso(self.execute_at),
            "cancel_condition": self.cancel_condition.to_dict() if self.cancel_condition else None,
            "monitoring": self.monitoring.to_dict() if self.monitoring else None,
            "status": self.status.value,
            "created_at": datetime_to_iso(self.created_at),
            "updated_at": datetime_to_iso(self.updated_at),
            "executed_at": datetime_to_iso(self.executed_at),
            "result": self.result,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        created_at = iso_to_datetime(data.get("created_at")) or utcnow()
        return cls(
            id=str(data["id"]),
            type=TaskType(data["type"]),
            action=TaskAction.from_dict(data["action"]),
            target=TaskUser.from_dict(data["target"]),
            created_by=TaskUser.from_dict(data["created_by"]),
            guild_id=str(data["guild_id"]),
            status=TaskStatus(data["status"]),
            created_at=created_at,
            updated_at=iso_to_datetime(data.get("updated_at")) or created_at,
            condition=TaskCondition.from_dict(data["condition"]) if data.get("condition") else None,
            execute_at=iso_to_datetime(data.get("execute_at")),
            cancel_condition=CancelCondition.from_dict(data["cancel_condition"]) if data.get("cancel_condition") else None,
            monitoring=MonitoringConfig.from_dict(data["monitoring"]) if data.get("monitoring") else None,
            executed_at=iso_to_datetime(data.get("executed_at")),
            result=data.get("result"),
            error=data.get("error"),
        )


@dataclass(slots=True)
class CreateTaskInput:
    """Caller-supplied fields of a new task; the manager fills in the rest."""
    type: TaskType
    action: TaskAction
    target: TaskUser
    created_by: TaskUser
    guild_id: str
    condition: Optional[TaskCondition] = None
    execute_at: Optional[datetime] = None
    cancel_condition: Optional[CancelCondition] = None
    monitoring: Optional[MonitoringConfig] = None


@dataclass(slots=True)
class TaskUpdate:
    """Partial update; ``None`` means "leave the field alone"."""
    status: Optional[TaskStatus] = None
    result: Optional[str] = None
    error: Optional[str] = None
    executed_at: Optional[datetime] = None


@dataclass(slots=True)
class TaskStats:
    total: int = 0
    pending: int = 0
    monitoring: int = 0
    executing: int = 0
    completed: int = 0
    cancelled: int = 0
    failed: int = 0
    by_guild: Dict[str, int] = field(default_factory=dict)
