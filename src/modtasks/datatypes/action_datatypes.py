"""
Action types and the payload handed to the moderation executor.

The task core never interprets :class:`TaskAction`; it is carried on the
durable task and passed back to whatever executor performs the real ban,
kick, timeout or warning.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict


class ActionType(Enum):
    """Enumeration of moderation actions a task can defer."""

    TIMEOUT = "timeout"
    BAN = "ban"
    KICK = "kick"
    WARN = "warn"

    def __str__(self) -> str:
        return self.value


@dataclass(slots=True)
class TaskAction:
    """Moderation payload of a task.

    Attributes:
        type: Kind of moderation action to perform.
        reason: Audit log reason shown to the target and in the guild log.
        duration_ms: Length of a timeout (or temporary ban) in milliseconds.
        severity: Informational severity on a 0-10 scale.
    """
    type: ActionType
    reason: str = "No reason provided."
    duration_ms: int | None = None
    severity: int = 5

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "reason": self.reason,
            "duration_ms": self.duration_ms,
            "severity": self.severity,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TaskAction":
        return cls(
            type=ActionType(data["type"]),
            reason=data.get("reason", "No reason provided."),
            duration_ms=data.get("duration_ms"),
            severity=int(data.get("severity", 5)),
        )
