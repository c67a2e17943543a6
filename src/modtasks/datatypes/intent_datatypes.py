"""
Structured results of natural-language moderation instructions.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional

from modtasks.datatypes.action_datatypes import ActionType


class ConditionType(Enum):
    IF = "if"
    UNLESS = "unless"
    WHEN = "when"
    AFTER = "after"


class ConditionAction(Enum):
    EXECUTE = "execute"
    CANCEL = "cancel"
    WAIT = "wait"


class CancelTriggerType(Enum):
    MESSAGE = "message"
    ACTION = "action"
    TIME = "time"


@dataclass(slots=True)
class TimeExpression:
    """Temporal qualifiers found in an instruction.

    ``delay_ms`` answers "when to start" and ``duration_ms`` answers "how long
    to watch or wait". Both are optional and independent of each other.
    """
    raw: str
    delay_ms: Optional[int] = None
    duration_ms: Optional[int] = None
    execute_at: Optional[datetime] = None

    @property
    def is_empty(self) -> bool:
        return not (self.delay_ms or self.duration_ms)


@dataclass(slots=True)
class MentionedUser:
    user_id: str
    user_name: str


@dataclass(slots=True)
class IntentMonitoring:
    watch_for: str
    duration_ms: int


@dataclass(slots=True)
class Condition:
    type: ConditionType
    check: str
    action: ConditionAction


@dataclass(slots=True)
class CancelTrigger:
    pattern: str
    type: CancelTriggerType = CancelTriggerType.MESSAGE


@dataclass(slots=True)
class ComplexIntent:
    """A moderation instruction with its optional temporal and conditional structure.

    ``confidence`` is a deterministic weighted sum of the extracted parts
    (action 30, target 25, time 20, monitoring 15, conditions 10).
    """
    primary_action: ActionType
    raw: str
    confidence: int
    target: Optional[MentionedUser] = None
    time_expression: Optional[TimeExpression] = None
    monitoring: Optional[IntentMonitoring] = None
    conditions: List[Condition] = field(default_factory=list)
    cancellation_triggers: List[CancelTrigger] = field(default_factory=list)
