"""
Pytest configuration and fixtures for modtasks tests.
"""

import sys
from pathlib import Path

import pytest

# Add src directory to path so imports work
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from modtasks.datatypes.action_datatypes import ActionType, TaskAction  # noqa: E402
from modtasks.datatypes.task_datatypes import (  # noqa: E402
    CancelCondition,
    CancelConditionType,
    CreateTaskInput,
    TaskType,
    TaskUser,
)
from modtasks.tasks.clock import ManualClock  # noqa: E402
from modtasks.tasks.task_manager import TaskManager  # noqa: E402
from modtasks.tasks.task_store import MemoryTaskStore  # noqa: E402

GUILD_ID = "1000"
ALICE = TaskUser(user_id="1", user_name="alice")
BOB = TaskUser(user_id="2", user_name="bob")
MODERATOR = TaskUser(user_id="99", user_name="mod")


def make_task_input(
    task_type: TaskType = TaskType.SCHEDULED,
    *,
    target: TaskUser = ALICE,
    guild_id: str = GUILD_ID,
    **kwargs,
) -> CreateTaskInput:
    return CreateTaskInput(
        type=task_type,
        action=TaskAction(type=ActionType.TIMEOUT, reason="test", duration_ms=60_000),
        target=target,
        created_by=MODERATOR,
        guild_id=guild_id,
        **kwargs,
    )


def apology_condition() -> CancelCondition:
    return CancelCondition(type=CancelConditionType.USER_ACTION, value="apology")


@pytest.fixture()
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture()
def store() -> MemoryTaskStore:
    return MemoryTaskStore()


@pytest.fixture()
def manager(store: MemoryTaskStore, clock: ManualClock) -> TaskManager:
    return TaskManager(store, clock=clock)
