from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import discord
import pytest

from modtasks.bot.action_executor import (
    ActionExecutionError,
    DiscordActionExecutor,
    MAX_TIMEOUT,
    build_action_embed,
)
from modtasks.datatypes.action_datatypes import ActionType, TaskAction
from modtasks.tasks.task_manager import TaskManager

from conftest import make_task_input


def _member() -> MagicMock:
    member = MagicMock()
    member.id = 1
    member.display_name = "alice"
    member.send = AsyncMock()
    member.timeout = AsyncMock()
    return member


def _bot(guild) -> MagicMock:
    bot = MagicMock()
    bot.get_guild.return_value = guild
    bot.user.name = "modtasks"
    return bot


def _guild(member) -> MagicMock:
    guild = MagicMock()
    guild.get_member.return_value = member
    guild.ban = AsyncMock()
    guild.kick = AsyncMock()
    guild.fetch_member = AsyncMock(return_value=member)
    return guild


async def _task(manager: TaskManager, action_type: ActionType, duration_ms=None):
    task_input = make_task_input()
    task_input.action = TaskAction(type=action_type, reason="rule 3", duration_ms=duration_ms)
    return await manager.create_task(task_input)


@pytest.mark.asyncio
async def test_timeout_is_capped_and_notifies(manager) -> None:
    member = _member()
    executor = DiscordActionExecutor(_bot(_guild(member)))
    task = await _task(manager, ActionType.TIMEOUT, duration_ms=int(timedelta(days=60).total_seconds() * 1000))

    result = await executor.execute(task)

    member.send.assert_awaited_once()
    until = member.timeout.await_args.args[0]
    assert until - discord.utils.utcnow() <= MAX_TIMEOUT
    assert member.timeout.await_args.kwargs["reason"] == "rule 3"
    assert result == "Timed out alice for 28 days"


@pytest.mark.asyncio
async def test_ban_and_kick_go_through_the_guild(manager) -> None:
    member = _member()
    guild = _guild(member)
    executor = DiscordActionExecutor(_bot(guild))

    assert await executor.execute(await _task(manager, ActionType.BAN)) == "Banned alice"
    guild.ban.assert_awaited_once_with(member, reason="rule 3")

    assert await executor.execute(await _task(manager, ActionType.KICK)) == "Kicked alice"
    guild.kick.assert_awaited_once_with(member, reason="rule 3")


@pytest.mark.asyncio
async def test_warn_only_sends_a_dm(manager) -> None:
    member = _member()
    guild = _guild(member)
    executor = DiscordActionExecutor(_bot(guild))

    assert await executor.execute(await _task(manager, ActionType.WARN)) == "Warned alice"
    member.send.assert_awaited_once()
    guild.ban.assert_not_awaited()


@pytest.mark.asyncio
async def test_uncached_member_is_fetched(manager) -> None:
    member = _member()
    guild = _guild(member)
    guild.get_member.return_value = None
    executor = DiscordActionExecutor(_bot(guild))

    await executor.execute(await _task(manager, ActionType.WARN))
    guild.fetch_member.assert_awaited_once_with(1)


@pytest.mark.asyncio
async def test_missing_guild_raises(manager) -> None:
    executor = DiscordActionExecutor(_bot(None))
    with pytest.raises(ActionExecutionError):
        await executor.execute(await _task(manager, ActionType.BAN))


@pytest.mark.asyncio
async def test_unsupported_action_raises(manager) -> None:
    member = _member()
    executor = DiscordActionExecutor(_bot(_guild(member)))
    task = await _task(manager, ActionType.WARN)
    task.action.type = "role_change"

    with pytest.raises(ActionExecutionError):
        await executor.execute(task)
    member.send.assert_not_awaited()


@pytest.mark.asyncio
async def test_build_action_embed(manager) -> None:
    task = await _task(manager, ActionType.TIMEOUT, duration_ms=600_000)
    embed = build_action_embed(task)

    assert embed.title == "⏱️ Timeout Issued"
    assert {field.name for field in embed.fields} == {"User", "Action", "Reason", "Duration"}
