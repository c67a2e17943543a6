"""
Discord-side executor for task actions.

Resolves the task's guild and target through the bot cache (falling back to
the API), applies the action with py-cord and notifies the target by DM.
Failures raise :class:`ActionExecutionError` so the task is recorded as
``failed`` with a readable error.
"""

import datetime

import discord

from modtasks.datatypes.action_datatypes import ActionType
from modtasks.datatypes.task_datatypes import Task
from modtasks.nlp.temporal_parser import format_duration
from modtasks.util.logger import get_logger

logger = get_logger("action_executor")

# Discord caps member timeouts at 28 days
MAX_TIMEOUT = datetime.timedelta(days=28)
DEFAULT_TIMEOUT = datetime.timedelta(minutes=10)


class ActionExecutionError(Exception):
    """The moderation action could not be applied."""


def build_action_embed(task: Task, bot_user: discord.ClientUser | None = None) -> discord.Embed:
    """Embed sent to the target describing the action taken."""
    emoji, label, color = {
        ActionType.BAN: ("🔨", "Ban", discord.Color.red()),
        ActionType.KICK: ("👢", "Kick", discord.Color.orange()),
        ActionType.WARN: ("⚠️", "Warn", discord.Color.yellow()),
        ActionType.TIMEOUT: ("⏱️", "Timeout", discord.Color.blue()),
    }.get(task.action.type, ("❓", "Action", discord.Color.light_grey()))

    embed = discord.Embed(
        title=f"{emoji} {label} Issued",
        color=color,
        timestamp=datetime.datetime.now(datetime.timezone.utc),
    )
    embed.add_field(name="User", value=f"<@{task.target.user_id}> (`{task.target.user_id}`)", inline=True)
    embed.add_field(name="Action", value=label, inline=True)
    embed.add_field(name="Reason", value=task.action.reason, inline=False)
    if task.action.type is ActionType.TIMEOUT and task.action.duration_ms:
        embed.add_field(name="Duration", value=format_duration(task.action.duration_ms), inline=False)
    embed.set_footer(text=f"Bot: {bot_user.name if bot_user else ''}")
    return embed


class DiscordActionExecutor:
    """Applies task actions through a py-cord bot."""

    def __init__(self, bot: discord.Bot) -> None:
        self.bot = bot

    async def resolve_member(self, task: Task) -> tuple[discord.Guild, discord.Member]:
        guild = self.bot.get_guild(int(task.guild_id))
        if guild is None:
            raise ActionExecutionError(f"Guild {task.guild_id} is not available")

        member = guild.get_member(int(task.target.user_id))
        if member is None:
            try:
                member = await guild.fetch_member(int(task.target.user_id))
            except discord.NotFound as exc:
                raise ActionExecutionError(f"{task.target.user_name} is no longer a member") from exc
            except discord.HTTPException as exc:
                raise ActionExecutionError(f"Could not fetch {task.target.user_name}: {exc}") from exc
        return guild, member

    async def notify(self, member: discord.Member, task: Task) -> None:
        try:
            await member.send(embed=build_action_embed(task, self.bot.user))
        except discord.Forbidden:
            logger.debug("Could not DM %s: DMs disabled", member.display_name)
        except discord.HTTPException as exc:
            logger.debug("Failed to DM %s: %s", member.display_name, exc)

    async def execute(self, task: Task) -> str:
        guild, member = await self.resolve_member(task)
        reason = task.action.reason
        logger.debug("Executing %s on %s (%s) for task %s", task.action.type, member.display_name, member.id, task.id)

        # Notify before acting: a kicked or banned member can no longer be messaged
        try:
            match task.action.type:
                case ActionType.TIMEOUT:
                    duration = (
                        datetime.timedelta(milliseconds=task.action.duration_ms)
                        if task.action.duration_ms
                        else DEFAULT_TIMEOUT
                    )
                    duration = min(duration, MAX_TIMEOUT)
                    await self.notify(member, task)
                    await member.timeout(discord.utils.utcnow() + duration, reason=reason)
                    result = f"Timed out {member.display_name} for {format_duration(int(duration.total_seconds() * 1000))}"
                case ActionType.BAN:
                    await self.notify(member, task)
                    await guild.ban(member, reason=reason)
                    result = f"Banned {member.display_name}"
                case ActionType.KICK:
                    await self.notify(member, task)
                    await guild.kick(member, reason=reason)
                    result = f"Kicked {member.display_name}"
                case ActionType.WARN:
                    await self.notify(member, task)
                    result = f"Warned {member.display_name}"
                case _:
                    raise ActionExecutionError(f"Unsupported action {task.action.type}")
        except discord.Forbidden as exc:
            raise ActionExecutionError(f"Missing permissions to {task.action.type} {member.display_name}") from exc
        except discord.HTTPException as exc:
            raise ActionExecutionError(f"Discord rejected {task.action.type}: {exc}") from exc

        logger.info("[EXECUTOR] %s", result)
        return result
