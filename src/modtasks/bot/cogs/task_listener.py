"""
Task listener cog: the Discord surface of the task workflow.

- ``on_message`` feeds every guild message from a human author into the
  service, so a target's apology can cancel their pending task. A moderator
  message that mentions the bot is additionally parsed as an instruction
  ("@bot timeout @alice after 5 minutes unless she says sorry").
- ``/schedule`` submits an instruction against a chosen member.
- ``/tasks`` lists the guild's active tasks.
- ``/task_cancel`` cancels one of them.

Commands reply ephemerally and are limited to members holding the
configured moderator permission.
"""

import discord
from discord import Option
from discord.ext import commands

from modtasks.datatypes.intent_datatypes import MentionedUser
from modtasks.datatypes.task_datatypes import Task, TaskUser
from modtasks.nlp.temporal_parser import format_duration
from modtasks.services.moderation_task_service import ModerationTaskService
from modtasks.util.logger import get_logger

logger = get_logger("task_listener_cog")

MAX_LISTED_TASKS = 15


def is_ignored_author(author: discord.User | discord.Member) -> bool:
    """Bots and non-members never feed the task workflow."""
    return author.bot or not isinstance(author, discord.Member)


def has_permission(member: discord.User | discord.Member, permission_name: str) -> bool:
    if not isinstance(member, discord.Member):
        return False
    perms = member.guild_permissions
    return bool(perms.administrator or getattr(perms, permission_name, False))


def describe_task(task: Task, now) -> str:
    line = f"`{task.id[:8]}` {task.action.type} **{task.target.user_name}** ({task.status})"
    if task.execute_at is not None and task.execute_at > now:
        remaining_ms = int((task.execute_at - now).total_seconds() * 1000)
        line += f" in {format_duration(remaining_ms)}"
    if task.monitoring is not None:
        line += f", watching for {task.monitoring.watch_for}"
    if task.cancel_condition is not None:
        line += f", cancels on \"{task.cancel_condition.value}\""
    return line


class TaskListenerCog(commands.Cog):
    """Routes guild messages and moderator commands into the task service.

    Parameters
    ----------
    bot:
        Discord bot instance.
    service:
        Task workflow the cog delegates to.
    moderator_permission:
        Guild permission name required to schedule or cancel tasks.
    """

    def __init__(
        self,
        bot: discord.Bot,
        service: ModerationTaskService,
        moderator_permission: str = "moderate_members",
    ) -> None:
        self.bot = bot
        self.service = service
        self.moderator_permission = moderator_permission
        self._workflow_started = False
        logger.info("[TASK LISTENER] Task listener cog loaded")

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    @commands.Cog.listener(name="on_ready")
    async def on_ready(self) -> None:
        """Resume persisted tasks once guilds and members are cached."""
        # on_ready fires again after every reconnect
        if self._workflow_started:
            return
        self._workflow_started = True
        resumed = await self.service.start()
        logger.info("[TASK LISTENER] Task workflow started, %d tasks resumed", resumed)

    @commands.Cog.listener(name="on_message")
    async def on_message(self, message: discord.Message) -> None:
        if message.guild is None or is_ignored_author(message.author):
            return

        guild_id = str(message.guild.id)
        cancelled = await self.service.handle_message(
            guild_id, str(message.author.id), message.author.display_name, message.content
        )
        if cancelled:
            logger.info("[TASK LISTENER] Message from %s cancelled %d task(s)", message.author, len(cancelled))

        if self.bot.user is None or self.bot.user not in message.mentions:
            return
        if not has_permission(message.author, self.moderator_permission):
            return
        if not self.service.intent_parser.is_complex_intent(message.content):
            return

        mentioned = [
            MentionedUser(user_id=str(user.id), user_name=user.display_name)
            for user in message.mentions
            if user.id != self.bot.user.id
        ]
        submission = await self.service.submit_instruction(
            message.content,
            mentioned,
            TaskUser(user_id=str(message.author.id), user_name=message.author.display_name),
            guild_id,
        )
        await message.reply(submission.message, mention_author=False)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def ensure_moderator(self, ctx: discord.ApplicationContext) -> bool:
        if ctx.guild is None:
            await ctx.respond("This command can only be used in a server.", ephemeral=True)
            return False
        if not has_permission(ctx.author, self.moderator_permission):
            await ctx.respond("You do not have permission to use this command.", ephemeral=True)
            return False
        return True

    @commands.slash_command(name="schedule", description="Schedule a deferred or monitored moderation action.")
    async def schedule(
        self,
        ctx: discord.ApplicationContext,
        user: Option(discord.Member, "Member the action applies to"),  # type: ignore[valid-type]
        instruction: Option(str, "e.g. 'timeout after 5 minutes unless they say sorry'"),  # type: ignore[valid-type]
    ) -> None:
        if not await self.ensure_moderator(ctx):
            return

        if user.id == ctx.author.id:
            await ctx.respond("You cannot schedule moderation actions against yourself.", ephemeral=True)
            return
        if isinstance(user, discord.Member) and user.guild_permissions.administrator:
            await ctx.respond("You cannot schedule moderation actions against administrators.", ephemeral=True)
            return

        await ctx.defer(ephemeral=True)
        submission = await self.service.submit_instruction(
            instruction,
            [MentionedUser(user_id=str(user.id), user_name=user.display_name)],
            TaskUser(user_id=str(ctx.author.id), user_name=ctx.author.display_name),
            str(ctx.guild.id),
        )
        if submission.accepted and submission.task is not None:
            await ctx.send_followup(f"{submission.message}\nTask `{submission.task.id[:8]}` created.")
        else:
            await ctx.send_followup(submission.message)

    @commands.slash_command(name="tasks", description="List active moderation tasks in this server.")
    async def tasks(self, ctx: discord.ApplicationContext) -> None:
        if not await self.ensure_moderator(ctx):
            return

        active = self.service.get_open_tasks(str(ctx.guild.id))
        if not active:
            await ctx.respond("No active moderation tasks.", ephemeral=True)
            return

        now = self.service.task_manager.clock.now()
        lines = [describe_task(task, now) for task in active[:MAX_LISTED_TASKS]]
        if len(active) > MAX_LISTED_TASKS:
            lines.append(f"... and {len(active) - MAX_LISTED_TASKS} more")
        embed = discord.Embed(title="Active moderation tasks", description="\n".join(lines), color=discord.Color.blue())
        await ctx.respond(embed=embed, ephemeral=True)

    @commands.slash_command(name="task_cancel", description="Cancel an active moderation task.")
    async def task_cancel(
        self,
        ctx: discord.ApplicationContext,
        task_id: Option(str, "Task id or its first characters"),  # type: ignore[valid-type]
    ) -> None:
        if not await self.ensure_moderator(ctx):
            return

        matches = [
            task for task in self.service.get_open_tasks(str(ctx.guild.id))
            if task.id.startswith(task_id.strip())
        ]
        if len(matches) != 1:
            reply = "No active task matches that id." if not matches else "That id is ambiguous, use more characters."
            await ctx.respond(reply, ephemeral=True)
            return

        cancelled = await self.service.cancel_task(matches[0].id, f"Cancelled by {ctx.author.display_name}")
        reply = f"Task `{matches[0].id[:8]}` cancelled." if cancelled else "That task can no longer be cancelled."
        await ctx.respond(reply, ephemeral=True)


def setup(bot: discord.Bot, service: ModerationTaskService, moderator_permission: str = "moderate_members") -> None:
    """Register the TaskListenerCog with the bot."""
    bot.add_cog(TaskListenerCog(bot, service, moderator_permission))
