"""
Moderation Task Bot
===================

A Discord bot that turns natural-language moderator instructions into
deferred, monitored and cancellable moderation tasks ("timeout @alice after
5 minutes unless she apologizes").
"""

import os
import sys
from pathlib import Path


def resolve_base_dir() -> Path:
    """Determine the base directory of the project.

    Resolution order:
    1. MODTASKS_HOME environment variable, if set.
    2. If running in a frozen/compiled context, use the executable's directory.
    3. Otherwise, assume running from source and use the grandparent of this file's directory.
    """
    if env_home := os.getenv("MODTASKS_HOME"):
        return Path(env_home).resolve()

    if getattr(sys, "frozen", False) or getattr(sys, "compiled", False):
        return Path(sys.argv[0]).resolve().parent

    return Path(__file__).resolve().parents[2]


BASE_DIR = resolve_base_dir()
os.chdir(BASE_DIR)

import asyncio
import discord
from dotenv import load_dotenv

from modtasks.configuration.app_configuration import TaskSettings
from modtasks.services.moderation_task_service import ModerationTaskService
from modtasks.tasks.action_scheduler import ActionScheduler
from modtasks.tasks.clock import SystemClock
from modtasks.tasks.task_manager import TaskManager
from modtasks.tasks.task_store import create_task_store
from modtasks.nlp.intent_parser import ComplexIntentParser
from modtasks.util.logger import get_logger, handle_exception


logger = get_logger("main")


def load_environment() -> str:
    """Load environment variables and return the Discord bot token.

    Raises
    ------
    SystemExit
        If the required ``DISCORD_BOT_TOKEN`` variable is missing.
    """
    load_dotenv(dotenv_path=BASE_DIR / ".env")
    token = os.getenv("DISCORD_BOT_TOKEN")
    if not token:
        logger.critical("'DISCORD_BOT_TOKEN' environment variable not set. Bot cannot start.")
        sys.exit(1)
    return token


def build_intents() -> discord.Intents:
    """Guild, member and message-content intents needed to read cancel phrases."""
    intents = discord.Intents.default()
    intents.message_content = True
    intents.guilds = True
    intents.messages = True
    intents.members = True
    return intents


def build_service(bot: discord.Bot, settings: TaskSettings, clock: SystemClock) -> ModerationTaskService:
    """Wire store, manager, scheduler and executor for one bot instance."""
    from modtasks.bot.action_executor import DiscordActionExecutor

    task_manager = TaskManager(
        create_task_store(settings),
        clock=clock,
        sweep_interval_seconds=settings.sweep_interval_seconds,
        terminal_retention_seconds=settings.terminal_retention_seconds,
    )
    scheduler = ActionScheduler(clock=clock, record_retention_seconds=settings.scheduler_record_retention_seconds)
    parser = ComplexIntentParser(clock=clock, default_monitoring_duration_ms=settings.default_monitoring_duration_ms)
    return ModerationTaskService(
        task_manager,
        scheduler,
        DiscordActionExecutor(bot),
        intent_parser=parser,
        min_confidence=settings.min_confidence,
    )


def create_bot(settings: TaskSettings, moderator_permission: str, clock: SystemClock) -> tuple[discord.Bot, ModerationTaskService]:
    """Instantiate the Discord bot and register the task cog."""
    from modtasks.bot.cogs import task_listener

    bot = discord.Bot(intents=build_intents())
    service = build_service(bot, settings, clock)
    task_listener.setup(bot, service, moderator_permission)
    logger.info("All cogs loaded successfully.")
    return bot, service


async def start_bot(bot: discord.Bot, token: str) -> None:
    logger.info("Attempting to connect to Discord…")
    try:
        await bot.start(token)
    except asyncio.CancelledError:
        logger.info("Discord bot start cancelled; shutting down")
    finally:
        logger.info("Discord bot start routine finished.")


async def shutdown_runtime(bot: discord.Bot, service: ModerationTaskService, clock: SystemClock) -> None:
    """Stop the task workflow first so no timer fires against a closed client."""
    try:
        await service.stop()
    except Exception as exc:
        logger.exception("Error during task service shutdown: %s", exc)

    await clock.shutdown()

    if not bot.is_closed():
        await bot.close()

    logger.info("Shutdown complete.")


async def async_main() -> int:
    """Bootstrap configuration, tasks and the bot, returning an exit code."""
    from modtasks.configuration.app_configuration import app_config

    token = load_environment()
    settings = app_config.task_settings
    clock = SystemClock()

    try:
        bot, service = create_bot(settings, app_config.moderator_permission, clock)
    except Exception as exc:
        logger.critical("Failed to initialize Discord bot: %s", exc)
        return 1

    try:
        loaded = await service.task_manager.load()
        logger.info("Loaded %d persisted tasks (backend=%s)", loaded, settings.store_backend)
    except Exception as exc:
        logger.critical("Failed to load persisted tasks: %s", exc)
        await shutdown_runtime(bot, service, clock)
        return 1

    exit_code = 0
    try:
        await start_bot(bot, token)
    except Exception as exc:
        logger.critical("Discord bot runtime error: %s", exc)
        exit_code = 1
    finally:
        await shutdown_runtime(bot, service, clock)

    return exit_code


def main() -> int:
    """Entrypoint that runs the async runtime and returns the process code."""
    sys.excepthook = handle_exception
    logger.info("Starting Moderation Task Bot…")
    try:
        return asyncio.run(async_main())
    except KeyboardInterrupt:
        logger.info("Shutdown requested by user.")
        return 0
    except Exception as exc:
        logger.critical("An unexpected error occurred while running the bot: %s", exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
