"""Process entry point: database, reminder scheduler, and the Discord bot."""

from __future__ import annotations

import asyncio
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from anarchy.config import Settings
from anarchy.core.reminders import deliver_due_reminders
from anarchy.db.engine import Database
from anarchy.discord.bot import is_discord_enabled, start_discord_bot

logger = logging.getLogger(__name__)


async def run(settings: Settings) -> None:
    """Connect storage, start the bot and reminder delivery, and run until the bot stops."""
    database = Database(settings.database_url)
    engine = await database.connect()

    if not is_discord_enabled(settings):
        logger.info("discord_bot_integration_disabled env=%s", settings.anarchy_env)
        await database.disconnect()
        return

    bot = await start_discord_bot(settings, engine)
    logger.info("discord_bot_integration_started")

    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        deliver_due_reminders,
        trigger=IntervalTrigger(seconds=settings.reminder_poll_seconds),
        kwargs={"engine": engine, "send": bot.deliver_reminder},
        id="deliver_reminders",
        name="Deliver due reminders",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()
    logger.info("scheduler_started poll_seconds=%d", settings.reminder_poll_seconds)

    try:
        if bot.runner is not None:
            await bot.runner
    finally:
        scheduler.shutdown(wait=False)
        logger.info("scheduler_stopped")
        if not bot.is_closed():
            await bot.close()
        logger.info("discord_bot_integration_stopped")
        await database.disconnect()


def main() -> None:
    settings = Settings()
    logging.basicConfig(
        level=getattr(logging, settings.anarchy_log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        asyncio.run(run(settings))
    except KeyboardInterrupt:
        logger.info("shutdown_requested")


if __name__ == "__main__":
    main()
