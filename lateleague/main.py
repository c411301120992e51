from __future__ import annotations

import asyncio
import logging

import aiohttp.web

from .api import LeagueApi
from .bot import DiscordNotifier, LeagueBot
from .config import Settings, load_settings
from .export import build_exporter
from .seasons import LoggingNotifier, SeasonService
from .storage import Database

logger = logging.getLogger("late-league")


async def run(settings: Settings) -> None:
    db = Database(settings.database_path)
    bot = LeagueBot(settings, db) if settings.bot_enabled else None
    notifier = DiscordNotifier(bot) if bot is not None else LoggingNotifier()
    api = LeagueApi(
        db,
        SeasonService(db, notifier),
        admin_tokens=settings.admin_api_tokens,
        exporter=build_exporter(db, settings.export_command, settings.database_url or settings.database_path),
    )

    runner = aiohttp.web.AppRunner(api.app)
    await runner.setup()
    site = aiohttp.web.TCPSite(runner, settings.api_host, settings.api_port)
    await site.start()
    logger.info("API listening on %s:%s", settings.api_host, settings.api_port)

    try:
        if bot is None:
            logger.warning("DISCORD_TOKEN is not set; running the API only")
            await asyncio.Event().wait()
        else:
            async with bot:
                await bot.start(settings.discord_token)
    finally:
        await runner.cleanup()
        db.close()


def main() -> None:
    settings = load_settings()
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    try:
        asyncio.run(run(settings))
    except KeyboardInterrupt:
        logger.info("Shutting down")


if __name__ == "__main__":
    main()
