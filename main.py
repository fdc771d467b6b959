"""
Entry point for the link-to-media relay bot.
"""

import asyncio
import logging
import os
import sys

from aiogram import Bot, Dispatcher
from aiogram.client.default import DefaultBotProperties
from aiogram.fsm.storage.memory import MemoryStorage
from aiohttp import web

from config import LOG_FORMAT, LOG_LEVEL, load_config, require_bot_token
from errors import setup_logging
from handlers import BotHandlers
from managers import DispatchCoordinator, FallbackChainEngine

shutdown_event = asyncio.Event()


async def start_health_server(coordinator: DispatchCoordinator) -> None:
    """Run a tiny HTTP server so the hosting platform can probe the bot."""
    app = web.Application()

    async def health(request: web.Request) -> web.Response:
        return web.json_response(
            {
                "status": "ok",
                "active_jobs": coordinator.active_jobs,
                "pending_jobs": coordinator.pending_jobs,
            }
        )

    app.router.add_get("/", health)
    app.router.add_get("/health", health)

    runner = web.AppRunner(app)
    await runner.setup()

    host = "0.0.0.0"
    port = int(os.getenv("PORT", "8080"))
    site = web.TCPSite(runner, host=host, port=port)
    await site.start()
    logging.getLogger(__name__).info("Health server started on %s:%s", host, port)

    try:
        await shutdown_event.wait()
    finally:
        await runner.cleanup()


async def main() -> None:
    logger = setup_logging(level=LOG_LEVEL, format_string=LOG_FORMAT)
    logger.info("Starting media relay bot")

    bot = None
    coordinator = None
    health_server_task = None
    try:
        config = load_config()
        os.makedirs(config.downloads_dir, exist_ok=True)

        bot = Bot(token=require_bot_token(), default=DefaultBotProperties(parse_mode="HTML"))
        me = await bot.get_me()
        logger.info("Bot started: @%s", me.username)

        dispatcher = Dispatcher(storage=MemoryStorage())
        coordinator = DispatchCoordinator(config, engine=FallbackChainEngine(config))
        BotHandlers(dp=dispatcher, coordinator=coordinator, bot_username=me.username)

        health_server_task = asyncio.create_task(start_health_server(coordinator))
        await dispatcher.start_polling(bot)
    except Exception:
        logging.getLogger(__name__).exception("Fatal startup/runtime error")
        sys.exit(1)
    finally:
        shutdown_event.set()
        if health_server_task is not None:
            try:
                await health_server_task
            except Exception:
                logging.getLogger(__name__).debug("Health server shutdown failed", exc_info=True)
        if coordinator is not None:
            await coordinator.stop()
        if bot is not None:
            await bot.session.close()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
