import asyncio
import logging
from aiogram import Bot, Dispatcher
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ParseMode

from shared.config.settings import settings
from shared.config.database import init_db
from shared.config.redis import init_redis, close_redis, RedisLock
from apps.bot.handlers import register_handlers
from apps.bot.middlewares import ErrorMiddleware
from apps.bot.services.factory import build_services
from apps.bot.services.scheduler import PeriodicSweep

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)


async def main():
    # Initialize database
    await init_db()
    logger.info("Database initialized")

    # Initialize Redis
    await init_redis()

    # Initialize bot and dispatcher
    bot = Bot(
        token=settings.bot_token,
        default=DefaultBotProperties(parse_mode=ParseMode.HTML)
    )
    services = build_services(bot, settings)
    dp = Dispatcher(engine=services.engine, gatekeeper=services.gatekeeper)

    # Register middlewares
    dp.message.middleware(ErrorMiddleware())
    dp.callback_query.middleware(ErrorMiddleware())
    dp.chat_join_request.middleware(ErrorMiddleware())
    logger.info("Middlewares registered")

    # Register handlers
    register_handlers(dp)

    # Start background sweeps
    sweeps = [
        PeriodicSweep(
            "recurring-charges",
            services.engine.process_recurring_charges,
            settings.recurring_sweep_interval_seconds,
            RedisLock("sweep:recurring-charges", ttl=max(60, settings.recurring_sweep_interval_seconds * 5))
        ),
        PeriodicSweep(
            "subscription-expiry",
            services.engine.process_expired_subscriptions,
            settings.expiry_sweep_interval_seconds,
            RedisLock("sweep:subscription-expiry", ttl=max(60, settings.expiry_sweep_interval_seconds * 5))
        ),
    ]
    tasks = [asyncio.create_task(sweep.run_forever()) for sweep in sweeps]
    logger.info("Background sweeps started")

    # Start polling
    logger.info("Starting bot...")
    try:
        await dp.start_polling(
            bot,
            allowed_updates=["message", "callback_query", "chat_join_request"]
        )
    finally:
        for sweep in sweeps:
            sweep.stop()
        for task in tasks:
            task.cancel()
        await services.close()
        await close_redis()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Bot stopped")
