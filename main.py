import asyncio

import structlog
import uvicorn
from aiogram import Bot, Dispatcher
from aiogram.fsm.storage.memory import MemoryStorage

from app.cabinet.app import create_app
from app.config import settings
from app.database.database import AsyncSessionLocal, close_db, init_db
from app.handlers import admin, balance, promocode, referral, start, subscription
from app.logging_config import setup_logging
from app.middlewares.database import DatabaseMiddleware
from app.services.maintenance_service import MaintenanceService


logger = structlog.get_logger(__name__)


def build_dispatcher() -> Dispatcher:
    dp = Dispatcher(storage=MemoryStorage())

    middleware = DatabaseMiddleware(AsyncSessionLocal)
    dp.message.middleware(middleware)
    dp.callback_query.middleware(middleware)

    for module in (start, subscription, balance, promocode, referral, admin):
        module.register_handlers(dp)
    return dp


async def main() -> None:
    setup_logging()
    await init_db()

    bot = Bot(token=settings.BOT_TOKEN)
    dp = build_dispatcher()
    maintenance = MaintenanceService(AsyncSessionLocal, bot)

    tasks = [dp.start_polling(bot)]
    if settings.WEB_API_ENABLED:
        server = uvicorn.Server(
            uvicorn.Config(create_app(), host=settings.WEB_API_HOST, port=settings.WEB_API_PORT, log_config=None)
        )
        tasks.append(server.serve())

    logger.info('Бот запускается', web_api=settings.WEB_API_ENABLED, admins=len(settings.ADMIN_TELEGRAM_IDS))
    maintenance.start()
    try:
        await asyncio.gather(*tasks)
    finally:
        await maintenance.stop()
        await bot.session.close()
        await close_db()
        logger.info('Бот остановлен')


if __name__ == '__main__':
    asyncio.run(main())
