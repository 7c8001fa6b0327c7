from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from aiogram import BaseMiddleware
from aiogram.types import CallbackQuery, Message, TelegramObject, User as TelegramUser
from sqlalchemy.ext.asyncio import AsyncSession

from app.services.user_service import get_or_create_user, is_admin


logger = structlog.get_logger(__name__)


class DatabaseMiddleware(BaseMiddleware):
    """Open a session per update and inject ``db``, ``db_user`` and ``is_admin`` into handlers.

    Admin status is evaluated once here; handlers only read the injected flag.
    """

    def __init__(self, session_factory: Callable[[], AsyncSession]):
        self._session_factory = session_factory

    async def __call__(
        self,
        handler: Callable[[TelegramObject, dict[str, Any]], Awaitable[Any]],
        event: TelegramObject,
        data: dict[str, Any],
    ) -> Any:
        telegram_user: TelegramUser | None = data.get('event_from_user')

        async with self._session_factory() as db:
            data['db'] = db
            data['db_user'] = None
            data['is_admin'] = False
            data['is_new_user'] = False

            if telegram_user is not None and not telegram_user.is_bot:
                db_user, created = await get_or_create_user(
                    db,
                    telegram_id=telegram_user.id,
                    username=telegram_user.username,
                    first_name=telegram_user.first_name,
                    last_name=telegram_user.last_name,
                    language=(telegram_user.language_code or 'ru')[:5],
                )
                if created:
                    logger.info('Новый пользователь', user_id=db_user.id, telegram_id=telegram_user.id)

                if db_user.is_blocked or db_user.is_deleted:
                    logger.info('Запрос от заблокированного пользователя', user_id=db_user.id)
                    if isinstance(event, CallbackQuery):
                        await event.answer('🚫 Ваш аккаунт заблокирован', show_alert=True)
                    elif isinstance(event, Message):
                        await event.answer('🚫 Ваш аккаунт заблокирован. Обратитесь в поддержку.')
                    return None

                data['db_user'] = db_user
                data['is_new_user'] = created
                data['is_admin'] = is_admin(db_user)

            return await handler(event, data)
