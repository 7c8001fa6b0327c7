import asyncio
from dataclasses import dataclass

import structlog
from aiogram import Bot
from aiogram.exceptions import TelegramAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from app.database.crud.activity_log import ActivityAction
from app.database.crud.user import get_reachable_users
from app.database.crud.user_notification import NotificationType, create_user_notification
from app.services.activity_log_service import log_activity


logger = structlog.get_logger(__name__)

SLEEP_BETWEEN_MESSAGES = 0.05
MAX_BROADCAST_LENGTH = 4000


@dataclass
class BroadcastReport:
    total: int = 0
    sent: int = 0
    failed: int = 0


async def send_broadcast(
    db: AsyncSession,
    bot: Bot | None,
    text: str,
    *,
    admin_id: int | None = None,
    delay_seconds: float = SLEEP_BETWEEN_MESSAGES,
) -> BroadcastReport:
    """Store an admin message for every reachable user and deliver it through the bot.

    The stored notifications are committed before delivery starts, so a user
    who blocked the bot still finds the message in the cabinet.
    """
    text = (text or '').strip()
    if not text:
        raise ValueError('Broadcast text is empty')
    text = text[:MAX_BROADCAST_LENGTH]

    recipients = await get_reachable_users(db)
    report = BroadcastReport(total=len(recipients))

    for user in recipients:
        await create_user_notification(
            db,
            user_id=user.id,
            notification_type=NotificationType.ADMIN_MESSAGE,
            title='Сообщение от администрации',
            body=text,
        )
    if admin_id is not None:
        await log_activity(db, admin_id, ActivityAction.ADMIN_ACTION, action='notify', recipients=report.total)
    await db.commit()

    if bot is None:
        return report

    for user in recipients:
        try:
            await bot.send_message(user.telegram_id, text)
            report.sent += 1
        except TelegramAPIError as exc:
            report.failed += 1
            logger.warning('Не удалось доставить рассылку', user_id=user.id, error=str(exc))
        if delay_seconds:
            await asyncio.sleep(delay_seconds)

    logger.info('Рассылка завершена', total=report.total, sent=report.sent, failed=report.failed, admin_id=admin_id)
    return report
