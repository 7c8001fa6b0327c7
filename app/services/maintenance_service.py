from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass

import structlog
from aiogram import Bot
from aiogram.exceptions import TelegramAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database.crud.user import get_user_by_id
from app.database.crud.user_notification import NotificationType, create_user_notification, has_notification
from app.services import activity_log_service, subscription_service


logger = structlog.get_logger(__name__)


@dataclass
class MaintenanceReport:
    expired: int = 0
    expiring_notified: int = 0
    deprovisioned: int = 0
    logs_removed: int = 0


class MaintenanceService:
    """Periodic sweep: expire due subscriptions, warn about expiring ones, retry remote deletions."""

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        bot: Bot | None = None,
        *,
        interval_seconds: int | None = None,
    ):
        self._session_factory = session_factory
        self._bot = bot
        self._interval = settings.MAINTENANCE_INTERVAL_SECONDS if interval_seconds is None else interval_seconds
        self._task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _notify_expiring(self, db: AsyncSession) -> int:
        notified = 0
        for subscription in await subscription_service.get_expiring_subscriptions(db, settings.EXPIRING_NOTICE_DAYS):
            already_sent = await has_notification(
                db,
                user_id=subscription.user_id,
                notification_type=NotificationType.SUBSCRIPTION_EXPIRING,
                subscription_id=subscription.id,
            )
            if already_sent:
                continue

            days_left = subscription.days_left
            await create_user_notification(
                db,
                user_id=subscription.user_id,
                notification_type=NotificationType.SUBSCRIPTION_EXPIRING,
                title='Подписка скоро закончится',
                body=f'До окончания подписки осталось {days_left} дн.',
                payload={'subscription_id': subscription.id},
            )
            await db.commit()
            notified += 1

            if self._bot is not None:
                user = await get_user_by_id(db, subscription.user_id)
                if user is None or user.is_blocked:
                    continue
                try:
                    await self._bot.send_message(
                        user.telegram_id,
                        f'⏳ Ваша подписка закончится через {days_left} дн. Продлите её, чтобы не потерять доступ.',
                    )
                except TelegramAPIError as exc:
                    logger.warning(
                        'Не удалось отправить уведомление об окончании подписки',
                        user_id=user.id,
                        error=str(exc),
                    )
        return notified

    async def run_once(self) -> MaintenanceReport:
        report = MaintenanceReport()
        async with self._session_factory() as db:
            report.expired = await subscription_service.expire_subscriptions(db)
            report.expiring_notified = await self._notify_expiring(db)
            report.deprovisioned = await subscription_service.retry_pending_deprovisions(db)
            report.logs_removed = await activity_log_service.cleanup_old_logs(db)

        if report.expired or report.expiring_notified or report.deprovisioned or report.logs_removed:
            logger.info(
                'Обслуживание подписок выполнено',
                expired=report.expired,
                expiring_notified=report.expiring_notified,
                deprovisioned=report.deprovisioned,
                logs_removed=report.logs_removed,
            )
        return report

    async def _loop(self) -> None:
        logger.info('Запущено обслуживание подписок', interval_seconds=self._interval)
        while True:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception('Ошибка обслуживания подписок')
            await asyncio.sleep(self._interval)

    def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.create_task(self._loop(), name='subscription-maintenance')

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info('Обслуживание подписок остановлено')
