from datetime import UTC, datetime, timedelta

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database.crud.activity_log import (
    ActivityAction,
    create_activity_log,
    delete_activity_logs_before,
    get_activity_logs,
)
from app.database.models import ActivityLog


logger = structlog.get_logger(__name__)


ACTION_TITLES = {
    ActivityAction.PAYMENT.value: '💳 Платёж',
    ActivityAction.SUBSCRIPTION.value: '🔐 Подписка',
    ActivityAction.PROMO_CODE.value: '🎁 Промокод',
    ActivityAction.REFERRAL.value: '👥 Реферал',
    ActivityAction.ADMIN_ACTION.value: '🛠 Администратор',
}


async def log_activity(
    db: AsyncSession,
    user_id: int,
    action: ActivityAction,
    /,
    **data,
) -> ActivityLog:
    """Record an event in the caller's transaction; the caller commits."""
    return await create_activity_log(db, user_id=user_id, action=action, data=data)


def describe(entry: ActivityLog) -> str:
    title = ACTION_TITLES.get(entry.action, entry.action)
    details = ', '.join(f'{key}={value}' for key, value in sorted((entry.data or {}).items()))
    created_at = entry.created_at.strftime('%d.%m.%Y %H:%M') if entry.created_at else '—'
    if details:
        return f'{created_at} {title}: {details}'
    return f'{created_at} {title}'


async def get_user_activity(
    db: AsyncSession,
    user_id: int,
    *,
    limit: int = 20,
    offset: int = 0,
) -> tuple[list[ActivityLog], int]:
    return await get_activity_logs(db, user_id=user_id, limit=limit, offset=offset)


async def get_recent_activity(
    db: AsyncSession,
    *,
    action: ActivityAction | None = None,
    limit: int = 20,
    offset: int = 0,
) -> tuple[list[ActivityLog], int]:
    return await get_activity_logs(db, action=action, limit=limit, offset=offset)


async def cleanup_old_logs(db: AsyncSession, days_to_keep: int | None = None) -> int:
    days_to_keep = settings.ACTIVITY_LOG_RETENTION_DAYS if days_to_keep is None else days_to_keep
    if days_to_keep <= 0:
        return 0

    cutoff = datetime.now(UTC) - timedelta(days=days_to_keep)
    deleted = await delete_activity_logs_before(db, cutoff)
    await db.commit()
    if deleted:
        logger.info('Удалены старые записи журнала действий', count=deleted, days_to_keep=days_to_keep)
    return deleted
