from datetime import UTC, datetime
from enum import Enum

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database.models import UserNotification


class NotificationType(Enum):
    TRIAL_ACTIVATED = 'trial_activated'
    SUBSCRIPTION_PURCHASED = 'subscription_purchased'
    SUBSCRIPTION_EXPIRING = 'subscription_expiring'
    SUBSCRIPTION_EXPIRED = 'subscription_expired'
    REFERRAL_REWARD = 'referral_reward'
    PROMOCODE_REDEEMED = 'promocode_redeemed'
    BALANCE_TOPUP = 'balance_topup'
    ADMIN_MESSAGE = 'admin_message'


async def create_user_notification(
    db: AsyncSession,
    *,
    user_id: int,
    notification_type: NotificationType,
    title: str,
    body: str | None = None,
    payload: dict | None = None,
) -> UserNotification:
    notification = UserNotification(
        user_id=user_id,
        notification_type=notification_type.value,
        title=title,
        body=body,
        payload=payload or {},
        created_at=datetime.now(UTC),
    )
    db.add(notification)
    await db.flush()
    return notification


async def has_notification(
    db: AsyncSession,
    *,
    user_id: int,
    notification_type: NotificationType,
    subscription_id: int,
) -> bool:
    rows = (
        await db.execute(
            select(UserNotification.payload).where(
                UserNotification.user_id == user_id,
                UserNotification.notification_type == notification_type.value,
            )
        )
    ).scalars()
    return any((payload or {}).get('subscription_id') == subscription_id for payload in rows)


async def get_user_notifications(
    db: AsyncSession,
    *,
    user_id: int,
    unread_only: bool = False,
    limit: int = 20,
) -> list[UserNotification]:
    query = select(UserNotification).where(UserNotification.user_id == user_id)
    if unread_only:
        query = query.where(UserNotification.read_at.is_(None))
    query = query.order_by(UserNotification.created_at.desc(), UserNotification.id.desc()).limit(max(1, min(limit, 100)))
    return list((await db.execute(query)).scalars().all())
