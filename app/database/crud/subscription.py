from datetime import UTC, datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.database.models import Subscription, SubscriptionStatus


async def get_subscription_by_id(db: AsyncSession, subscription_id: int) -> Subscription | None:
    result = await db.execute(select(Subscription).where(Subscription.id == subscription_id))
    return result.scalar_one_or_none()


async def get_user_subscriptions(db: AsyncSession, user_id: int) -> list[Subscription]:
    result = await db.execute(
        select(Subscription).where(Subscription.user_id == user_id).order_by(Subscription.created_at.desc(), Subscription.id.desc())
    )
    return list(result.scalars().all())


async def get_active_subscriptions(db: AsyncSession, user_id: int) -> list[Subscription]:
    now = datetime.now(UTC)
    result = await db.execute(
        select(Subscription)
        .where(
            Subscription.user_id == user_id,
            Subscription.status == SubscriptionStatus.ACTIVE.value,
            Subscription.expires_at > now,
        )
        .order_by(Subscription.expires_at.desc())
    )
    return list(result.scalars().all())


async def get_latest_active_paid_subscription(db: AsyncSession, user_id: int) -> Subscription | None:
    now = datetime.now(UTC)
    result = await db.execute(
        select(Subscription)
        .where(
            Subscription.user_id == user_id,
            Subscription.is_trial.is_(False),
            Subscription.status == SubscriptionStatus.ACTIVE.value,
            Subscription.expires_at > now,
        )
        .order_by(Subscription.expires_at.desc(), Subscription.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_expiring_subscriptions(db: AsyncSession, days: int) -> list[Subscription]:
    now = datetime.now(UTC)
    result = await db.execute(
        select(Subscription)
        .where(
            Subscription.status == SubscriptionStatus.ACTIVE.value,
            Subscription.expires_at > now,
            Subscription.expires_at <= now + timedelta(days=days),
        )
        .order_by(Subscription.expires_at)
    )
    return list(result.scalars().all())


async def has_trial_subscription(db: AsyncSession, user_id: int) -> bool:
    result = await db.execute(
        select(Subscription.id).where(Subscription.user_id == user_id, Subscription.is_trial.is_(True)).limit(1)
    )
    return result.scalar_one_or_none() is not None


async def expire_due_subscriptions(db: AsyncSession, now: datetime) -> list[tuple[int, int]]:
    """Flip every due active row to expired; returns ``(subscription_id, user_id)`` of the rows changed."""
    result = await db.execute(
        update(Subscription)
        .where(
            Subscription.status == SubscriptionStatus.ACTIVE.value,
            Subscription.expires_at <= now,
        )
        .values(status=SubscriptionStatus.EXPIRED.value, updated_at=now)
        .returning(Subscription.id, Subscription.user_id)
        .execution_options(synchronize_session=False)
    )
    return [(row.id, row.user_id) for row in result.all()]


async def get_deprovision_pending_subscriptions(db: AsyncSession, limit: int = 100) -> list[Subscription]:
    result = await db.execute(
        select(Subscription)
        .where(Subscription.deprovision_pending.is_(True))
        .order_by(Subscription.updated_at)
        .limit(limit)
    )
    return list(result.scalars().all())
