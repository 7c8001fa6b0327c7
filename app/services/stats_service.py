from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database.models import Payment, PaymentMethod, PaymentStatus, PromoCode, Subscription, SubscriptionStatus, User


@dataclass
class BotStats:
    users_total: int = 0
    users_blocked: int = 0
    users_new_today: int = 0
    active_subscriptions: int = 0
    active_trials: int = 0
    revenue_total_kopeks: int = 0
    revenue_today_kopeks: int = 0
    active_promocodes: int = 0


async def _scalar(db: AsyncSession, statement) -> int:
    result = await db.execute(statement)
    return int(result.scalar() or 0)


async def get_stats(db: AsyncSession, *, now: datetime | None = None) -> BotStats:
    """Headline numbers for the admin panel; manual top-ups are not revenue."""
    now = now or datetime.now(UTC)
    day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)

    live_users = User.deleted_at.is_(None)
    active_subscription = (Subscription.status == SubscriptionStatus.ACTIVE.value) & (Subscription.expires_at > now)
    revenue = (Payment.status == PaymentStatus.COMPLETED.value) & (
        Payment.payment_method != PaymentMethod.MANUAL.value
    )

    return BotStats(
        users_total=await _scalar(db, select(func.count(User.id)).where(live_users)),
        users_blocked=await _scalar(db, select(func.count(User.id)).where(live_users, User.is_blocked.is_(True))),
        users_new_today=await _scalar(db, select(func.count(User.id)).where(live_users, User.created_at >= day_start)),
        active_subscriptions=await _scalar(db, select(func.count(Subscription.id)).where(active_subscription)),
        active_trials=await _scalar(
            db, select(func.count(Subscription.id)).where(active_subscription, Subscription.is_trial.is_(True))
        ),
        revenue_total_kopeks=await _scalar(db, select(func.coalesce(func.sum(Payment.amount_kopeks), 0)).where(revenue)),
        revenue_today_kopeks=await _scalar(
            db,
            select(func.coalesce(func.sum(Payment.amount_kopeks), 0)).where(revenue, Payment.completed_at >= day_start),
        ),
        active_promocodes=await _scalar(
            db,
            select(func.count(PromoCode.id)).where(PromoCode.is_active.is_(True), PromoCode.deleted_at.is_(None)),
        ),
    )
