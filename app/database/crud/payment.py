from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database.models import Payment


async def get_payment_by_id(db: AsyncSession, payment_id: int) -> Payment | None:
    result = await db.execute(select(Payment).where(Payment.id == payment_id))
    return result.scalar_one_or_none()


async def get_payment_by_external_id(db: AsyncSession, external_id: str) -> Payment | None:
    result = await db.execute(select(Payment).where(Payment.external_id == external_id))
    return result.scalar_one_or_none()


async def get_user_payments(db: AsyncSession, user_id: int, *, limit: int = 20, offset: int = 0) -> list[Payment]:
    result = await db.execute(
        select(Payment)
        .where(Payment.user_id == user_id)
        .order_by(Payment.created_at.desc(), Payment.id.desc())
        .offset(max(0, offset))
        .limit(max(1, min(limit, 100)))
    )
    return list(result.scalars().all())
