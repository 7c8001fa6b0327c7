from datetime import datetime

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.database.models import PromoCode, PromoCodeUse


def normalize_code(code: str) -> str:
    return (code or '').strip().upper()


async def get_promocode_by_code(db: AsyncSession, code: str) -> PromoCode | None:
    result = await db.execute(
        select(PromoCode).where(PromoCode.code == normalize_code(code), PromoCode.deleted_at.is_(None))
    )
    return result.scalar_one_or_none()


async def get_promocode_by_id(db: AsyncSession, promocode_id: int) -> PromoCode | None:
    result = await db.execute(select(PromoCode).where(PromoCode.id == promocode_id))
    return result.scalar_one_or_none()


async def promocode_code_exists(db: AsyncSession, code: str) -> bool:
    result = await db.execute(select(PromoCode.id).where(PromoCode.code == normalize_code(code)))
    return result.scalar_one_or_none() is not None


async def get_promocode_use(db: AsyncSession, *, promocode_id: int, user_id: int) -> PromoCodeUse | None:
    result = await db.execute(
        select(PromoCodeUse).where(PromoCodeUse.promocode_id == promocode_id, PromoCodeUse.user_id == user_id)
    )
    return result.scalar_one_or_none()


async def claim_promocode_use(db: AsyncSession, promocode_id: int) -> bool:
    """Increment ``used_count`` only while the cap allows it; False when the cap is reached."""
    result = await db.execute(
        update(PromoCode)
        .where(
            PromoCode.id == promocode_id,
            or_(PromoCode.max_uses == 0, PromoCode.used_count < PromoCode.max_uses),
        )
        .values(used_count=PromoCode.used_count + 1)
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) == 1


async def list_promocodes(
    db: AsyncSession,
    *,
    limit: int = 50,
    offset: int = 0,
    include_inactive: bool = True,
) -> list[PromoCode]:
    query = select(PromoCode).where(PromoCode.deleted_at.is_(None))
    if not include_inactive:
        query = query.where(PromoCode.is_active.is_(True))
    query = query.order_by(PromoCode.created_at.desc(), PromoCode.id.desc()).offset(max(0, offset)).limit(max(1, min(limit, 200)))
    result = await db.execute(query)
    return list(result.scalars().all())


async def get_valid_promocodes(db: AsyncSession, now: datetime) -> list[PromoCode]:
    result = await db.execute(
        select(PromoCode)
        .where(
            PromoCode.is_active.is_(True),
            PromoCode.deleted_at.is_(None),
            PromoCode.valid_from <= now,
            or_(PromoCode.valid_until.is_(None), PromoCode.valid_until > now),
            or_(PromoCode.max_uses == 0, PromoCode.used_count < PromoCode.max_uses),
        )
        .order_by(PromoCode.created_at.desc())
    )
    return list(result.scalars().all())
