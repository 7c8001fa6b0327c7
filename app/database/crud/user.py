import secrets
import string
from datetime import UTC, datetime

import structlog
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database.models import User


logger = structlog.get_logger(__name__)

REFERRAL_CODE_LENGTH = 8
_REFERRAL_ALPHABET = string.ascii_uppercase + string.digits


def generate_referral_code(length: int = REFERRAL_CODE_LENGTH) -> str:
    return ''.join(secrets.choice(_REFERRAL_ALPHABET) for _ in range(length))


async def get_user_by_id(db: AsyncSession, user_id: int, *, include_deleted: bool = False) -> User | None:
    query = select(User).where(User.id == user_id)
    if not include_deleted:
        query = query.where(User.deleted_at.is_(None))
    result = await db.execute(query)
    return result.scalar_one_or_none()


async def get_user_by_telegram_id(db: AsyncSession, telegram_id: int) -> User | None:
    result = await db.execute(select(User).where(User.telegram_id == telegram_id))
    return result.scalar_one_or_none()


async def get_user_by_referral_code(db: AsyncSession, referral_code: str) -> User | None:
    code = (referral_code or '').strip().upper()
    if not code:
        return None
    result = await db.execute(select(User).where(User.referral_code == code, User.deleted_at.is_(None)))
    return result.scalar_one_or_none()


async def referral_code_exists(db: AsyncSession, referral_code: str) -> bool:
    result = await db.execute(select(User.id).where(User.referral_code == referral_code))
    return result.scalar_one_or_none() is not None


async def create_user(
    db: AsyncSession,
    *,
    telegram_id: int,
    username: str | None = None,
    first_name: str | None = None,
    last_name: str | None = None,
    language: str = 'ru',
    is_admin: bool = False,
) -> User:
    now = datetime.now(UTC)
    referral_code = generate_referral_code()
    while await referral_code_exists(db, referral_code):
        referral_code = generate_referral_code()

    user = User(
        telegram_id=telegram_id,
        username=username,
        first_name=first_name,
        last_name=last_name,
        language=language,
        balance_kopeks=0,
        referral_code=referral_code,
        is_admin=is_admin,
        created_at=now,
        updated_at=now,
    )
    db.add(user)
    await db.flush()
    logger.info('Создан пользователь', user_id=user.id, telegram_id=telegram_id)
    return user


async def get_referrals(db: AsyncSession, user_id: int) -> list[User]:
    result = await db.execute(
        select(User).where(User.referred_by_id == user_id, User.deleted_at.is_(None)).order_by(User.created_at.desc())
    )
    return list(result.scalars().all())


async def mark_user_deleted(db: AsyncSession, user: User) -> User:
    user.deleted_at = datetime.now(UTC)
    await db.flush()
    return user


async def search_users(db: AsyncSession, query: str | None, *, limit: int = 10) -> list[User]:
    """Digits match the internal or Telegram id; anything else matches username and names."""
    text = (query or '').strip().lstrip('@')
    statement = select(User).where(User.deleted_at.is_(None))

    if text.isdigit():
        number = int(text)
        statement = statement.where(or_(User.id == number, User.telegram_id == number))
    elif text:
        pattern = f'%{text}%'
        statement = statement.where(
            or_(User.username.ilike(pattern), User.first_name.ilike(pattern), User.last_name.ilike(pattern))
        )

    result = await db.execute(statement.order_by(User.created_at.desc(), User.id.desc()).limit(max(1, limit)))
    return list(result.scalars().all())


async def get_reachable_users(db: AsyncSession) -> list[User]:
    result = await db.execute(
        select(User).where(User.deleted_at.is_(None), User.is_blocked.is_(False)).order_by(User.id)
    )
    return list(result.scalars().all())
