from __future__ import annotations

import structlog
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from app.config import settings
from app.database.crud.activity_log import ActivityAction
from app.database.crud.user import get_referrals as get_referred_users
from app.database.crud.user import get_user_by_referral_code
from app.database.crud.user_notification import NotificationType, create_user_notification
from app.database.models import TransactionType, User
from app.services.activity_log_service import log_activity
from app.services.balance_service import credit
from app.services.errors import ServiceError
from app.utils.locks import ledger_locks, user_lock_key


logger = structlog.get_logger(__name__)


async def link_referral(db: AsyncSession, new_user: User, referral_code: str | None) -> bool:
    """Attach ``new_user`` to the owner of ``referral_code`` and pay the bonus once.

    Unknown codes, self-referral and already linked users are ignored and
    return False.
    """
    if not settings.REFERRAL_ENABLED or not referral_code:
        return False

    referrer = await get_user_by_referral_code(db, referral_code)
    if referrer is None:
        logger.info('Реферальный код не найден', user_id=new_user.id, referral_code=referral_code)
        return False
    if referrer.id == new_user.id:
        logger.info('Попытка пригласить самого себя', user_id=new_user.id)
        return False
    if new_user.referred_by_id is not None:
        return False

    async with ledger_locks.acquire_many(user_lock_key(new_user.id), user_lock_key(referrer.id)):
        result = await db.execute(
            update(User)
            .where(User.id == new_user.id, User.referred_by_id.is_(None), User.id != referrer.id)
            .values(referred_by_id=referrer.id)
            .execution_options(synchronize_session=False)
        )
        if (result.rowcount or 0) != 1:
            await db.rollback()
            await db.refresh(new_user)
            return False

        referrer_bonus = settings.REFERRAL_REFERRER_BONUS_KOPEKS
        referred_bonus = settings.REFERRAL_REFERRED_BONUS_KOPEKS
        try:
            if referrer_bonus > 0:
                await credit(
                    db,
                    referrer.id,
                    referrer_bonus,
                    transaction_type=TransactionType.REFERRAL_REWARD,
                    description=f'Бонус за приглашение пользователя {new_user.display_name}',
                )
                await create_user_notification(
                    db,
                    user_id=referrer.id,
                    notification_type=NotificationType.REFERRAL_REWARD,
                    title='Новый реферал',
                    body=f'На баланс зачислено {referrer_bonus / 100:.2f} ₽',
                    payload={'referred_user_id': new_user.id},
                )
            if referred_bonus > 0:
                await credit(
                    db,
                    new_user.id,
                    referred_bonus,
                    transaction_type=TransactionType.REFERRAL_REWARD,
                    description='Бонус за регистрацию по приглашению',
                )
            await log_activity(
                db,
                referrer.id,
                ActivityAction.REFERRAL,
                referred_user_id=new_user.id,
                bonus_kopeks=referrer_bonus,
            )
            await db.commit()
        except (ServiceError, SQLAlchemyError):
            await db.rollback()
            raise

    set_committed_value(new_user, 'referred_by_id', referrer.id)
    logger.info(
        'Реферал привязан',
        user_id=new_user.id,
        referrer_id=referrer.id,
        referrer_bonus_kopeks=referrer_bonus,
        referred_bonus_kopeks=referred_bonus,
    )
    return True


async def get_referrals(db: AsyncSession, user_id: int) -> list[User]:
    return await get_referred_users(db, user_id)
