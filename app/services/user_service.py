from __future__ import annotations

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database.crud import user as user_crud
from app.database.crud.activity_log import ActivityAction
from app.database.crud.user import create_user, get_user_by_id, get_user_by_telegram_id, mark_user_deleted
from app.database.models import PaymentMethod, PaymentStatus, TransactionType, User
from app.services import payment_service
from app.services.activity_log_service import log_activity
from app.services.balance_service import debit, get_balance, run_ledger_operation
from app.services.errors import InvalidAmountError, UserNotFoundError
from app.utils.locks import ledger_locks, user_lock_key


logger = structlog.get_logger(__name__)


def is_admin_telegram_id(telegram_id: int) -> bool:
    return telegram_id in settings.ADMIN_TELEGRAM_IDS


def is_admin(user: User | None) -> bool:
    if user is None:
        return False
    return bool(user.is_admin) or is_admin_telegram_id(user.telegram_id)


async def get_or_create_user(
    db: AsyncSession,
    *,
    telegram_id: int,
    username: str | None = None,
    first_name: str | None = None,
    last_name: str | None = None,
    language: str | None = None,
) -> tuple[User, bool]:
    """Return the user for ``telegram_id``, creating it on first contact.

    Profile fields are refreshed from Telegram on every call. The boolean is
    True only for the call that inserted the row.
    """
    user = await get_user_by_telegram_id(db, telegram_id)
    if user is not None:
        changed = False
        for field, value in (('username', username), ('first_name', first_name), ('last_name', last_name)):
            if value is not None and getattr(user, field) != value:
                setattr(user, field, value)
                changed = True
        admin_flag = is_admin_telegram_id(telegram_id)
        if admin_flag and not user.is_admin:
            user.is_admin = True
            changed = True
        if changed:
            await db.commit()
            await db.refresh(user)
        return user, False

    try:
        user = await create_user(
            db,
            telegram_id=telegram_id,
            username=username,
            first_name=first_name,
            last_name=last_name,
            language=language or 'ru',
            is_admin=is_admin_telegram_id(telegram_id),
        )
        await db.commit()
    except IntegrityError:
        # a concurrent update created the same telegram_id first
        await db.rollback()
        user = await get_user_by_telegram_id(db, telegram_id)
        if user is None:
            raise
        return user, False

    await db.refresh(user)
    return user, True


async def get_user(db: AsyncSession, user_id: int) -> User:
    user = await get_user_by_id(db, user_id)
    if user is None:
        raise UserNotFoundError()
    return user


async def set_user_blocked(db: AsyncSession, user_id: int, blocked: bool, *, admin_id: int | None = None) -> User:
    user = await get_user(db, user_id)
    if bool(user.is_blocked) != blocked:
        user.is_blocked = blocked
        await log_activity(
            db,
            user_id,
            ActivityAction.ADMIN_ACTION,
            action='block' if blocked else 'unblock',
            admin_id=admin_id,
        )
        await db.commit()
        await db.refresh(user)
        logger.info('Статус блокировки пользователя изменён', user_id=user_id, blocked=blocked, admin_id=admin_id)
    return user


async def delete_user(db: AsyncSession, user_id: int, *, admin_id: int | None = None) -> User:
    """Soft delete: the row stays for the journal, ledger operations treat it as missing."""
    user = await get_user(db, user_id)
    await mark_user_deleted(db, user)
    await log_activity(db, user_id, ActivityAction.ADMIN_ACTION, action='delete', admin_id=admin_id)
    await db.commit()
    await db.refresh(user)
    logger.info('Пользователь удалён', user_id=user_id, admin_id=admin_id)
    return user


async def adjust_balance(
    db: AsyncSession,
    user_id: int,
    amount_kopeks: int,
    *,
    admin_id: int | None = None,
) -> int:
    """Add (positive) or withdraw (negative) funds on behalf of an administrator.

    Top-ups go through a completed manual payment so they land in the
    payment history like any other deposit. Returns the new balance.
    """
    if not isinstance(amount_kopeks, int) or amount_kopeks == 0:
        raise InvalidAmountError('Сумма корректировки не может быть нулевой.')

    await get_user(db, user_id)

    if amount_kopeks > 0:
        payment = await payment_service.create_payment(
            db,
            user_id,
            amount_kopeks,
            PaymentMethod.MANUAL,
            description='Пополнение администратором',
            metadata={'admin_id': admin_id},
        )
        await payment_service.update_payment_status(db, payment.id, PaymentStatus.COMPLETED)
        await log_activity(
            db,
            user_id,
            ActivityAction.ADMIN_ACTION,
            action='balance',
            amount_kopeks=amount_kopeks,
            admin_id=admin_id,
            payment_id=payment.id,
        )
        await db.commit()
        new_balance = await get_balance(db, user_id)
    else:
        async with ledger_locks.acquire(user_lock_key(user_id)):

            async def _operation() -> int:
                balance = await debit(
                    db,
                    user_id,
                    -amount_kopeks,
                    transaction_type=TransactionType.ADMIN_ADJUSTMENT,
                    description='Списание администратором',
                )
                await log_activity(
                    db,
                    user_id,
                    ActivityAction.ADMIN_ACTION,
                    action='balance',
                    amount_kopeks=amount_kopeks,
                    admin_id=admin_id,
                )
                await db.commit()
                return balance

            new_balance = await run_ledger_operation(db, _operation)

    logger.info('Баланс скорректирован администратором', user_id=user_id, amount_kopeks=amount_kopeks, admin_id=admin_id)
    return new_balance


async def search_users(db: AsyncSession, query: str | None, *, limit: int = 10) -> list[User]:
    return await user_crud.search_users(db, query, limit=limit)
