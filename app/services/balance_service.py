from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import TypeVar

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.util import identity_key
from sqlalchemy.orm.attributes import set_committed_value

from app.config import settings
from app.database.crud.transaction import create_transaction
from app.database.models import TransactionType, User
from app.services.errors import (
    ConcurrencyConflictError,
    InsufficientBalanceError,
    InvalidAmountError,
    ServiceError,
    UserNotFoundError,
)
from app.utils.locks import ledger_locks, user_lock_key
from app.utils.retry import retry_async


logger = structlog.get_logger(__name__)

T = TypeVar('T')


def _now_utc() -> datetime:
    return datetime.now(UTC)


def _validate_amount(amount_kopeks: int) -> None:
    if not isinstance(amount_kopeks, int) or isinstance(amount_kopeks, bool) or amount_kopeks <= 0:
        raise InvalidAmountError()


async def _read_balance(db: AsyncSession, user_id: int) -> int | None:
    result = await db.execute(
        select(User.balance_kopeks).where(User.id == user_id, User.deleted_at.is_(None))
    )
    return result.scalar_one_or_none()


def _sync_cached_balance(db: AsyncSession, user_id: int, balance_kopeks: int) -> None:
    # The conditional UPDATE bypasses the ORM; keep an already loaded User in step.
    cached = db.identity_map.get(identity_key(User, user_id))
    if cached is not None:
        set_committed_value(cached, 'balance_kopeks', balance_kopeks)


async def get_balance(db: AsyncSession, user_id: int) -> int:
    balance = await _read_balance(db, user_id)
    if balance is None:
        raise UserNotFoundError()
    return balance


async def credit(
    db: AsyncSession,
    user_id: int,
    amount_kopeks: int,
    *,
    transaction_type: TransactionType = TransactionType.DEPOSIT,
    description: str | None = None,
    payment_id: int | None = None,
    external_id: str | None = None,
) -> int:
    """Add funds inside the caller's transaction and journal the mutation.

    Does not commit. Returns the balance after the credit.
    """
    _validate_amount(amount_kopeks)

    result = await db.execute(
        update(User)
        .where(User.id == user_id, User.deleted_at.is_(None))
        .values(balance_kopeks=User.balance_kopeks + amount_kopeks, updated_at=_now_utc())
        .execution_options(synchronize_session=False)
    )
    if (result.rowcount or 0) != 1:
        raise UserNotFoundError()

    await create_transaction(
        db,
        user_id=user_id,
        transaction_type=transaction_type,
        amount_kopeks=amount_kopeks,
        description=description,
        payment_id=payment_id,
        external_id=external_id,
    )

    new_balance = await get_balance(db, user_id)
    _sync_cached_balance(db, user_id, new_balance)
    logger.info(
        'Баланс пополнен',
        user_id=user_id,
        amount_kopeks=amount_kopeks,
        balance_kopeks=new_balance,
        transaction_type=transaction_type.value,
    )
    return new_balance


async def debit(
    db: AsyncSession,
    user_id: int,
    amount_kopeks: int,
    *,
    transaction_type: TransactionType = TransactionType.SUBSCRIPTION_PAYMENT,
    description: str | None = None,
) -> int:
    """Withdraw funds inside the caller's transaction; never partial, never below zero.

    Does not commit. Returns the balance after the debit.
    """
    _validate_amount(amount_kopeks)

    result = await db.execute(
        update(User)
        .where(
            User.id == user_id,
            User.deleted_at.is_(None),
            User.balance_kopeks >= amount_kopeks,
        )
        .values(balance_kopeks=User.balance_kopeks - amount_kopeks, updated_at=_now_utc())
        .execution_options(synchronize_session=False)
    )
    if (result.rowcount or 0) != 1:
        balance = await get_balance(db, user_id)
        logger.info(
            'Недостаточно средств для списания',
            user_id=user_id,
            amount_kopeks=amount_kopeks,
            balance_kopeks=balance,
        )
        raise InsufficientBalanceError(balance_kopeks=balance, required_kopeks=amount_kopeks)

    await create_transaction(
        db,
        user_id=user_id,
        transaction_type=transaction_type,
        amount_kopeks=-amount_kopeks,
        description=description,
    )

    new_balance = await get_balance(db, user_id)
    _sync_cached_balance(db, user_id, new_balance)
    logger.info(
        'Списание с баланса',
        user_id=user_id,
        amount_kopeks=amount_kopeks,
        balance_kopeks=new_balance,
        transaction_type=transaction_type.value,
    )
    return new_balance


async def run_ledger_operation(db: AsyncSession, operation: Callable[[], Awaitable[T]]) -> T:
    """Run a committing operation, retrying transient database conflicts.

    Domain errors roll the session back and propagate unchanged. Raises
    ConcurrencyConflictError once the retry attempts are exhausted.
    """
    try:
        return await retry_async(
            operation,
            retries=max(0, settings.LEDGER_RETRY_ATTEMPTS - 1),
            before_retry=db.rollback,
        )
    except ServiceError:
        await db.rollback()
        raise
    except OperationalError as exc:
        await db.rollback()
        logger.warning('Конфликт при изменении баланса', error=str(exc.orig or exc))
        raise ConcurrencyConflictError() from exc


async def credit_balance(
    db: AsyncSession,
    user_id: int,
    amount_kopeks: int,
    *,
    transaction_type: TransactionType = TransactionType.DEPOSIT,
    description: str | None = None,
) -> int:
    async with ledger_locks.acquire(user_lock_key(user_id)):

        async def _operation() -> int:
            new_balance = await credit(
                db,
                user_id,
                amount_kopeks,
                transaction_type=transaction_type,
                description=description,
            )
            await db.commit()
            return new_balance

        return await run_ledger_operation(db, _operation)


async def debit_balance(
    db: AsyncSession,
    user_id: int,
    amount_kopeks: int,
    *,
    transaction_type: TransactionType = TransactionType.SUBSCRIPTION_PAYMENT,
    description: str | None = None,
) -> int:
    async with ledger_locks.acquire(user_lock_key(user_id)):

        async def _operation() -> int:
            new_balance = await debit(
                db,
                user_id,
                amount_kopeks,
                transaction_type=transaction_type,
                description=description,
            )
            await db.commit()
            return new_balance

        return await run_ledger_operation(db, _operation)
