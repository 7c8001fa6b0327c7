from __future__ import annotations

from datetime import UTC, datetime
from uuid import uuid4

import structlog
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.database.crud import payment as payment_crud
from app.database.crud.activity_log import ActivityAction
from app.database.crud.user import get_user_by_id
from app.database.crud.user_notification import NotificationType, create_user_notification
from app.database.models import Payment, PaymentMethod, PaymentStatus, TransactionType
from app.services.activity_log_service import log_activity
from app.services.balance_service import credit, run_ledger_operation
from app.services.errors import (
    ConcurrencyConflictError,
    InvalidAmountError,
    InvalidTransitionError,
    PaymentNotFoundError,
    ServiceError,
    UserNotFoundError,
)
from app.utils.locks import ledger_locks, user_lock_key


logger = structlog.get_logger(__name__)

PAYMENT_METHOD_TITLES = {
    PaymentMethod.TELEGRAM_STARS: 'Telegram Stars',
    PaymentMethod.TRIBUTE: 'Tribute',
    PaymentMethod.YOOKASSA: 'ЮKassa',
    PaymentMethod.CRYPTOBOT: 'CryptoBot',
    PaymentMethod.MANUAL: 'Администратор',
}


def _now_utc() -> datetime:
    return datetime.now(UTC)


async def create_payment(
    db: AsyncSession,
    user_id: int,
    amount_kopeks: int,
    method: PaymentMethod | str,
    *,
    external_id: str | None = None,
    description: str | None = None,
    metadata: dict | None = None,
) -> Payment:
    if not isinstance(amount_kopeks, int) or amount_kopeks <= 0:
        raise InvalidAmountError()
    method = PaymentMethod(method)

    if await get_user_by_id(db, user_id) is None:
        raise UserNotFoundError()

    external_id = external_id or f'{method.value}_{uuid4().hex}'
    now = _now_utc()
    payment = Payment(
        user_id=user_id,
        amount_kopeks=amount_kopeks,
        currency='RUB',
        payment_method=method.value,
        status=PaymentStatus.PENDING.value,
        external_id=external_id,
        description=description or f'Пополнение баланса через {PAYMENT_METHOD_TITLES[method]}',
        payment_metadata=metadata or {},
        created_at=now,
        updated_at=now,
    )
    db.add(payment)
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        existing = await payment_crud.get_payment_by_external_id(db, external_id)
        if existing is not None and existing.user_id == user_id and existing.amount_kopeks == amount_kopeks:
            return existing
        raise ConcurrencyConflictError('Платёж с таким идентификатором уже существует.') from exc
    await db.refresh(payment)

    logger.info(
        'Создан платёж',
        payment_id=payment.id,
        user_id=user_id,
        amount_kopeks=amount_kopeks,
        method=method.value,
        external_id=payment.external_id,
    )
    return payment


async def update_payment_status(db: AsyncSession, payment_id: int, status: PaymentStatus | str) -> Payment:
    """Move a pending payment to a terminal status.

    Completing credits the ledger exactly once; repeating ``completed`` is a
    no-op and any other change of a terminal payment is rejected.
    """
    new_status = PaymentStatus(status)
    payment = await payment_crud.get_payment_by_id(db, payment_id)
    if payment is None:
        raise PaymentNotFoundError()

    if new_status == PaymentStatus.PENDING:
        raise InvalidTransitionError(payment.status, new_status.value)

    async with ledger_locks.acquire(user_lock_key(payment.user_id)):

        async def _operation() -> Payment:
            now = _now_utc()
            result = await db.execute(
                update(Payment)
                .where(Payment.id == payment_id, Payment.status == PaymentStatus.PENDING.value)
                .values(
                    status=new_status.value,
                    updated_at=now,
                    completed_at=now if new_status == PaymentStatus.COMPLETED else None,
                )
                .execution_options(synchronize_session=False)
            )
            if (result.rowcount or 0) != 1:
                await db.rollback()
                await db.refresh(payment)
                if payment.status == new_status.value == PaymentStatus.COMPLETED.value:
                    logger.info('Повторное подтверждение платежа проигнорировано', payment_id=payment_id)
                    return payment
                raise InvalidTransitionError(payment.status, new_status.value)

            if new_status == PaymentStatus.COMPLETED:
                try:
                    await credit(
                        db,
                        payment.user_id,
                        payment.amount_kopeks,
                        transaction_type=TransactionType.DEPOSIT,
                        description=payment.description,
                        payment_id=payment.id,
                        external_id=payment.external_id,
                    )
                except ServiceError:
                    await db.rollback()
                    raise
                await create_user_notification(
                    db,
                    user_id=payment.user_id,
                    notification_type=NotificationType.BALANCE_TOPUP,
                    title='Баланс пополнен',
                    body=f'Зачислено {payment.amount_kopeks / 100:.2f} ₽',
                    payload={'payment_id': payment.id},
                )
                await log_activity(
                    db,
                    payment.user_id,
                    ActivityAction.PAYMENT,
                    payment_id=payment.id,
                    amount_kopeks=payment.amount_kopeks,
                    method=payment.payment_method,
                )

            await db.commit()
            await db.refresh(payment)
            return payment

        try:
            payment = await run_ledger_operation(db, _operation)
        except IntegrityError as exc:
            # a deposit row for this payment already exists
            await db.rollback()
            raise ConcurrencyConflictError() from exc

    logger.info('Статус платежа обновлён', payment_id=payment.id, status=payment.status, user_id=payment.user_id)
    return payment


async def get_payment_by_external_id(db: AsyncSession, external_id: str) -> Payment | None:
    return await payment_crud.get_payment_by_external_id(db, external_id)


async def get_user_payments(db: AsyncSession, user_id: int, *, limit: int = 20, offset: int = 0) -> list[Payment]:
    return await payment_crud.get_user_payments(db, user_id, limit=limit, offset=offset)
