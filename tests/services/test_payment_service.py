import asyncio

import pytest

from app.database.crud.activity_log import ActivityAction
from app.database.crud.transaction import get_journal_sum, get_user_transactions
from app.database.crud.user_notification import NotificationType, get_user_notifications
from app.database.models import PaymentMethod, PaymentStatus, TransactionType
from app.services import payment_service
from app.services.activity_log_service import get_user_activity
from app.services.balance_service import get_balance
from app.services.errors import (
    ConcurrencyConflictError,
    InvalidAmountError,
    InvalidTransitionError,
    PaymentNotFoundError,
    UserNotFoundError,
)


async def test_completed_payment_credits_balance_once(db, user_factory):
    user_id = await user_factory()
    payment = await payment_service.create_payment(db, user_id, 50_000, PaymentMethod.YOOKASSA, external_id='yk-1')
    payment_id = payment.id

    assert payment.status == PaymentStatus.PENDING.value
    assert payment.description == 'Пополнение баланса через ЮKassa'
    assert await get_balance(db, user_id) == 0

    payment = await payment_service.update_payment_status(db, payment_id, PaymentStatus.COMPLETED)
    assert payment.status == PaymentStatus.COMPLETED.value
    assert payment.completed_at is not None

    again = await payment_service.update_payment_status(db, payment_id, 'completed')
    assert again.id == payment_id

    assert await get_balance(db, user_id) == 50_000
    rows, total = await get_user_transactions(db, user_id=user_id)
    assert total == 1
    assert rows[0].type == TransactionType.DEPOSIT.value
    assert rows[0].payment_id == payment_id
    assert rows[0].external_id == 'yk-1'
    assert await get_journal_sum(db, user_id) == 50_000

    notifications = await get_user_notifications(db, user_id=user_id)
    assert [item.notification_type for item in notifications] == [NotificationType.BALANCE_TOPUP.value]

    entries, total = await get_user_activity(db, user_id)
    assert total == 1
    assert entries[0].action == ActivityAction.PAYMENT.value
    assert entries[0].data == {'payment_id': payment_id, 'amount_kopeks': 50_000, 'method': PaymentMethod.YOOKASSA.value}


async def test_terminal_payment_cannot_change(db, user_factory):
    user_id = await user_factory()
    payment = await payment_service.create_payment(db, user_id, 10_000, PaymentMethod.CRYPTOBOT)
    payment_id = payment.id

    failed = await payment_service.update_payment_status(db, payment_id, PaymentStatus.FAILED)
    assert failed.status == PaymentStatus.FAILED.value
    assert failed.completed_at is None

    with pytest.raises(InvalidTransitionError) as exc:
        await payment_service.update_payment_status(db, payment_id, PaymentStatus.COMPLETED)

    assert exc.value.detail['current_status'] == PaymentStatus.FAILED.value
    assert await get_balance(db, user_id) == 0


async def test_payment_cannot_return_to_pending(db, user_factory):
    user_id = await user_factory()
    payment = await payment_service.create_payment(db, user_id, 10_000, PaymentMethod.TRIBUTE)

    with pytest.raises(InvalidTransitionError):
        await payment_service.update_payment_status(db, payment.id, PaymentStatus.PENDING)


async def test_concurrent_webhooks_credit_once(session_factory, user_factory):
    user_id = await user_factory()
    async with session_factory() as session:
        payment = await payment_service.create_payment(session, user_id, 7_500, PaymentMethod.TELEGRAM_STARS)
        payment_id = payment.id

    async def _complete():
        async with session_factory() as session:
            result = await payment_service.update_payment_status(session, payment_id, PaymentStatus.COMPLETED)
            return result.status

    statuses = await asyncio.gather(*(_complete() for _ in range(5)))

    assert statuses == [PaymentStatus.COMPLETED.value] * 5
    async with session_factory() as session:
        assert await get_balance(session, user_id) == 7_500
        _, total = await get_user_transactions(session, user_id=user_id)
        assert total == 1


async def test_create_payment_reuses_matching_external_id(db, user_factory):
    user_id = await user_factory()
    first = await payment_service.create_payment(db, user_id, 5_000, PaymentMethod.YOOKASSA, external_id='yk-dup')
    first_id = first.id

    second = await payment_service.create_payment(db, user_id, 5_000, PaymentMethod.YOOKASSA, external_id='yk-dup')
    assert second.id == first_id

    with pytest.raises(ConcurrencyConflictError):
        await payment_service.create_payment(db, user_id, 9_000, PaymentMethod.YOOKASSA, external_id='yk-dup')

    assert [item.id for item in await payment_service.get_user_payments(db, user_id)] == [first_id]
    assert (await payment_service.get_payment_by_external_id(db, 'yk-dup')).id == first_id


async def test_create_payment_validation(db, user_factory):
    user_id = await user_factory()

    with pytest.raises(InvalidAmountError):
        await payment_service.create_payment(db, user_id, 0, PaymentMethod.MANUAL)
    with pytest.raises(UserNotFoundError):
        await payment_service.create_payment(db, 424242, 100, PaymentMethod.MANUAL)
    with pytest.raises(ValueError):
        await payment_service.create_payment(db, user_id, 100, 'paypal')


async def test_unknown_payment(db):
    with pytest.raises(PaymentNotFoundError):
        await payment_service.update_payment_status(db, 777, PaymentStatus.COMPLETED)
