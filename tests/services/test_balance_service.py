import asyncio
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database.crud.transaction import get_journal_sum, get_user_transactions
from app.database.crud.user import get_user_by_id
from app.database.models import TransactionType
from app.services import balance_service
from app.services.errors import (
    ConcurrencyConflictError,
    InsufficientBalanceError,
    InvalidAmountError,
    UserNotFoundError,
)
from app.services.user_service import delete_user


async def test_credit_then_debit_updates_balance_and_journal(db, user_factory):
    user_id = await user_factory()

    assert await balance_service.credit_balance(db, user_id, 10_000) == 10_000
    assert await balance_service.debit_balance(db, user_id, 2_500, description='Подписка') == 7_500

    assert await balance_service.get_balance(db, user_id) == 7_500
    rows, total = await get_user_transactions(db, user_id=user_id)
    assert total == 2
    assert sorted(row.amount_kopeks for row in rows) == [-2_500, 10_000]
    assert {row.type for row in rows} == {
        TransactionType.DEPOSIT.value,
        TransactionType.SUBSCRIPTION_PAYMENT.value,
    }
    assert await get_journal_sum(db, user_id) == 7_500


async def test_debit_rejects_overdraft_without_side_effects(db, user_factory):
    user_id = await user_factory(balance_kopeks=1_000)

    with pytest.raises(InsufficientBalanceError) as exc:
        await balance_service.debit_balance(db, user_id, 1_500)

    assert exc.value.status_code == 402
    assert exc.value.detail['shortfall_kopeks'] == 500
    assert exc.value.detail['balance_kopeks'] == 1_000
    assert await balance_service.get_balance(db, user_id) == 1_000
    _, total = await get_user_transactions(db, user_id=user_id)
    assert total == 1


async def test_debit_of_exact_balance_leaves_zero(db, user_factory):
    user_id = await user_factory(balance_kopeks=3_000)

    assert await balance_service.debit_balance(db, user_id, 3_000) == 0
    assert await get_journal_sum(db, user_id) == 0


@pytest.mark.parametrize('amount', [0, -100, True])
async def test_non_positive_amounts_are_rejected(db, user_factory, amount):
    user_id = await user_factory(balance_kopeks=500)

    with pytest.raises(InvalidAmountError):
        await balance_service.credit_balance(db, user_id, amount)
    with pytest.raises(InvalidAmountError):
        await balance_service.debit_balance(db, user_id, amount)

    assert await balance_service.get_balance(db, user_id) == 500


async def test_unknown_and_deleted_users_are_not_found(db, user_factory):
    with pytest.raises(UserNotFoundError):
        await balance_service.credit_balance(db, 987_654, 100)

    user_id = await user_factory(balance_kopeks=100)
    await delete_user(db, user_id)

    with pytest.raises(UserNotFoundError):
        await balance_service.get_balance(db, user_id)
    with pytest.raises(UserNotFoundError):
        await balance_service.credit_balance(db, user_id, 100)


async def test_loaded_user_sees_new_balance_without_refresh(db, user_factory):
    user_id = await user_factory(balance_kopeks=1_000)
    user = await get_user_by_id(db, user_id)

    await balance_service.credit_balance(db, user_id, 250)

    assert user.balance_kopeks == 1_250


async def test_concurrent_debits_never_overdraw(session_factory, user_factory):
    user_id = await user_factory(balance_kopeks=10_000)

    async def _debit():
        async with session_factory() as session:
            return await balance_service.debit_balance(session, user_id, 2_000)

    results = await asyncio.gather(*(_debit() for _ in range(8)), return_exceptions=True)

    succeeded = [item for item in results if isinstance(item, int)]
    rejected = [item for item in results if isinstance(item, InsufficientBalanceError)]
    assert len(succeeded) == 5
    assert len(rejected) == 3

    async with session_factory() as session:
        assert await balance_service.get_balance(session, user_id) == 0
        assert await get_journal_sum(session, user_id) == 0


async def test_concurrent_credits_and_debits_keep_journal_in_step(session_factory, user_factory):
    user_id = await user_factory(balance_kopeks=5_000)

    async def _credit():
        async with session_factory() as session:
            await balance_service.credit_balance(session, user_id, 300)

    async def _debit():
        async with session_factory() as session:
            await balance_service.debit_balance(session, user_id, 200)

    await asyncio.gather(*[_credit() for _ in range(10)], *[_debit() for _ in range(10)])

    async with session_factory() as session:
        balance = await balance_service.get_balance(session, user_id)
        assert balance == 5_000 + 10 * 300 - 10 * 200
        assert await get_journal_sum(session, user_id) == balance


async def test_ledger_operation_gives_up_after_transient_failures(monkeypatch):
    monkeypatch.setattr(settings, 'LEDGER_RETRY_ATTEMPTS', 2)
    db = AsyncMock(spec=AsyncSession)
    operation = AsyncMock(side_effect=OperationalError('UPDATE users', {}, Exception('database is locked')))

    with pytest.raises(ConcurrencyConflictError) as exc:
        await balance_service.run_ledger_operation(db, operation)

    assert exc.value.status_code == 409
    assert operation.await_count == 2
    assert db.rollback.await_count == 2


async def test_ledger_operation_recovers_after_one_transient_failure():
    db = AsyncMock(spec=AsyncSession)
    operation = AsyncMock(side_effect=[OperationalError('UPDATE users', {}, Exception('database is locked')), 42])

    assert await balance_service.run_ledger_operation(db, operation) == 42
    assert operation.await_count == 2
