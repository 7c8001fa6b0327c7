from types import SimpleNamespace

import pytest

from app.config import settings
from app.database.crud.activity_log import ActivityAction
from app.database.crud.transaction import get_journal_sum, get_user_transactions
from app.database.crud.user import get_user_by_id
from app.database.models import PaymentMethod, PaymentStatus, TransactionType
from app.services import user_service
from app.services.activity_log_service import get_user_activity
from app.services.balance_service import get_balance
from app.services.errors import InsufficientBalanceError, InvalidAmountError, UserNotFoundError
from app.services.payment_service import get_user_payments


async def test_get_or_create_user_creates_once_and_refreshes_profile(db):
    user, created = await user_service.get_or_create_user(
        db,
        telegram_id=555,
        username='alice',
        first_name='Alice',
        language='en',
    )
    assert created is True
    assert user.balance_kopeks == 0
    assert user.language == 'en'
    assert len(user.referral_code) == 8
    assert user.referral_code == user.referral_code.upper()

    same, created = await user_service.get_or_create_user(db, telegram_id=555, username='alice_new')
    assert created is False
    assert same.id == user.id
    assert same.username == 'alice_new'
    assert same.first_name == 'Alice'


async def test_admin_ids_from_settings(db, monkeypatch):
    monkeypatch.setattr(settings, 'ADMIN_TELEGRAM_IDS', [900])

    admin, _ = await user_service.get_or_create_user(db, telegram_id=900)
    regular, _ = await user_service.get_or_create_user(db, telegram_id=901)

    assert admin.is_admin is True
    assert user_service.is_admin(admin) is True
    assert user_service.is_admin(regular) is False
    assert user_service.is_admin(None) is False
    assert user_service.is_admin(SimpleNamespace(is_admin=False, telegram_id=900)) is True


async def test_block_and_delete_user(db, user_factory):
    user_id = await user_factory()

    blocked = await user_service.set_user_blocked(db, user_id, True)
    assert blocked.is_blocked is True
    unblocked = await user_service.set_user_blocked(db, user_id, False)
    assert unblocked.is_blocked is False

    deleted = await user_service.delete_user(db, user_id)
    assert deleted.is_deleted is True
    assert await get_user_by_id(db, user_id) is None
    assert (await get_user_by_id(db, user_id, include_deleted=True)).id == user_id


async def test_block_and_delete_are_written_to_activity_log(db, user_factory):
    admin_id = await user_factory()
    user_id = await user_factory()

    await user_service.set_user_blocked(db, user_id, True, admin_id=admin_id)
    await user_service.set_user_blocked(db, user_id, True, admin_id=admin_id)
    await user_service.delete_user(db, user_id, admin_id=admin_id)

    entries, total = await get_user_activity(db, user_id)
    assert total == 2
    assert [entry.data for entry in reversed(entries)] == [
        {'action': 'block', 'admin_id': admin_id},
        {'action': 'delete', 'admin_id': admin_id},
    ]
    assert {entry.action for entry in entries} == {ActivityAction.ADMIN_ACTION.value}


async def test_unknown_user_cannot_be_blocked(db):
    with pytest.raises(UserNotFoundError):
        await user_service.set_user_blocked(db, 404, True)


async def test_search_users(db, user_factory):
    alice_id = await user_factory(username='alice_vpn', first_name='Alice')
    await user_factory(username='bob', last_name='Alison')
    deleted_id = await user_factory(username='alien')
    await user_service.delete_user(db, deleted_id)
    alice = await get_user_by_id(db, alice_id)

    by_name = await user_service.search_users(db, 'ali')
    assert {user.username for user in by_name} == {'alice_vpn', 'bob'}

    assert [user.id for user in await user_service.search_users(db, '@alice_vpn')] == [alice_id]
    assert [user.id for user in await user_service.search_users(db, str(alice.telegram_id))] == [alice_id]
    assert [user.id for user in await user_service.search_users(db, str(alice_id))] == [alice_id]
    assert len(await user_service.search_users(db, '', limit=2)) == 2
    assert await user_service.search_users(db, 'nobody') == []


async def test_admin_top_up_goes_through_completed_manual_payment(db, user_factory):
    admin_id = await user_factory()
    user_id = await user_factory(balance_kopeks=1_000)

    balance = await user_service.adjust_balance(db, user_id, 4_000, admin_id=admin_id)

    assert balance == 5_000
    payments = await get_user_payments(db, user_id)
    assert [(item.payment_method, item.status) for item in payments] == [
        (PaymentMethod.MANUAL.value, PaymentStatus.COMPLETED.value)
    ]
    entries, _ = await get_user_activity(db, user_id)
    assert [entry.action for entry in entries] == [ActivityAction.ADMIN_ACTION.value, ActivityAction.PAYMENT.value]


async def test_admin_withdrawal_is_journaled_and_never_overdraws(db, user_factory):
    user_id = await user_factory(balance_kopeks=3_000)

    assert await user_service.adjust_balance(db, user_id, -2_000) == 1_000
    with pytest.raises(InsufficientBalanceError):
        await user_service.adjust_balance(db, user_id, -2_000)

    assert await get_balance(db, user_id) == 1_000
    assert await get_journal_sum(db, user_id) == 1_000
    rows, _ = await get_user_transactions(db, user_id=user_id)
    assert [row.amount_kopeks for row in rows if row.type == TransactionType.ADMIN_ADJUSTMENT.value] == [-2_000]


async def test_zero_adjustment_is_rejected(db, user_factory):
    user_id = await user_factory()

    with pytest.raises(InvalidAmountError):
        await user_service.adjust_balance(db, user_id, 0)
