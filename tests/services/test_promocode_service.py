import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.exc import OperationalError

from app.database.crud.activity_log import ActivityAction
from app.database.crud.promocode import get_promocode_by_code, get_promocode_use
from app.database.crud.subscription import get_subscription_by_id
from app.database.crud.transaction import get_user_transactions
from app.database.crud.user import get_user_by_id
from app.database.models import PromoCode, PromoCodeType, TransactionType
from app.services import promocode_service
from app.services.activity_log_service import get_user_activity
from app.services.balance_service import get_balance
from app.services.errors import (
    AlreadyRedeemedError,
    CodeExpiredOrInactiveError,
    CodeNotFoundError,
    ConcurrencyConflictError,
    InvalidPromoCodeError,
    PromoCodeExistsError,
    ProvisioningFailedError,
    UserNotFoundError,
)
from app.services.subscription_service import get_active_subscriptions


async def test_bonus50_credits_balance_once(db, user_factory):
    user_id = await user_factory(balance_kopeks=1_000)
    await promocode_service.create_promocode(db, code='BONUS50', promo_type=PromoCodeType.DISCOUNT_AMOUNT, value=5_000)

    promocode = await promocode_service.redeem_promocode(db, user_id, ' bonus50 ')

    assert promocode.used_count == 1
    assert await get_balance(db, user_id) == 6_000
    rows, _ = await get_user_transactions(db, user_id=user_id)
    assert [row.amount_kopeks for row in rows if row.type == TransactionType.PROMO_BONUS.value] == [5_000]

    with pytest.raises(AlreadyRedeemedError) as exc:
        await promocode_service.redeem_promocode(db, user_id, 'BONUS50')

    assert exc.value.detail['error_code'] == 'PROMOCODE_ALREADY_REDEEMED'
    assert await get_balance(db, user_id) == 6_000


async def test_unknown_code(db, user_factory):
    user_id = await user_factory()

    with pytest.raises(CodeNotFoundError):
        await promocode_service.redeem_promocode(db, user_id, 'NOPE')
    with pytest.raises(CodeNotFoundError):
        await promocode_service.redeem_promocode(db, user_id, '   ')


async def test_unknown_user(db):
    await promocode_service.create_promocode(db, code='GHOST', promo_type='discount_amount', value=100)

    with pytest.raises(UserNotFoundError):
        await promocode_service.redeem_promocode(db, 31337, 'GHOST')


async def test_expired_and_deactivated_codes_are_rejected(db, user_factory):
    user_id = await user_factory()
    now = datetime.now(UTC)
    await promocode_service.create_promocode(
        db,
        code='OLD',
        promo_type=PromoCodeType.DISCOUNT_AMOUNT,
        value=100,
        valid_from=now - timedelta(days=2),
        valid_until=now - timedelta(days=1),
    )
    await promocode_service.create_promocode(
        db,
        code='SOON',
        promo_type=PromoCodeType.DISCOUNT_AMOUNT,
        value=100,
        valid_from=now + timedelta(days=1),
    )
    disabled = await promocode_service.create_promocode(db, code='OFF', promo_type=PromoCodeType.DISCOUNT_AMOUNT, value=100)
    await promocode_service.deactivate_promocode(db, disabled.id)

    for code in ('OLD', 'SOON', 'OFF'):
        with pytest.raises(CodeExpiredOrInactiveError):
            await promocode_service.redeem_promocode(db, user_id, code)

    assert await get_balance(db, user_id) == 0


async def test_single_use_code_race_has_one_winner(session_factory, user_factory):
    user_ids = [await user_factory() for _ in range(5)]
    async with session_factory() as session:
        await promocode_service.create_promocode(
            session,
            code='ONLYONE',
            promo_type=PromoCodeType.DISCOUNT_AMOUNT,
            value=1_000,
            max_uses=1,
        )

    async def _redeem(user_id):
        async with session_factory() as session:
            return await promocode_service.redeem_promocode(session, user_id, 'ONLYONE')

    results = await asyncio.gather(*(_redeem(user_id) for user_id in user_ids), return_exceptions=True)

    winners = [item for item in results if isinstance(item, PromoCode)]
    losers = [item for item in results if isinstance(item, CodeExpiredOrInactiveError)]
    assert len(winners) == 1
    assert len(losers) == 4

    async with session_factory() as session:
        promocode = await get_promocode_by_code(session, 'ONLYONE')
        assert promocode.used_count == 1
        balances = [await get_balance(session, user_id) for user_id in user_ids]
        assert sorted(balances) == [0, 0, 0, 0, 1_000]


async def test_percent_code_keeps_the_larger_pending_discount(session_factory, user_factory):
    user_id = await user_factory()
    async with session_factory() as session:
        await promocode_service.create_promocode(session, code='SALE15', promo_type='discount_percent', value=15)
        await promocode_service.create_promocode(session, code='SALE10', promo_type='discount_percent', value=10)
        await promocode_service.redeem_promocode(session, user_id, 'SALE15')
        await promocode_service.redeem_promocode(session, user_id, 'SALE10')

    async with session_factory() as session:
        user = await get_user_by_id(session, user_id)
        assert user.promo_discount_percent == 15
        assert user.balance_kopeks == 0


async def test_bonus_days_extend_active_paid_subscription(db, user_factory, subscription_factory, remnawave):
    user_id = await user_factory()
    subscription_id = await subscription_factory(user_id, expires_in=timedelta(days=10))
    previous = (await get_subscription_by_id(db, subscription_id)).expires_at
    await promocode_service.create_promocode(db, code='WEEK', promo_type=PromoCodeType.BONUS_DAYS, value=7)

    await promocode_service.redeem_promocode(db, user_id, 'WEEK')

    subscription = await get_subscription_by_id(db, subscription_id)
    await db.refresh(subscription)
    assert subscription.expires_at == previous + timedelta(days=7)
    assert remnawave.updated == [('rw-existing', {'expires_at': previous + timedelta(days=7)})]
    assert remnawave.created == []


async def test_bonus_days_without_subscription_open_a_new_one(db, user_factory, remnawave):
    user_id = await user_factory()
    await promocode_service.create_promocode(db, code='WELCOME', promo_type=PromoCodeType.BONUS_DAYS, value=3)

    await promocode_service.redeem_promocode(db, user_id, 'WELCOME')

    subscriptions = await get_active_subscriptions(db, user_id)
    assert len(subscriptions) == 1
    assert subscriptions[0].is_trial is False
    assert subscriptions[0].price_kopeks == 0
    assert subscriptions[0].remnawave_subscription_id == remnawave.created[0].id


async def test_bonus_days_remote_failure_does_not_consume_code(db, user_factory, subscription_factory, remnawave):
    user_id = await user_factory()
    await subscription_factory(user_id)
    promocode = await promocode_service.create_promocode(db, code='LATER', promo_type=PromoCodeType.BONUS_DAYS, value=5)
    promocode_id = promocode.id
    remnawave.fail_update = True

    with pytest.raises(ProvisioningFailedError):
        await promocode_service.redeem_promocode(db, user_id, 'LATER')

    assert await get_promocode_use(db, promocode_id=promocode_id, user_id=user_id) is None
    assert (await get_promocode_by_code(db, 'LATER')).used_count == 0

    remnawave.fail_update = False
    redeemed = await promocode_service.redeem_promocode(db, user_id, 'LATER')
    assert redeemed.used_count == 1


async def test_bonus_days_remote_extension_is_reverted_when_commit_fails(
    db, user_factory, subscription_factory, remnawave, monkeypatch
):
    user_id = await user_factory()
    subscription_id = await subscription_factory(user_id)
    previous = (await get_subscription_by_id(db, subscription_id)).expires_at
    await promocode_service.create_promocode(db, code='BROKEN', promo_type=PromoCodeType.BONUS_DAYS, value=5)
    monkeypatch.setattr(
        promocode_service,
        'create_user_notification',
        AsyncMock(side_effect=OperationalError('INSERT INTO user_notifications', {}, Exception('database is locked'))),
    )

    with pytest.raises(ConcurrencyConflictError):
        await promocode_service.redeem_promocode(db, user_id, 'BROKEN')

    assert [data['expires_at'] for _, data in remnawave.updated] == [previous + timedelta(days=5), previous]
    assert (await get_promocode_by_code(db, 'BROKEN')).used_count == 0


async def test_create_promocode_normalizes_and_rejects_duplicates(db):
    promocode = await promocode_service.create_promocode(
        db,
        code='  spring24 ',
        promo_type=PromoCodeType.DISCOUNT_PERCENT,
        value=20,
        max_uses=100,
    )

    assert promocode.code == 'SPRING24'
    assert promocode.uses_left == 100
    with pytest.raises(PromoCodeExistsError):
        await promocode_service.create_promocode(db, code='Spring24', promo_type=PromoCodeType.DISCOUNT_PERCENT, value=5)


@pytest.mark.parametrize(
    ('code', 'promo_type', 'value', 'max_uses'),
    [
        ('AB', 'discount_amount', 100, 0),
        ('BAD-CODE', 'discount_amount', 100, 0),
        ('ZERO', 'discount_amount', 0, 0),
        ('TOOMUCH', 'discount_percent', 150, 0),
        ('NEGATIVE', 'bonus_days', 3, -1),
        ('WHAT', 'free_money', 100, 0),
    ],
)
async def test_create_promocode_validation(db, code, promo_type, value, max_uses):
    with pytest.raises(InvalidPromoCodeError):
        await promocode_service.create_promocode(db, code=code, promo_type=promo_type, value=value, max_uses=max_uses)


async def test_generate_promocode_uses_prefix_and_length(db):
    promocode = await promocode_service.generate_promocode(
        db,
        promo_type=PromoCodeType.DISCOUNT_AMOUNT,
        value=1_000,
        length=10,
        prefix='vip',
        max_uses=5,
    )

    assert promocode.code.startswith('VIP')
    assert len(promocode.code) == 10
    assert promocode.max_uses == 5


async def test_valid_promocodes_exclude_inactive_and_exhausted(db, user_factory):
    user_id = await user_factory()
    await promocode_service.create_promocode(db, code='LIVE', promo_type=PromoCodeType.DISCOUNT_AMOUNT, value=100)
    off = await promocode_service.create_promocode(db, code='DEAD', promo_type=PromoCodeType.DISCOUNT_AMOUNT, value=100)
    await promocode_service.create_promocode(
        db, code='USEDUP', promo_type=PromoCodeType.DISCOUNT_AMOUNT, value=100, max_uses=1
    )
    await promocode_service.deactivate_promocode(db, off.id)
    await promocode_service.redeem_promocode(db, user_id, 'USEDUP')

    valid = await promocode_service.get_valid_promocodes(db)
    listed = await promocode_service.list_promocodes(db)

    assert [item.code for item in valid] == ['LIVE']
    assert {item.code for item in listed} == {'LIVE', 'DEAD', 'USEDUP'}


async def test_deactivate_unknown_promocode(db):
    with pytest.raises(CodeNotFoundError):
        await promocode_service.deactivate_promocode(db, 999)


def test_describe_effect():
    amount = PromoCode(code='A', type=PromoCodeType.DISCOUNT_AMOUNT.value, value=5_000)
    percent = PromoCode(code='B', type=PromoCodeType.DISCOUNT_PERCENT.value, value=15)
    days = PromoCode(code='C', type=PromoCodeType.BONUS_DAYS.value, value=7)

    assert promocode_service.describe_effect(amount) == 'На баланс зачислено 50.00 ₽'
    assert '15%' in promocode_service.describe_effect(percent)
    assert '7 дн.' in promocode_service.describe_effect(days)


async def test_bonus_days_unreadable_extension_reply_restores_remote_expiry(
    db, user_factory, subscription_factory, remnawave
):
    user_id = await user_factory()
    subscription_id = await subscription_factory(user_id)
    previous = (await get_subscription_by_id(db, subscription_id)).expires_at
    await promocode_service.create_promocode(db, code='GARBLED', promo_type=PromoCodeType.BONUS_DAYS, value=5)
    remnawave.malformed_reply = True

    with pytest.raises(ProvisioningFailedError):
        await promocode_service.redeem_promocode(db, user_id, 'GARBLED')

    assert [data['expires_at'] for _, data in remnawave.updated] == [previous + timedelta(days=5), previous]
    assert (await get_promocode_by_code(db, 'GARBLED')).used_count == 0


async def test_bonus_days_unreadable_creation_reply_removes_remote(db, user_factory, remnawave):
    user_id = await user_factory()
    await promocode_service.create_promocode(db, code='NEWBIE', promo_type=PromoCodeType.BONUS_DAYS, value=3)
    remnawave.malformed_reply = True

    with pytest.raises(ProvisioningFailedError):
        await promocode_service.redeem_promocode(db, user_id, 'NEWBIE')

    assert remnawave.deleted == [remnawave.created[0].id]
    assert await get_active_subscriptions(db, user_id) == []


async def test_redemption_is_written_to_activity_log(db, user_factory):
    user_id = await user_factory()
    await promocode_service.create_promocode(db, code='LOGME', promo_type=PromoCodeType.DISCOUNT_AMOUNT, value=700)

    await promocode_service.redeem_promocode(db, user_id, 'LOGME')

    entries, total = await get_user_activity(db, user_id)
    assert total == 1
    assert entries[0].action == ActivityAction.PROMO_CODE.value
    assert entries[0].data == {'code': 'LOGME', 'type': PromoCodeType.DISCOUNT_AMOUNT.value, 'value': 700}
