from datetime import UTC, datetime, timedelta

from sqlalchemy import update

from app.database.crud.activity_log import ActivityAction
from app.database.models import ActivityLog
from app.services import activity_log_service


async def test_entries_are_listed_newest_first_and_filtered(db, user_factory):
    first_id = await user_factory()
    second_id = await user_factory()
    await activity_log_service.log_activity(db, first_id, ActivityAction.PAYMENT, payment_id=1)
    await activity_log_service.log_activity(db, second_id, ActivityAction.REFERRAL, referred_user_id=first_id)
    await activity_log_service.log_activity(db, first_id, ActivityAction.PROMO_CODE, code='BONUS50')
    await db.commit()

    own, own_total = await activity_log_service.get_user_activity(db, first_id)
    assert own_total == 2
    assert [entry.action for entry in own] == [ActivityAction.PROMO_CODE.value, ActivityAction.PAYMENT.value]

    referrals, referral_total = await activity_log_service.get_recent_activity(db, action=ActivityAction.REFERRAL)
    assert referral_total == 1
    assert referrals[0].user_id == second_id
    assert referrals[0].data == {'referred_user_id': first_id}

    page, total = await activity_log_service.get_recent_activity(db, limit=1, offset=1)
    assert total == 3
    assert [entry.action for entry in page] == [ActivityAction.REFERRAL.value]


async def test_cleanup_removes_only_old_entries(db, user_factory):
    user_id = await user_factory()
    old = await activity_log_service.log_activity(db, user_id, ActivityAction.PAYMENT, payment_id=1)
    await activity_log_service.log_activity(db, user_id, ActivityAction.PAYMENT, payment_id=2)
    await db.execute(
        update(ActivityLog)
        .where(ActivityLog.id == old.id)
        .values(created_at=datetime.now(UTC) - timedelta(days=120))
    )
    await db.commit()

    assert await activity_log_service.cleanup_old_logs(db, days_to_keep=90) == 1
    assert await activity_log_service.cleanup_old_logs(db, days_to_keep=90) == 0
    assert await activity_log_service.cleanup_old_logs(db, days_to_keep=0) == 0

    entries, total = await activity_log_service.get_user_activity(db, user_id)
    assert total == 1
    assert entries[0].data == {'payment_id': 2}


async def test_describe(db, user_factory):
    user_id = await user_factory()
    entry = await activity_log_service.log_activity(
        db, user_id, ActivityAction.ADMIN_ACTION, action='block', admin_id=7
    )
    entry.created_at = datetime(2026, 10, 18, 9, 30, tzinfo=UTC)

    assert activity_log_service.describe(entry) == '18.10.2026 09:30 🛠 Администратор: action=block, admin_id=7'
