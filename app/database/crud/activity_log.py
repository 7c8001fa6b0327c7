from datetime import UTC, datetime
from enum import Enum

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database.models import ActivityLog


class ActivityAction(Enum):
    PAYMENT = 'payment'
    SUBSCRIPTION = 'subscription'
    PROMO_CODE = 'promo_code'
    REFERRAL = 'referral'
    ADMIN_ACTION = 'admin_action'


async def create_activity_log(
    db: AsyncSession,
    *,
    user_id: int,
    action: ActivityAction,
    data: dict | None = None,
) -> ActivityLog:
    entry = ActivityLog(
        user_id=user_id,
        action=action.value,
        data=data or {},
        created_at=datetime.now(UTC),
    )
    db.add(entry)
    await db.flush()
    return entry


async def get_activity_logs(
    db: AsyncSession,
    *,
    user_id: int | None = None,
    action: ActivityAction | None = None,
    limit: int = 20,
    offset: int = 0,
) -> tuple[list[ActivityLog], int]:
    filters = []
    if user_id is not None:
        filters.append(ActivityLog.user_id == user_id)
    if action is not None:
        filters.append(ActivityLog.action == action.value)

    query = (
        select(ActivityLog)
        .where(*filters)
        .order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc())
        .offset(max(0, offset))
        .limit(max(1, min(limit, 100)))
    )
    total_query = select(func.count(ActivityLog.id)).where(*filters)

    rows = (await db.execute(query)).scalars().all()
    total = int((await db.execute(total_query)).scalar() or 0)
    return list(rows), total


async def delete_activity_logs_before(db: AsyncSession, cutoff: datetime) -> int:
    result = await db.execute(
        delete(ActivityLog).where(ActivityLog.created_at < cutoff).execution_options(synchronize_session=False)
    )
    return result.rowcount or 0
