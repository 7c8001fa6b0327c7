from dataclasses import asdict

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.cabinet.schemas.users import (
    ActivityLogListResponse,
    ActivityLogResponse,
    BalanceAdjustRequest,
    BalanceAdjustResponse,
    BroadcastRequest,
    BroadcastResponse,
    StatsResponse,
    UserResponse,
)
from app.database.crud.activity_log import ActivityAction
from app.services import activity_log_service, broadcast_service, stats_service, user_service

from ..dependencies import get_cabinet_db, require_admin


router = APIRouter(prefix='/admin', tags=['Cabinet Admin Users'], dependencies=[Depends(require_admin)])


@router.get('/stats', response_model=StatsResponse)
async def get_stats(db: AsyncSession = Depends(get_cabinet_db)):
    stats = await stats_service.get_stats(db)
    return StatsResponse(**asdict(stats))


@router.get('/users', response_model=list[UserResponse])
async def search_users(
    query: str | None = Query(default=None, max_length=100),
    limit: int = Query(default=20, ge=1, le=100),
    db: AsyncSession = Depends(get_cabinet_db),
):
    users = await user_service.search_users(db, query, limit=limit)
    return [UserResponse.model_validate(user) for user in users]


@router.get('/users/{user_id}', response_model=UserResponse)
async def get_user(user_id: int, db: AsyncSession = Depends(get_cabinet_db)):
    return UserResponse.model_validate(await user_service.get_user(db, user_id))


@router.post('/users/{user_id}/block', response_model=UserResponse)
async def block_user(user_id: int, db: AsyncSession = Depends(get_cabinet_db)):
    return UserResponse.model_validate(await user_service.set_user_blocked(db, user_id, True))


@router.post('/users/{user_id}/unblock', response_model=UserResponse)
async def unblock_user(user_id: int, db: AsyncSession = Depends(get_cabinet_db)):
    return UserResponse.model_validate(await user_service.set_user_blocked(db, user_id, False))


@router.delete('/users/{user_id}', response_model=UserResponse)
async def delete_user(user_id: int, db: AsyncSession = Depends(get_cabinet_db)):
    return UserResponse.model_validate(await user_service.delete_user(db, user_id))


@router.post('/users/{user_id}/balance/adjust', response_model=BalanceAdjustResponse)
async def adjust_user_balance(
    user_id: int,
    request: BalanceAdjustRequest,
    db: AsyncSession = Depends(get_cabinet_db),
):
    balance = await user_service.adjust_balance(db, user_id, request.amount_kopeks)
    return BalanceAdjustResponse(user_id=user_id, balance_kopeks=balance)


@router.get('/users/{user_id}/activity', response_model=ActivityLogListResponse)
async def get_user_activity(
    user_id: int,
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_cabinet_db),
):
    entries, total = await activity_log_service.get_user_activity(db, user_id, limit=limit, offset=offset)
    return ActivityLogListResponse(
        items=[ActivityLogResponse.model_validate(entry) for entry in entries],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get('/activity', response_model=ActivityLogListResponse)
async def get_recent_activity(
    action: ActivityAction | None = None,
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_cabinet_db),
):
    entries, total = await activity_log_service.get_recent_activity(db, action=action, limit=limit, offset=offset)
    return ActivityLogListResponse(
        items=[ActivityLogResponse.model_validate(entry) for entry in entries],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.post('/broadcast', response_model=BroadcastResponse)
async def broadcast(request: BroadcastRequest, db: AsyncSession = Depends(get_cabinet_db)):
    # the cabinet has no bot; messages land in the users' notification feeds
    report = await broadcast_service.send_broadcast(db, None, request.text)
    return BroadcastResponse(total=report.total, sent=report.sent, failed=report.failed)
