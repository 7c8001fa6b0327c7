from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.cabinet.schemas.payments import AdminBalanceTopUpRequest, AdminBalanceTopUpResponse, PaymentResponse
from app.cabinet.schemas.subscriptions import SubscriptionResponse
from app.database.models import PaymentStatus
from app.services.balance_service import get_balance
from app.services.payment_service import create_payment, update_payment_status
from app.services.subscription_service import cancel_subscription, get_user_subscriptions, suspend_subscription

from ..dependencies import get_cabinet_db, require_admin


router = APIRouter(prefix='/admin', tags=['Cabinet Admin Subscriptions'], dependencies=[Depends(require_admin)])


@router.get('/users/{user_id}/subscriptions', response_model=list[SubscriptionResponse])
async def list_user_subscriptions(
    user_id: int,
    db: AsyncSession = Depends(get_cabinet_db),
):
    subscriptions = await get_user_subscriptions(db, user_id)
    return [SubscriptionResponse.model_validate(item) for item in subscriptions]


@router.post('/subscriptions/{subscription_id}/cancel', response_model=SubscriptionResponse)
async def cancel_user_subscription(
    subscription_id: int,
    db: AsyncSession = Depends(get_cabinet_db),
):
    subscription = await cancel_subscription(db, subscription_id)
    return SubscriptionResponse.model_validate(subscription)


@router.post('/subscriptions/{subscription_id}/suspend', response_model=SubscriptionResponse)
async def suspend_user_subscription(
    subscription_id: int,
    db: AsyncSession = Depends(get_cabinet_db),
):
    subscription = await suspend_subscription(db, subscription_id)
    return SubscriptionResponse.model_validate(subscription)


@router.post('/users/{user_id}/balance', response_model=AdminBalanceTopUpResponse)
async def top_up_user_balance(
    user_id: int,
    request: AdminBalanceTopUpRequest,
    db: AsyncSession = Depends(get_cabinet_db),
):
    payment = await create_payment(
        db,
        user_id,
        request.amount_kopeks,
        request.method,
        description=request.description,
    )
    payment = await update_payment_status(db, payment.id, PaymentStatus.COMPLETED)
    return AdminBalanceTopUpResponse(
        payment=PaymentResponse.model_validate(payment),
        balance_kopeks=await get_balance(db, user_id),
    )
