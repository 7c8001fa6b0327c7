import structlog
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.cabinet.schemas.payments import PaymentResponse, PaymentWebhookRequest
from app.services.errors import PaymentNotFoundError
from app.services.payment_service import get_payment_by_external_id, update_payment_status

from ..dependencies import get_cabinet_db, verify_payment_webhook


logger = structlog.get_logger(__name__)

router = APIRouter(prefix='/payments', tags=['Payments'])


@router.post('/webhook', response_model=PaymentResponse, dependencies=[Depends(verify_payment_webhook)])
async def payment_webhook(
    request: PaymentWebhookRequest,
    db: AsyncSession = Depends(get_cabinet_db),
):
    payment = await get_payment_by_external_id(db, request.external_id)
    if payment is None:
        logger.warning('Webhook для неизвестного платежа', external_id=request.external_id)
        raise PaymentNotFoundError()

    payment = await update_payment_status(db, payment.id, request.status)
    return PaymentResponse.model_validate(payment)
