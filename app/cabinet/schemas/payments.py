from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from app.database.models import PaymentMethod, PaymentStatus


class PaymentWebhookRequest(BaseModel):
    external_id: str = Field(..., min_length=1, max_length=255)
    status: PaymentStatus


class PaymentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    amount_kopeks: int
    currency: str
    payment_method: str
    status: str
    external_id: str
    completed_at: datetime | None = None


class AdminBalanceTopUpRequest(BaseModel):
    amount_kopeks: int = Field(..., gt=0)
    method: PaymentMethod = PaymentMethod.MANUAL
    description: str | None = Field(default=None, max_length=500)


class AdminBalanceTopUpResponse(BaseModel):
    payment: PaymentResponse
    balance_kopeks: int
