from datetime import datetime

from pydantic import BaseModel, ConfigDict


class SubscriptionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    server_id: int
    plan_id: int
    plan_name: str | None = None
    is_trial: bool
    status: str
    expires_at: datetime
    price_kopeks: int
    deprovision_pending: bool
    cancelled_at: datetime | None = None
