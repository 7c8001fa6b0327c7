from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class UserResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    telegram_id: int
    username: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    balance_kopeks: int
    referral_code: str
    referred_by_id: int | None = None
    promo_discount_percent: int = 0
    is_blocked: bool
    is_admin: bool
    created_at: datetime
    deleted_at: datetime | None = None


class StatsResponse(BaseModel):
    users_total: int
    users_blocked: int
    users_new_today: int
    active_subscriptions: int
    active_trials: int
    revenue_total_kopeks: int
    revenue_today_kopeks: int
    active_promocodes: int


class BalanceAdjustRequest(BaseModel):
    amount_kopeks: int = Field(..., description='Positive adds funds, negative withdraws')


class BalanceAdjustResponse(BaseModel):
    user_id: int
    balance_kopeks: int


class ActivityLogResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    action: str
    data: dict[str, Any] | None = None
    created_at: datetime


class ActivityLogListResponse(BaseModel):
    items: list[ActivityLogResponse]
    total: int
    limit: int
    offset: int


class BroadcastRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    text: str = Field(..., min_length=1, max_length=4000)


class BroadcastResponse(BaseModel):
    total: int
    sent: int
    failed: int
