from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from app.database.models import PromoCodeType


class PromoCodeCreateRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=50)
    type: PromoCodeType
    value: int = Field(..., gt=0)
    max_uses: int = Field(default=0, ge=0)
    valid_from: datetime | None = None
    valid_until: datetime | None = None
    description: str | None = Field(default=None, max_length=500)


class PromoCodeGenerateRequest(BaseModel):
    type: PromoCodeType
    value: int = Field(..., gt=0)
    length: int = Field(default=8, ge=3, le=20)
    prefix: str = Field(default='', max_length=10)
    max_uses: int = Field(default=0, ge=0)
    valid_until: datetime | None = None
    description: str | None = Field(default=None, max_length=500)


class PromoCodeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    code: str
    type: str
    value: int
    max_uses: int
    used_count: int
    is_active: bool
    valid_from: datetime | None = None
    valid_until: datetime | None = None
    description: str | None = None


class PromoCodeListResponse(BaseModel):
    items: list[PromoCodeResponse] = Field(default_factory=list)
    total: int = 0
