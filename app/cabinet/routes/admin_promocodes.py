from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.cabinet.schemas.promocodes import (
    PromoCodeCreateRequest,
    PromoCodeGenerateRequest,
    PromoCodeListResponse,
    PromoCodeResponse,
)
from app.services.promocode_service import (
    create_promocode,
    deactivate_promocode,
    generate_promocode,
    get_valid_promocodes,
    list_promocodes,
)

from ..dependencies import get_cabinet_db, require_admin


router = APIRouter(prefix='/admin/promocodes', tags=['Cabinet Admin Promo Codes'], dependencies=[Depends(require_admin)])


@router.get('', response_model=PromoCodeListResponse)
async def get_promocodes(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    only_valid: bool = Query(default=False),
    db: AsyncSession = Depends(get_cabinet_db),
):
    if only_valid:
        items = await get_valid_promocodes(db)
    else:
        items = await list_promocodes(db, limit=limit, offset=offset)
    return PromoCodeListResponse(
        items=[PromoCodeResponse.model_validate(item) for item in items],
        total=len(items),
    )


@router.post('', response_model=PromoCodeResponse, status_code=201)
async def create_new_promocode(
    request: PromoCodeCreateRequest,
    db: AsyncSession = Depends(get_cabinet_db),
):
    promocode = await create_promocode(
        db,
        code=request.code,
        promo_type=request.type,
        value=request.value,
        max_uses=request.max_uses,
        valid_from=request.valid_from,
        valid_until=request.valid_until,
        description=request.description,
    )
    return PromoCodeResponse.model_validate(promocode)


@router.post('/generate', response_model=PromoCodeResponse, status_code=201)
async def generate_new_promocode(
    request: PromoCodeGenerateRequest,
    db: AsyncSession = Depends(get_cabinet_db),
):
    promocode = await generate_promocode(
        db,
        promo_type=request.type,
        value=request.value,
        length=request.length,
        prefix=request.prefix,
        max_uses=request.max_uses,
        valid_until=request.valid_until,
        description=request.description,
    )
    return PromoCodeResponse.model_validate(promocode)


@router.post('/{promocode_id}/deactivate', response_model=PromoCodeResponse)
async def deactivate_existing_promocode(
    promocode_id: int,
    db: AsyncSession = Depends(get_cabinet_db),
):
    promocode = await deactivate_promocode(db, promocode_id)
    return PromoCodeResponse.model_validate(promocode)
