from __future__ import annotations

import secrets
import string
from datetime import UTC, datetime

import structlog
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database.crud import promocode as promocode_crud
from app.database.crud.activity_log import ActivityAction
from app.database.crud.user import get_user_by_id
from app.database.crud.user_notification import NotificationType, create_user_notification
from app.database.models import PromoCode, PromoCodeType, PromoCodeUse, TransactionType, User
from app.services import subscription_service
from app.services.activity_log_service import log_activity
from app.services.balance_service import credit
from app.services.errors import (
    AlreadyRedeemedError,
    CodeExpiredOrInactiveError,
    CodeNotFoundError,
    ConcurrencyConflictError,
    InvalidPromoCodeError,
    PromoCodeExistsError,
    UserNotFoundError,
)
from app.utils.locks import ledger_locks, promocode_lock_key, user_lock_key


logger = structlog.get_logger(__name__)

_CODE_ALPHABET = string.ascii_uppercase + string.digits
_GENERATE_ATTEMPTS = 10


def _now_utc() -> datetime:
    return datetime.now(UTC)


def _ensure_aware(dt: datetime | None) -> datetime | None:
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt


def describe_effect(promocode: PromoCode) -> str:
    if promocode.type == PromoCodeType.DISCOUNT_AMOUNT.value:
        return f'На баланс зачислено {promocode.value / 100:.2f} ₽'
    if promocode.type == PromoCodeType.DISCOUNT_PERCENT.value:
        return f'Скидка {promocode.value}% будет применена к следующей покупке'
    if promocode.type == PromoCodeType.BONUS_DAYS.value:
        return f'Подписка продлена на {promocode.value} дн.'
    return 'Промокод активирован'


async def _apply_effect(db: AsyncSession, user: User, promocode: PromoCode):
    """Apply the reward inside the caller's transaction; returns an optional remote rollback."""
    if promocode.type == PromoCodeType.DISCOUNT_AMOUNT.value:
        await credit(
            db,
            user.id,
            promocode.value,
            transaction_type=TransactionType.PROMO_BONUS,
            description=f'Промокод {promocode.code}',
        )
        return None

    if promocode.type == PromoCodeType.DISCOUNT_PERCENT.value:
        user.promo_discount_percent = max(int(user.promo_discount_percent or 0), promocode.value)
        await db.flush()
        return None

    if promocode.type == PromoCodeType.BONUS_DAYS.value:
        _, compensate = await subscription_service.apply_bonus_days(db, user, promocode.value)
        return compensate

    raise InvalidPromoCodeError(f'Неизвестный тип промокода: {promocode.type}')


async def redeem_promocode(db: AsyncSession, user_id: int, code: str) -> PromoCode:
    normalized = promocode_crud.normalize_code(code)
    if not normalized:
        raise CodeNotFoundError()

    async with ledger_locks.acquire_many(promocode_lock_key(normalized), user_lock_key(user_id)):
        user = await get_user_by_id(db, user_id)
        if user is None:
            raise UserNotFoundError()

        promocode = await promocode_crud.get_promocode_by_code(db, normalized)
        if promocode is None:
            raise CodeNotFoundError()

        now = _now_utc()
        if not promocode.is_valid_at(now):
            raise CodeExpiredOrInactiveError()

        if await promocode_crud.get_promocode_use(db, promocode_id=promocode.id, user_id=user_id):
            raise AlreadyRedeemedError()

        compensate = None
        try:
            db.add(PromoCodeUse(promocode_id=promocode.id, user_id=user_id, used_at=now))
            await db.flush()

            if not await promocode_crud.claim_promocode_use(db, promocode.id):
                raise CodeExpiredOrInactiveError()

            compensate = await _apply_effect(db, user, promocode)

            await create_user_notification(
                db,
                user_id=user_id,
                notification_type=NotificationType.PROMOCODE_REDEEMED,
                title=f'Промокод {promocode.code} активирован',
                body=describe_effect(promocode),
                payload={'promocode_id': promocode.id},
            )
            await log_activity(
                db,
                user_id,
                ActivityAction.PROMO_CODE,
                code=promocode.code,
                type=promocode.type,
                value=promocode.value,
            )
            await db.commit()
        except Exception as exc:
            await db.rollback()
            if compensate is not None:
                await compensate()
            if isinstance(exc, IntegrityError):
                raise AlreadyRedeemedError() from exc
            if isinstance(exc, OperationalError):
                raise ConcurrencyConflictError() from exc
            raise

        await db.refresh(promocode)

    logger.info(
        'Промокод активирован',
        user_id=user_id,
        code=promocode.code,
        type=promocode.type,
        value=promocode.value,
        used_count=promocode.used_count,
    )
    return promocode


def _validate_new_code(
    code: str,
    promo_type: PromoCodeType,
    value: int,
    max_uses: int,
    valid_from: datetime | None,
    valid_until: datetime | None,
) -> None:
    if not (settings.PROMO_CODES_MIN_LENGTH <= len(code) <= settings.PROMO_CODES_MAX_LENGTH):
        raise InvalidPromoCodeError(
            f'Длина промокода должна быть от {settings.PROMO_CODES_MIN_LENGTH} '
            f'до {settings.PROMO_CODES_MAX_LENGTH} символов.'
        )
    if not all(char in _CODE_ALPHABET for char in code):
        raise InvalidPromoCodeError('Промокод может содержать только латинские буквы и цифры.')
    if value <= 0:
        raise InvalidPromoCodeError('Значение промокода должно быть больше нуля.')
    if promo_type == PromoCodeType.DISCOUNT_PERCENT and value > 100:
        raise InvalidPromoCodeError('Скидка не может превышать 100%.')
    if max_uses < 0:
        raise InvalidPromoCodeError('Лимит активаций не может быть отрицательным.')
    if valid_from and valid_until and valid_until <= valid_from:
        raise InvalidPromoCodeError('Дата окончания должна быть позже даты начала.')


async def create_promocode(
    db: AsyncSession,
    *,
    code: str,
    promo_type: PromoCodeType | str,
    value: int,
    max_uses: int = 0,
    valid_from: datetime | None = None,
    valid_until: datetime | None = None,
    description: str | None = None,
    created_by: int | None = None,
) -> PromoCode:
    try:
        promo_type = PromoCodeType(promo_type)
    except ValueError as exc:
        raise InvalidPromoCodeError(f'Неизвестный тип промокода: {promo_type}') from exc

    normalized = promocode_crud.normalize_code(code)
    valid_from = _ensure_aware(valid_from) or _now_utc()
    valid_until = _ensure_aware(valid_until)
    _validate_new_code(normalized, promo_type, value, max_uses, valid_from, valid_until)

    if await promocode_crud.promocode_code_exists(db, normalized):
        raise PromoCodeExistsError()

    now = _now_utc()
    promocode = PromoCode(
        code=normalized,
        type=promo_type.value,
        value=value,
        max_uses=max_uses,
        used_count=0,
        valid_from=valid_from,
        valid_until=valid_until,
        is_active=True,
        description=description,
        created_by=created_by,
        created_at=now,
        updated_at=now,
    )
    db.add(promocode)
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise PromoCodeExistsError() from exc
    await db.refresh(promocode)

    logger.info('Создан промокод', code=promocode.code, type=promocode.type, value=value, max_uses=max_uses)
    return promocode


async def generate_promocode(
    db: AsyncSession,
    *,
    promo_type: PromoCodeType | str,
    value: int,
    length: int = 8,
    prefix: str = '',
    **kwargs,
) -> PromoCode:
    prefix = promocode_crud.normalize_code(prefix)
    random_length = max(1, length - len(prefix))
    for _ in range(_GENERATE_ATTEMPTS):
        candidate = prefix + ''.join(secrets.choice(_CODE_ALPHABET) for _ in range(random_length))
        if await promocode_crud.promocode_code_exists(db, candidate):
            continue
        try:
            return await create_promocode(db, code=candidate, promo_type=promo_type, value=value, **kwargs)
        except PromoCodeExistsError:
            continue
    raise PromoCodeExistsError('Не удалось сгенерировать уникальный промокод, попробуйте увеличить длину.')


async def deactivate_promocode(db: AsyncSession, promocode_id: int) -> PromoCode:
    promocode = await promocode_crud.get_promocode_by_id(db, promocode_id)
    if promocode is None or promocode.deleted_at is not None:
        raise CodeNotFoundError()

    if promocode.is_active:
        promocode.is_active = False
        await db.commit()
        await db.refresh(promocode)
        logger.info('Промокод деактивирован', code=promocode.code)
    return promocode


async def list_promocodes(
    db: AsyncSession,
    *,
    limit: int = 50,
    offset: int = 0,
    include_inactive: bool = True,
) -> list[PromoCode]:
    return await promocode_crud.list_promocodes(db, limit=limit, offset=offset, include_inactive=include_inactive)


async def get_valid_promocodes(db: AsyncSession) -> list[PromoCode]:
    return await promocode_crud.get_valid_promocodes(db, _now_utc())
