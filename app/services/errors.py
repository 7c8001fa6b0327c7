from __future__ import annotations

from typing import Any

from fastapi import HTTPException, status


class ServiceError(HTTPException):
    """Domain error raised by the ledger, subscription, promo and payment services.

    The detail payload follows the same shape the cabinet already returns for
    business errors: ``error_code`` plus a user-facing ``message_ru``.
    """

    status_code: int = status.HTTP_400_BAD_REQUEST
    error_code: str = 'SERVICE_ERROR'
    message_ru: str = 'Не удалось выполнить операцию'

    def __init__(self, message_ru: str | None = None, **extra: Any) -> None:
        self.extra = extra
        detail = {'error_code': self.error_code, 'message_ru': message_ru or self.message_ru, **extra}
        super().__init__(status_code=self.status_code, detail=detail)

    @property
    def user_message(self) -> str:
        return self.detail['message_ru']


class UserNotFoundError(ServiceError):
    status_code = status.HTTP_404_NOT_FOUND
    error_code = 'USER_NOT_FOUND'
    message_ru = 'Пользователь не найден. Отправьте /start, чтобы начать.'


class InvalidAmountError(ServiceError):
    status_code = status.HTTP_400_BAD_REQUEST
    error_code = 'INVALID_AMOUNT'
    message_ru = 'Сумма должна быть больше нуля.'


class InsufficientBalanceError(ServiceError):
    status_code = status.HTTP_402_PAYMENT_REQUIRED
    error_code = 'INSUFFICIENT_BALANCE'

    def __init__(self, balance_kopeks: int, required_kopeks: int) -> None:
        self.balance_kopeks = balance_kopeks
        self.required_kopeks = required_kopeks
        self.shortfall_kopeks = max(0, required_kopeks - balance_kopeks)
        super().__init__(
            f'Недостаточно средств: не хватает {self.shortfall_kopeks / 100:.2f} ₽. '
            f'Пополните баланс и повторите покупку.',
            balance_kopeks=balance_kopeks,
            required_kopeks=required_kopeks,
            shortfall_kopeks=self.shortfall_kopeks,
        )


class TrialAlreadyUsedError(ServiceError):
    status_code = status.HTTP_409_CONFLICT
    error_code = 'TRIAL_ALREADY_USED'
    message_ru = 'Пробный период уже был использован на этом аккаунте. Оформите подписку, чтобы продолжить.'


class TrialDisabledError(ServiceError):
    status_code = status.HTTP_403_FORBIDDEN
    error_code = 'TRIAL_DISABLED'
    message_ru = 'Пробный период сейчас недоступен.'


class InvalidTransitionError(ServiceError):
    status_code = status.HTTP_409_CONFLICT
    error_code = 'INVALID_TRANSITION'
    message_ru = 'Действие недоступно для текущего статуса.'

    def __init__(self, current_status: str, requested_status: str) -> None:
        super().__init__(
            f'Нельзя перевести из статуса «{current_status}» в «{requested_status}».',
            current_status=current_status,
            requested_status=requested_status,
        )


class SubscriptionNotFoundError(ServiceError):
    status_code = status.HTTP_404_NOT_FOUND
    error_code = 'SUBSCRIPTION_NOT_FOUND'
    message_ru = 'Подписка не найдена.'


class PlanNotFoundError(ServiceError):
    status_code = status.HTTP_404_NOT_FOUND
    error_code = 'PLAN_NOT_FOUND'
    message_ru = 'Тариф не найден или больше недоступен.'


class CodeNotFoundError(ServiceError):
    status_code = status.HTTP_404_NOT_FOUND
    error_code = 'PROMOCODE_NOT_FOUND'
    message_ru = 'Промокод не найден. Проверьте правильность ввода.'


class CodeExpiredOrInactiveError(ServiceError):
    status_code = status.HTTP_410_GONE
    error_code = 'PROMOCODE_EXPIRED_OR_INACTIVE'
    message_ru = 'Промокод недействителен: срок действия истёк или лимит активаций исчерпан.'


class AlreadyRedeemedError(ServiceError):
    status_code = status.HTTP_409_CONFLICT
    error_code = 'PROMOCODE_ALREADY_REDEEMED'
    message_ru = 'Вы уже активировали этот промокод.'


class PromoCodeExistsError(ServiceError):
    status_code = status.HTTP_409_CONFLICT
    error_code = 'PROMOCODE_EXISTS'
    message_ru = 'Промокод с таким кодом уже существует.'


class InvalidPromoCodeError(ServiceError):
    status_code = status.HTTP_400_BAD_REQUEST
    error_code = 'PROMOCODE_INVALID'
    message_ru = 'Некорректные параметры промокода.'


class ProvisioningFailedError(ServiceError):
    status_code = status.HTTP_502_BAD_GATEWAY
    error_code = 'PROVISIONING_FAILED'
    message_ru = 'Сервер подписок временно недоступен. Попробуйте позже, средства не списаны.'


class ConcurrencyConflictError(ServiceError):
    status_code = status.HTTP_409_CONFLICT
    error_code = 'CONCURRENCY_CONFLICT'
    message_ru = 'Операция уже выполняется. Подождите пару секунд и повторите.'


class PaymentNotFoundError(ServiceError):
    status_code = status.HTTP_404_NOT_FOUND
    error_code = 'PAYMENT_NOT_FOUND'
    message_ru = 'Платёж не найден.'
