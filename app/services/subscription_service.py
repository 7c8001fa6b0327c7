from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta

import structlog
from dateutil.relativedelta import relativedelta
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database.crud import subscription as subscription_crud
from app.database.crud.activity_log import ActivityAction
from app.database.crud.user import get_user_by_id
from app.database.crud.user_notification import NotificationType, create_user_notification
from app.database.models import SUBSCRIPTION_TRANSITIONS, Subscription, SubscriptionStatus, TransactionType, User
from app.external.remnawave_api import (
    RemnaWaveAPIError,
    RemnaWavePlan,
    RemnaWaveServer,
    RemnaWaveSubscription,
    TrafficLimitStrategy,
)
from app.services.activity_log_service import log_activity
from app.services.balance_service import debit
from app.services.errors import (
    ConcurrencyConflictError,
    InvalidAmountError,
    InvalidTransitionError,
    PlanNotFoundError,
    ProvisioningFailedError,
    ServiceError,
    SubscriptionNotFoundError,
    TrialAlreadyUsedError,
    TrialDisabledError,
    UserNotFoundError,
)
from app.services.remnawave_service import RemnaWaveConfigurationError, RemnaWaveService
from app.utils.locks import ledger_locks, user_lock_key


logger = structlog.get_logger(__name__)

Compensation = Callable[[], Awaitable[None]]


def _ensure_aware(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def _now_utc() -> datetime:
    return datetime.now(UTC)


def _get_remnawave_service() -> RemnaWaveService:
    service = RemnaWaveService()
    if not service.is_configured:
        logger.error('RemnaWave API не настроен', reason=service.configuration_error)
        raise ProvisioningFailedError()
    return service


def _parse_strategy(value: str | TrafficLimitStrategy) -> TrafficLimitStrategy:
    if isinstance(value, TrafficLimitStrategy):
        return value
    try:
        return TrafficLimitStrategy((value or '').upper())
    except ValueError:
        logger.warning('Неизвестная стратегия сброса трафика, используется NO_RESET', strategy=value)
        return TrafficLimitStrategy.NO_RESET


def apply_discount(price_kopeks: int, discount_percent: int) -> int:
    percent = min(max(int(discount_percent or 0), 0), 100)
    return price_kopeks * (100 - percent) // 100


async def _require_user(db: AsyncSession, user_id: int) -> User:
    user = await get_user_by_id(db, user_id)
    if user is None:
        raise UserNotFoundError()
    return user


async def _resolve_names(service: RemnaWaveService, server_id: int, plan_id: int) -> tuple[str | None, str]:
    try:
        async with service.get_api_client() as api:
            plans = await api.get_plans(server_id)
            plan = next((item for item in plans if item.id == plan_id and item.is_active), None)
            if plan is None:
                raise PlanNotFoundError()
            servers = await api.get_servers()
    except (RemnaWaveAPIError, RemnaWaveConfigurationError) as exc:
        if isinstance(exc, RemnaWaveAPIError) and exc.status_code == 404:
            raise PlanNotFoundError() from exc
        logger.warning('Не удалось получить тарифы', server_id=server_id, error=str(exc))
        raise ProvisioningFailedError() from exc

    server = next((item for item in servers if item.id == server_id), None)
    return (server.name if server else None), plan.name


async def _provision(
    service: RemnaWaveService,
    *,
    user_id: int,
    server_id: int,
    plan_id: int,
    expires_at: datetime,
    traffic_limit_gb: int,
    traffic_strategy: TrafficLimitStrategy,
) -> RemnaWaveSubscription:
    try:
        async with service.get_api_client() as api:
            return await api.create_subscription(
                user_id=user_id,
                server_id=server_id,
                plan_id=plan_id,
                expire_at=expires_at,
                traffic_limit_gb=traffic_limit_gb,
                traffic_limit_strategy=traffic_strategy,
            )
    except (RemnaWaveAPIError, RemnaWaveConfigurationError) as exc:
        logger.warning(
            'Не удалось создать подписку в RemnaWave',
            user_id=user_id,
            server_id=server_id,
            plan_id=plan_id,
            error=str(exc),
        )
        remote_id = getattr(exc, 'remote_id', None)
        if remote_id:
            await _remote_cleanup(service, remote_id)()
        raise ProvisioningFailedError() from exc


async def _delete_remote(service: RemnaWaveService, remote_id: str) -> bool:
    try:
        async with service.get_api_client() as api:
            await api.delete_subscription(remote_id)
    except RemnaWaveAPIError as exc:
        if exc.status_code == 404:
            return True
        logger.warning('Не удалось удалить подписку в RemnaWave', remote_id=remote_id, error=str(exc))
        return False
    except RemnaWaveConfigurationError as exc:
        logger.warning('Не удалось удалить подписку в RemnaWave', remote_id=remote_id, error=str(exc))
        return False
    return True


def _remote_cleanup(service: RemnaWaveService, remote_id: str) -> Compensation:
    async def _compensate() -> None:
        if not await _delete_remote(service, remote_id):
            logger.error('Осталась висячая подписка в RemnaWave', remote_id=remote_id)

    return _compensate


async def _commit_new_subscription(
    db: AsyncSession,
    compensate: Compensation,
    *,
    notification_type: NotificationType,
    title: str,
    event: str,
    **fields,
) -> Subscription:
    """Store the subscription with its notification and log entry in one commit.

    Any failure rolls the session back and runs ``compensate`` so the remote
    grant does not outlive the local row.
    """
    try:
        subscription = Subscription(**fields)
        db.add(subscription)
        await db.flush()
        await create_user_notification(
            db,
            user_id=subscription.user_id,
            notification_type=notification_type,
            title=title,
            payload={'subscription_id': subscription.id},
        )
        await log_activity(
            db,
            subscription.user_id,
            ActivityAction.SUBSCRIPTION,
            event=event,
            subscription_id=subscription.id,
            price_kopeks=subscription.price_kopeks,
        )
        await db.commit()
    except Exception:
        await db.rollback()
        await compensate()
        raise
    await db.refresh(subscription)
    return subscription


async def create_trial(
    db: AsyncSession,
    user_id: int,
    *,
    duration_days: int | None = None,
    traffic_limit_gb: int | None = None,
    traffic_strategy: str | TrafficLimitStrategy | None = None,
) -> Subscription:
    if not settings.TRIAL_ENABLED:
        raise TrialDisabledError()

    duration_days = settings.TRIAL_DURATION_DAYS if duration_days is None else duration_days
    traffic_limit_gb = settings.TRIAL_TRAFFIC_LIMIT_GB if traffic_limit_gb is None else traffic_limit_gb
    strategy = _parse_strategy(settings.TRIAL_TRAFFIC_STRATEGY if traffic_strategy is None else traffic_strategy)

    if duration_days <= 0 or traffic_limit_gb < 0:
        raise InvalidAmountError('Некорректные параметры пробного периода.')

    async with ledger_locks.acquire(user_lock_key(user_id)):
        await _require_user(db, user_id)
        if await subscription_crud.has_trial_subscription(db, user_id):
            raise TrialAlreadyUsedError()

        service = _get_remnawave_service()
        now = _now_utc()
        expires_at = now + timedelta(days=duration_days)
        remote = await _provision(
            service,
            user_id=user_id,
            server_id=settings.TRIAL_SERVER_ID,
            plan_id=settings.TRIAL_PLAN_ID,
            expires_at=expires_at,
            traffic_limit_gb=traffic_limit_gb,
            traffic_strategy=strategy,
        )

        try:
            subscription = await _commit_new_subscription(
                db,
                _remote_cleanup(service, remote.id),
                notification_type=NotificationType.TRIAL_ACTIVATED,
                title=f'Пробный период активирован на {duration_days} дн.',
                event='trial',
                user_id=user_id,
                server_id=settings.TRIAL_SERVER_ID,
                plan_id=settings.TRIAL_PLAN_ID,
                is_trial=True,
                status=SubscriptionStatus.ACTIVE.value,
                expires_at=expires_at,
                traffic_limit_gb=traffic_limit_gb,
                traffic_limit_strategy=strategy.value,
                price_kopeks=0,
                remnawave_subscription_id=remote.id,
                created_at=now,
                updated_at=now,
            )
        except IntegrityError as exc:
            raise TrialAlreadyUsedError() from exc
        except OperationalError as exc:
            raise ConcurrencyConflictError() from exc

    logger.info('Активирован пробный период', user_id=user_id, subscription_id=subscription.id, days=duration_days)
    return subscription


async def purchase(
    db: AsyncSession,
    user_id: int,
    *,
    server_id: int,
    plan_id: int,
    duration_months: int,
    price_kopeks: int,
) -> Subscription:
    """Charge the balance, provision the plan and store a new active subscription.

    A pending percent discount from a promo code lowers the charge and is
    consumed by this purchase. Nothing is persisted unless every step succeeds.
    """
    if price_kopeks <= 0:
        raise InvalidAmountError()
    if duration_months <= 0:
        raise InvalidAmountError('Срок подписки должен быть не меньше одного месяца.')

    async with ledger_locks.acquire(user_lock_key(user_id)):
        user = await _require_user(db, user_id)
        service = _get_remnawave_service()
        server_name, plan_name = await _resolve_names(service, server_id, plan_id)

        discount_percent = int(user.promo_discount_percent or 0)
        charge_kopeks = apply_discount(price_kopeks, discount_percent)
        now = _now_utc()
        expires_at = now + relativedelta(months=duration_months)

        try:
            if charge_kopeks > 0:
                await debit(
                    db,
                    user_id,
                    charge_kopeks,
                    transaction_type=TransactionType.SUBSCRIPTION_PAYMENT,
                    description=f'Подписка «{plan_name}» на {duration_months} мес.',
                )
            if discount_percent:
                user.promo_discount_percent = 0

            remote = await _provision(
                service,
                user_id=user_id,
                server_id=server_id,
                plan_id=plan_id,
                expires_at=expires_at,
                traffic_limit_gb=0,
                traffic_strategy=TrafficLimitStrategy.MONTH,
            )
        except ServiceError:
            await db.rollback()
            raise
        except OperationalError as exc:
            await db.rollback()
            raise ConcurrencyConflictError() from exc

        try:
            subscription = await _commit_new_subscription(
                db,
                _remote_cleanup(service, remote.id),
                notification_type=NotificationType.SUBSCRIPTION_PURCHASED,
                title=f'Подписка «{plan_name}» оформлена',
                event='purchase',
                user_id=user_id,
                server_id=server_id,
                server_name=server_name,
                plan_id=plan_id,
                plan_name=plan_name,
                is_trial=False,
                status=SubscriptionStatus.ACTIVE.value,
                expires_at=expires_at,
                traffic_limit_gb=0,
                traffic_limit_strategy=TrafficLimitStrategy.MONTH.value,
                price_kopeks=charge_kopeks,
                remnawave_subscription_id=remote.id,
                created_at=now,
                updated_at=now,
            )
        except OperationalError as exc:
            raise ConcurrencyConflictError() from exc

    logger.info(
        'Оформлена подписка',
        user_id=user_id,
        subscription_id=subscription.id,
        plan_id=plan_id,
        months=duration_months,
        charged_kopeks=charge_kopeks,
        discount_percent=discount_percent,
    )
    return subscription


async def apply_bonus_days(db: AsyncSession, user: User, days: int) -> tuple[Subscription, Compensation | None]:
    """Extend the latest active paid subscription by ``days`` or open a bonus one.

    Does not commit. Returns the subscription and a callback that undoes the
    remote side if the caller's transaction fails.
    """
    subscription = await subscription_crud.get_latest_active_paid_subscription(db, user.id)
    now = _now_utc()

    if subscription is not None:
        previous_expiry = _ensure_aware(subscription.expires_at)
        new_expiry = previous_expiry + timedelta(days=days)
        compensate: Compensation | None = None

        if subscription.remnawave_subscription_id:
            service = _get_remnawave_service()
            remote_id = subscription.remnawave_subscription_id

            async def _restore_remote_expiry() -> None:
                try:
                    async with service.get_api_client() as api:
                        await api.update_subscription(remote_id, {'expires_at': previous_expiry})
                except (RemnaWaveAPIError, RemnaWaveConfigurationError) as exc:
                    logger.error('Не удалось откатить продление в RemnaWave', remote_id=remote_id, error=str(exc))

            try:
                async with service.get_api_client() as api:
                    await api.update_subscription(remote_id, {'expires_at': new_expiry})
            except (RemnaWaveAPIError, RemnaWaveConfigurationError) as exc:
                logger.warning('Не удалось продлить подписку в RemnaWave', remote_id=remote_id, error=str(exc))
                # the panel may have applied the change before its reply broke
                if getattr(exc, 'remote_id', None):
                    await _restore_remote_expiry()
                raise ProvisioningFailedError() from exc

            compensate = _restore_remote_expiry

        subscription.expires_at = new_expiry
        subscription.updated_at = now
        await db.flush()
        logger.info('Подписка продлена бонусными днями', user_id=user.id, subscription_id=subscription.id, days=days)
        return subscription, compensate

    service = _get_remnawave_service()
    expires_at = now + timedelta(days=days)
    remote = await _provision(
        service,
        user_id=user.id,
        server_id=settings.PROMO_BONUS_SERVER_ID,
        plan_id=settings.PROMO_BONUS_PLAN_ID,
        expires_at=expires_at,
        traffic_limit_gb=0,
        traffic_strategy=TrafficLimitStrategy.MONTH,
    )
    cleanup = _remote_cleanup(service, remote.id)
    try:
        subscription = Subscription(
            user_id=user.id,
            server_id=settings.PROMO_BONUS_SERVER_ID,
            plan_id=settings.PROMO_BONUS_PLAN_ID,
            is_trial=False,
            status=SubscriptionStatus.ACTIVE.value,
            expires_at=expires_at,
            traffic_limit_gb=0,
            traffic_limit_strategy=TrafficLimitStrategy.MONTH.value,
            price_kopeks=0,
            remnawave_subscription_id=remote.id,
            created_at=now,
            updated_at=now,
        )
        db.add(subscription)
        await db.flush()
    except Exception:
        await cleanup()
        raise
    logger.info('Создана бонусная подписка', user_id=user.id, subscription_id=subscription.id, days=days)
    return subscription, cleanup


async def expire_subscriptions(db: AsyncSession) -> int:
    """Move every active subscription past its expiry to ``expired``; safe to run repeatedly."""
    now = _now_utc()
    expired = await subscription_crud.expire_due_subscriptions(db, now)
    for subscription_id, user_id in expired:
        await create_user_notification(
            db,
            user_id=user_id,
            notification_type=NotificationType.SUBSCRIPTION_EXPIRED,
            title='Срок действия подписки истёк',
            payload={'subscription_id': subscription_id},
        )
        await log_activity(
            db,
            user_id,
            ActivityAction.SUBSCRIPTION,
            event=SubscriptionStatus.EXPIRED.value,
            subscription_id=subscription_id,
        )
    await db.commit()

    if expired:
        logger.info('Истёкшие подписки переведены в статус expired', count=len(expired))
    return len(expired)


async def _transition(db: AsyncSession, subscription_id: int, new_status: SubscriptionStatus) -> Subscription:
    subscription = await subscription_crud.get_subscription_by_id(db, subscription_id)
    if subscription is None:
        raise SubscriptionNotFoundError()

    now = _now_utc()
    values = {'status': new_status.value, 'updated_at': now}
    if new_status == SubscriptionStatus.CANCELLED:
        values['cancelled_at'] = now
        values['deprovision_pending'] = bool(subscription.remnawave_subscription_id)

    allowed_from = [status for status, targets in SUBSCRIPTION_TRANSITIONS.items() if new_status.value in targets]
    result = await db.execute(
        update(Subscription)
        .where(Subscription.id == subscription_id, Subscription.status.in_(allowed_from))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if (result.rowcount or 0) != 1:
        await db.rollback()
        await db.refresh(subscription)
        raise InvalidTransitionError(subscription.status, new_status.value)

    await log_activity(
        db,
        subscription.user_id,
        ActivityAction.SUBSCRIPTION,
        event=new_status.value,
        subscription_id=subscription_id,
    )
    await db.commit()
    await db.refresh(subscription)
    return subscription


async def cancel_subscription(db: AsyncSession, subscription_id: int) -> Subscription:
    """Cancel locally first; remote deletion failures leave ``deprovision_pending`` for the retry sweep."""
    subscription = await _transition(db, subscription_id, SubscriptionStatus.CANCELLED)
    logger.info('Подписка отменена', subscription_id=subscription.id, user_id=subscription.user_id)

    if not subscription.deprovision_pending:
        return subscription

    service = RemnaWaveService()
    if not service.is_configured:
        logger.warning('Удаление в RemnaWave отложено', subscription_id=subscription.id, reason=service.configuration_error)
        return subscription

    if await _delete_remote(service, subscription.remnawave_subscription_id):
        subscription.deprovision_pending = False
        await db.commit()
        await db.refresh(subscription)
    return subscription


async def suspend_subscription(db: AsyncSession, subscription_id: int) -> Subscription:
    subscription = await _transition(db, subscription_id, SubscriptionStatus.SUSPENDED)
    logger.info('Подписка приостановлена', subscription_id=subscription.id, user_id=subscription.user_id)
    return subscription


async def retry_pending_deprovisions(db: AsyncSession) -> int:
    pending = await subscription_crud.get_deprovision_pending_subscriptions(db)
    if not pending:
        return 0

    service = RemnaWaveService()
    if not service.is_configured:
        logger.warning('Повторное удаление в RemnaWave пропущено', reason=service.configuration_error, pending=len(pending))
        return 0

    completed = 0
    for subscription in pending:
        remote_id = subscription.remnawave_subscription_id
        if remote_id and not await _delete_remote(service, remote_id):
            continue
        subscription.deprovision_pending = False
        completed += 1

    await db.commit()
    if completed:
        logger.info('Повторное удаление в RemnaWave выполнено', count=completed, pending=len(pending))
    return completed


async def get_user_subscriptions(db: AsyncSession, user_id: int) -> list[Subscription]:
    return await subscription_crud.get_user_subscriptions(db, user_id)


async def get_active_subscriptions(db: AsyncSession, user_id: int) -> list[Subscription]:
    return await subscription_crud.get_active_subscriptions(db, user_id)


async def get_expiring_subscriptions(db: AsyncSession, days: int) -> list[Subscription]:
    return await subscription_crud.get_expiring_subscriptions(db, days)


async def has_used_trial(db: AsyncSession, user_id: int) -> bool:
    return await subscription_crud.has_trial_subscription(db, user_id)


async def list_servers() -> list[RemnaWaveServer]:
    service = _get_remnawave_service()
    try:
        servers = await service.get_servers()
    except (RemnaWaveAPIError, RemnaWaveConfigurationError) as exc:
        logger.warning('Не удалось получить список серверов', error=str(exc))
        raise ProvisioningFailedError() from exc
    return [server for server in servers if server.is_active]


async def list_plans(server_id: int) -> list[RemnaWavePlan]:
    service = _get_remnawave_service()
    try:
        async with service.get_api_client() as api:
            plans = await api.get_plans(server_id)
    except (RemnaWaveAPIError, RemnaWaveConfigurationError) as exc:
        logger.warning('Не удалось получить тарифы', server_id=server_id, error=str(exc))
        raise ProvisioningFailedError() from exc
    return [plan for plan in plans if plan.is_active]
