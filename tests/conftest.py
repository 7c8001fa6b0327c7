import itertools
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.config import settings
from app.database.crud.user import create_user
from app.database.models import Base, Subscription, SubscriptionStatus
from app.external.remnawave_api import (
    RemnaWaveAPIError,
    RemnaWavePlan,
    RemnaWaveServer,
    RemnaWaveSubscription,
    TrafficLimitStrategy,
)
from app.services import balance_service, subscription_service


class FakeRemnaWaveAPI:
    def __init__(self):
        self.servers = [
            RemnaWaveServer(id=1, name='Amsterdam'),
            RemnaWaveServer(id=2, name='Frankfurt', is_active=False),
        ]
        self.plans = {
            1: [
                RemnaWavePlan(id=1, server_id=1, name='Standard', price=150.0, duration=30),
                RemnaWavePlan(id=2, server_id=1, name='Legacy', is_active=False),
            ],
        }
        self.created: list[RemnaWaveSubscription] = []
        self.updated: list[tuple[str, dict]] = []
        self.deleted: list[str] = []
        self.fail_create = False
        self.fail_update = False
        self.fail_delete = False
        self.malformed_reply = False
        self._ids = itertools.count(1)

    async def get_servers(self):
        return list(self.servers)

    async def get_plans(self, server_id):
        return list(self.plans.get(server_id, []))

    async def create_subscription(
        self,
        *,
        user_id,
        server_id,
        plan_id,
        expire_at,
        traffic_limit_gb=0,
        traffic_limit_strategy=TrafficLimitStrategy.NO_RESET,
    ):
        if self.fail_create:
            raise RemnaWaveAPIError('panel unavailable', status_code=503)
        remote = RemnaWaveSubscription(
            id=f'rw-{next(self._ids)}',
            user_id=user_id,
            server_id=server_id,
            plan_id=plan_id,
            status='active',
            expires_at=expire_at,
        )
        self.created.append(remote)
        if self.malformed_reply:
            raise RemnaWaveAPIError('Malformed subscription payload', remote_id=remote.id)
        return remote

    async def update_subscription(self, subscription_id, data):
        if self.fail_update:
            raise RemnaWaveAPIError('panel unavailable', status_code=503)
        self.updated.append((subscription_id, data))
        if self.malformed_reply:
            raise RemnaWaveAPIError('Malformed subscription payload', remote_id=subscription_id)
        return RemnaWaveSubscription(
            id=subscription_id,
            user_id=0,
            server_id=0,
            plan_id=0,
            status='active',
            expires_at=data.get('expires_at'),
        )

    async def delete_subscription(self, subscription_id):
        if self.fail_delete:
            raise RemnaWaveAPIError('panel unavailable', status_code=503)
        self.deleted.append(subscription_id)
        return True


class FakeRemnaWaveService:
    def __init__(self, api: FakeRemnaWaveAPI, configured: bool = True):
        self.api = api
        self.configured = configured

    @property
    def configuration_error(self):
        return None if self.configured else 'REMNAWAVE_API_URL is not set'

    @property
    def is_configured(self):
        return self.configured

    @asynccontextmanager
    async def get_api_client(self):
        yield self.api

    async def get_servers(self):
        return await self.api.get_servers()


@pytest.fixture(autouse=True)
def _ledger_settings(monkeypatch):
    monkeypatch.setattr(settings, 'TRIAL_ENABLED', True)
    monkeypatch.setattr(settings, 'TRIAL_DURATION_DAYS', 5)
    monkeypatch.setattr(settings, 'TRIAL_TRAFFIC_LIMIT_GB', 10)
    monkeypatch.setattr(settings, 'TRIAL_TRAFFIC_STRATEGY', 'NO_RESET')
    monkeypatch.setattr(settings, 'TRIAL_SERVER_ID', 1)
    monkeypatch.setattr(settings, 'TRIAL_PLAN_ID', 1)
    monkeypatch.setattr(settings, 'PROMO_BONUS_SERVER_ID', 1)
    monkeypatch.setattr(settings, 'PROMO_BONUS_PLAN_ID', 1)
    monkeypatch.setattr(settings, 'REFERRAL_ENABLED', True)
    monkeypatch.setattr(settings, 'REFERRAL_REFERRER_BONUS_KOPEKS', 5000)
    monkeypatch.setattr(settings, 'REFERRAL_REFERRED_BONUS_KOPEKS', 0)
    monkeypatch.setattr(settings, 'LEDGER_RETRY_ATTEMPTS', 3)
    monkeypatch.setattr(settings, 'EXPIRING_NOTICE_DAYS', 3)
    monkeypatch.setattr(settings, 'ADMIN_TELEGRAM_IDS', [])
    monkeypatch.setattr(settings, 'ACTIVITY_LOG_RETENTION_DAYS', 90)


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f'sqlite+aiosqlite:///{tmp_path / "ledger.db"}')
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def remnawave(monkeypatch):
    api = FakeRemnaWaveAPI()
    service = FakeRemnaWaveService(api)
    monkeypatch.setattr(subscription_service, 'RemnaWaveService', lambda *args, **kwargs: service)
    api.service = service
    return api


@pytest.fixture
def user_factory(session_factory):
    telegram_ids = itertools.count(100_001)

    async def _create(*, balance_kopeks: int = 0, username: str | None = None, **fields) -> int:
        async with session_factory() as session:
            user = await create_user(session, telegram_id=next(telegram_ids), username=username)
            for field, value in fields.items():
                setattr(user, field, value)
            await session.commit()
            user_id = user.id
            if balance_kopeks:
                await balance_service.credit_balance(session, user_id, balance_kopeks, description='Стартовый баланс')
        return user_id

    return _create


@pytest.fixture
def subscription_factory(session_factory):
    async def _create(
        user_id: int,
        *,
        expires_in: timedelta = timedelta(days=30),
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
        is_trial: bool = False,
        remote_id: str | None = 'rw-existing',
        deprovision_pending: bool = False,
    ) -> int:
        now = datetime.now(UTC)
        async with session_factory() as session:
            subscription = Subscription(
                user_id=user_id,
                server_id=1,
                plan_id=1,
                plan_name='Standard',
                is_trial=is_trial,
                status=status.value,
                expires_at=now + expires_in,
                traffic_limit_gb=0,
                traffic_limit_strategy=TrafficLimitStrategy.MONTH.value,
                price_kopeks=0,
                remnawave_subscription_id=remote_id,
                deprovision_pending=deprovision_pending,
                created_at=now,
                updated_at=now,
            )
            session.add(subscription)
            await session.commit()
            return subscription.id

    return _create
