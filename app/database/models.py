from datetime import UTC, datetime


def _aware(dt: datetime | None) -> datetime | None:
    """Ensure datetime is timezone-aware (handles SQLite and pre-TIMESTAMPTZ databases)."""
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt


from enum import Enum

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func


class AwareDateTime(TypeDecorator):
    """DateTime that auto-converts naive values to UTC-aware on load from DB.

    SQLite and pre-TIMESTAMPTZ databases return naive datetimes.
    """

    impl = DateTime
    cache_ok = True

    def __init__(self):
        super().__init__(timezone=True)

    def process_result_value(self, value, dialect):
        if value is not None and isinstance(value, datetime) and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


Base = declarative_base()


class SubscriptionStatus(Enum):
    ACTIVE = 'active'
    EXPIRED = 'expired'
    CANCELLED = 'cancelled'
    SUSPENDED = 'suspended'


# active is the only status with outgoing edges; nothing leads back to it
SUBSCRIPTION_TRANSITIONS: dict[str, frozenset[str]] = {
    SubscriptionStatus.ACTIVE.value: frozenset(
        {
            SubscriptionStatus.EXPIRED.value,
            SubscriptionStatus.CANCELLED.value,
            SubscriptionStatus.SUSPENDED.value,
        }
    ),
    SubscriptionStatus.EXPIRED.value: frozenset(),
    SubscriptionStatus.CANCELLED.value: frozenset(),
    SubscriptionStatus.SUSPENDED.value: frozenset(),
}


class TransactionType(Enum):
    DEPOSIT = 'deposit'
    SUBSCRIPTION_PAYMENT = 'subscription_payment'
    REFERRAL_REWARD = 'referral_reward'
    PROMO_BONUS = 'promo_bonus'
    ADMIN_ADJUSTMENT = 'admin_adjustment'


class PromoCodeType(Enum):
    BONUS_DAYS = 'bonus_days'
    DISCOUNT_PERCENT = 'discount_percent'
    DISCOUNT_AMOUNT = 'discount_amount'


class PaymentMethod(Enum):
    TELEGRAM_STARS = 'telegram_stars'
    TRIBUTE = 'tribute'
    YOOKASSA = 'yookassa'
    CRYPTOBOT = 'cryptobot'
    MANUAL = 'manual'


class PaymentStatus(Enum):
    PENDING = 'pending'
    COMPLETED = 'completed'
    FAILED = 'failed'
    CANCELLED = 'cancelled'


class User(Base):
    __tablename__ = 'users'
    __table_args__ = (CheckConstraint('balance_kopeks >= 0', name='ck_users_balance_non_negative'),)

    id = Column(Integer, primary_key=True, index=True)
    telegram_id = Column(BigInteger, unique=True, index=True, nullable=False)
    username = Column(String(255), nullable=True, index=True)
    first_name = Column(String(255), nullable=True)
    last_name = Column(String(255), nullable=True)
    language = Column(String(5), default='ru')
    balance_kopeks = Column(Integer, default=0, nullable=False)
    referral_code = Column(String(20), unique=True, nullable=False)
    referred_by_id = Column(Integer, ForeignKey('users.id'), nullable=True, index=True)
    is_blocked = Column(Boolean, default=False, nullable=False)
    is_admin = Column(Boolean, default=False, nullable=False)
    promo_discount_percent = Column(Integer, default=0, nullable=False)
    created_at = Column(AwareDateTime(), default=func.now())
    updated_at = Column(AwareDateTime(), default=func.now(), onupdate=func.now())
    deleted_at = Column(AwareDateTime(), nullable=True)

    referrer = relationship('User', remote_side=[id], foreign_keys=[referred_by_id])
    subscriptions = relationship('Subscription', back_populates='user', order_by='Subscription.created_at')
    transactions = relationship('Transaction', back_populates='user')
    payments = relationship('Payment', back_populates='user')

    @property
    def balance_rubles(self) -> float:
        return self.balance_kopeks / 100

    @property
    def full_name(self) -> str:
        parts = [self.first_name, self.last_name]
        name = ' '.join(filter(None, parts))
        if name:
            return name
        if self.username:
            return f'@{self.username}'
        return f'ID{self.telegram_id}'

    @property
    def display_name(self) -> str:
        if self.username:
            return f'@{self.username}'
        return self.full_name

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


class Subscription(Base):
    __tablename__ = 'subscriptions'
    __table_args__ = (
        Index(
            'uq_subscriptions_user_trial',
            'user_id',
            unique=True,
            postgresql_where=text('is_trial'),
            sqlite_where=text('is_trial = 1'),
        ),
        Index('ix_subscriptions_status_expires_at', 'status', 'expires_at'),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)

    server_id = Column(Integer, nullable=False)
    server_name = Column(String(255), nullable=True)
    plan_id = Column(Integer, nullable=False)
    plan_name = Column(String(255), nullable=True)

    is_trial = Column(Boolean, default=False, nullable=False)
    status = Column(String(20), default=SubscriptionStatus.ACTIVE.value, nullable=False)

    expires_at = Column(AwareDateTime(), nullable=False)

    traffic_limit_gb = Column(Integer, default=0)
    traffic_limit_strategy = Column(String(20), nullable=True)
    price_kopeks = Column(Integer, default=0, nullable=False)

    remnawave_subscription_id = Column(String(255), nullable=True)
    deprovision_pending = Column(Boolean, default=False, nullable=False)

    cancelled_at = Column(AwareDateTime(), nullable=True)
    created_at = Column(AwareDateTime(), default=func.now())
    updated_at = Column(AwareDateTime(), default=func.now(), onupdate=func.now())

    user = relationship('User', back_populates='subscriptions')

    @property
    def is_active(self) -> bool:
        end = _aware(self.expires_at)
        return self.status == SubscriptionStatus.ACTIVE.value and end is not None and end > datetime.now(UTC)

    @property
    def is_expired(self) -> bool:
        end = _aware(self.expires_at)
        return end is not None and end <= datetime.now(UTC)

    @property
    def days_left(self) -> int:
        end = _aware(self.expires_at)
        if end is None:
            return 0
        current_time = datetime.now(UTC)
        if end <= current_time:
            return 0
        return max(0, (end - current_time).days)

    @property
    def status_display(self) -> str:
        if self.status == SubscriptionStatus.ACTIVE.value:
            if self.is_expired:
                return 'Истекла'
            return 'Тестовая' if self.is_trial else 'Активна'
        if self.status == SubscriptionStatus.EXPIRED.value:
            return 'Истекла'
        if self.status == SubscriptionStatus.CANCELLED.value:
            return 'Отменена'
        if self.status == SubscriptionStatus.SUSPENDED.value:
            return 'Приостановлена'
        return 'Неизвестно'


class Transaction(Base):
    __tablename__ = 'transactions'

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)

    type = Column(String(50), nullable=False)
    amount_kopeks = Column(Integer, nullable=False)
    description = Column(Text, nullable=True)

    payment_id = Column(Integer, ForeignKey('payments.id'), nullable=True, unique=True)
    external_id = Column(String(255), nullable=True)

    created_at = Column(AwareDateTime(), default=func.now())

    user = relationship('User', back_populates='transactions')


class PromoCode(Base):
    __tablename__ = 'promocodes'
    __table_args__ = (
        CheckConstraint('max_uses = 0 OR used_count <= max_uses', name='ck_promocodes_uses_within_cap'),
    )

    id = Column(Integer, primary_key=True, index=True)

    code = Column(String(50), unique=True, nullable=False, index=True)
    type = Column(String(50), nullable=False)
    value = Column(Integer, nullable=False)

    max_uses = Column(Integer, default=0, nullable=False)
    used_count = Column(Integer, default=0, nullable=False)

    valid_from = Column(AwareDateTime(), default=func.now())
    valid_until = Column(AwareDateTime(), nullable=True)

    is_active = Column(Boolean, default=True, nullable=False)
    description = Column(String(500), nullable=True)

    created_by = Column(Integer, ForeignKey('users.id'), nullable=True)

    created_at = Column(AwareDateTime(), default=func.now())
    updated_at = Column(AwareDateTime(), default=func.now(), onupdate=func.now())
    deleted_at = Column(AwareDateTime(), nullable=True)

    uses = relationship('PromoCodeUse', back_populates='promocode')

    def is_valid_at(self, now: datetime) -> bool:
        valid_from = _aware(self.valid_from)
        valid_until = _aware(self.valid_until)
        return (
            bool(self.is_active)
            and self.deleted_at is None
            and (valid_from is None or valid_from <= now)
            and (valid_until is None or now < valid_until)
            and (self.max_uses == 0 or self.used_count < self.max_uses)
        )

    @property
    def uses_left(self) -> int | None:
        if self.max_uses == 0:
            return None
        return max(0, self.max_uses - self.used_count)

    @property
    def type_display(self) -> str:
        if self.type == PromoCodeType.BONUS_DAYS.value:
            return 'Бонусные дни'
        if self.type == PromoCodeType.DISCOUNT_PERCENT.value:
            return 'Скидка в процентах'
        if self.type == PromoCodeType.DISCOUNT_AMOUNT.value:
            return 'Скидка в рублях'
        return 'Неизвестно'


class PromoCodeUse(Base):
    __tablename__ = 'promocode_uses'
    __table_args__ = (UniqueConstraint('promocode_id', 'user_id', name='uq_promocode_uses_promocode_user'),)

    id = Column(Integer, primary_key=True, index=True)
    promocode_id = Column(Integer, ForeignKey('promocodes.id'), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)

    used_at = Column(AwareDateTime(), default=func.now())

    promocode = relationship('PromoCode', back_populates='uses')
    user = relationship('User')


class Payment(Base):
    __tablename__ = 'payments'

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    amount_kopeks = Column(Integer, nullable=False)
    currency = Column(String(10), default='RUB', nullable=False)
    payment_method = Column(String(50), nullable=False)
    status = Column(String(20), default=PaymentStatus.PENDING.value, nullable=False)
    external_id = Column(String(255), unique=True, nullable=False, index=True)
    description = Column(String(500), nullable=True)
    payment_metadata = Column('metadata', JSON, nullable=True, default=dict)

    created_at = Column(AwareDateTime(), default=func.now())
    updated_at = Column(AwareDateTime(), default=func.now(), onupdate=func.now())
    completed_at = Column(AwareDateTime(), nullable=True)

    user = relationship('User', back_populates='payments')


class UserNotification(Base):
    __tablename__ = 'user_notifications'

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    notification_type = Column(String(50), nullable=False)
    title = Column(String(255), nullable=False)
    body = Column(Text, nullable=True)
    payload = Column(JSON, nullable=True, default=dict)
    created_at = Column(AwareDateTime(), default=func.now())
    read_at = Column(AwareDateTime(), nullable=True)


class ActivityLog(Base):
    __tablename__ = 'activity_logs'
    __table_args__ = (Index('ix_activity_logs_action_created_at', 'action', 'created_at'),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    action = Column(String(50), nullable=False)
    data = Column(JSON, nullable=True, default=dict)
    created_at = Column(AwareDateTime(), default=func.now())

    user = relationship('User')
