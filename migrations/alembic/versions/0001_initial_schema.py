"""initial storefront schema

Revision ID: 0001
Revises:
Create Date: 2026-10-18
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.engine import Connection


revision: str = '0001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _has_table(conn: Connection, table_name: str) -> bool:
    result = conn.execute(
        sa.text(
            "SELECT EXISTS (SELECT 1 FROM information_schema.tables "
            "WHERE table_schema = 'public' AND table_name = :name)"
        ),
        {'name': table_name},
    )
    return bool(result.scalar())


def _has_index(conn: Connection, index_name: str) -> bool:
    result = conn.execute(
        sa.text(
            "SELECT EXISTS (SELECT 1 FROM pg_indexes "
            "WHERE schemaname = 'public' AND indexname = :index_name)"
        ),
        {'index_name': index_name},
    )
    return bool(result.scalar())


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
    ]


def upgrade() -> None:
    conn = op.get_bind()

    if not _has_table(conn, 'users'):
        op.create_table(
            'users',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('telegram_id', sa.BigInteger(), nullable=False),
            sa.Column('username', sa.String(length=255), nullable=True),
            sa.Column('first_name', sa.String(length=255), nullable=True),
            sa.Column('last_name', sa.String(length=255), nullable=True),
            sa.Column('language', sa.String(length=5), nullable=True, server_default='ru'),
            sa.Column('balance_kopeks', sa.Integer(), nullable=False, server_default=sa.text('0')),
            sa.Column('referral_code', sa.String(length=20), nullable=False),
            sa.Column('referred_by_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
            sa.Column('is_blocked', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('is_admin', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('promo_discount_percent', sa.Integer(), nullable=False, server_default=sa.text('0')),
            *_timestamps(),
            sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
            sa.UniqueConstraint('telegram_id', name='uq_users_telegram_id'),
            sa.UniqueConstraint('referral_code', name='uq_users_referral_code'),
            sa.CheckConstraint('balance_kopeks >= 0', name='ck_users_balance_non_negative'),
        )

    for index_name, columns in (
        ('ix_users_username', ['username']),
        ('ix_users_referred_by_id', ['referred_by_id']),
    ):
        if not _has_index(conn, index_name):
            op.create_index(index_name, 'users', columns)

    if not _has_table(conn, 'subscriptions'):
        op.create_table(
            'subscriptions',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
            sa.Column('server_id', sa.Integer(), nullable=False),
            sa.Column('server_name', sa.String(length=255), nullable=True),
            sa.Column('plan_id', sa.Integer(), nullable=False),
            sa.Column('plan_name', sa.String(length=255), nullable=True),
            sa.Column('is_trial', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('status', sa.String(length=20), nullable=False, server_default='active'),
            sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('traffic_limit_gb', sa.Integer(), nullable=True, server_default=sa.text('0')),
            sa.Column('traffic_limit_strategy', sa.String(length=20), nullable=True),
            sa.Column('price_kopeks', sa.Integer(), nullable=False, server_default=sa.text('0')),
            sa.Column('remnawave_subscription_id', sa.String(length=255), nullable=True),
            sa.Column('deprovision_pending', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
            *_timestamps(),
        )

    if not _has_index(conn, 'ix_subscriptions_user_id'):
        op.create_index('ix_subscriptions_user_id', 'subscriptions', ['user_id'])
    if not _has_index(conn, 'ix_subscriptions_status_expires_at'):
        op.create_index('ix_subscriptions_status_expires_at', 'subscriptions', ['status', 'expires_at'])
    if not _has_index(conn, 'uq_subscriptions_user_trial'):
        op.create_index(
            'uq_subscriptions_user_trial',
            'subscriptions',
            ['user_id'],
            unique=True,
            postgresql_where=sa.text('is_trial'),
        )

    if not _has_table(conn, 'payments'):
        op.create_table(
            'payments',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
            sa.Column('amount_kopeks', sa.Integer(), nullable=False),
            sa.Column('currency', sa.String(length=10), nullable=False, server_default='RUB'),
            sa.Column('payment_method', sa.String(length=50), nullable=False),
            sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
            sa.Column('external_id', sa.String(length=255), nullable=False),
            sa.Column('description', sa.String(length=500), nullable=True),
            sa.Column('metadata', sa.JSON(), nullable=True),
            *_timestamps(),
            sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
            sa.UniqueConstraint('external_id', name='uq_payments_external_id'),
        )

    if not _has_index(conn, 'ix_payments_user_id'):
        op.create_index('ix_payments_user_id', 'payments', ['user_id'])

    if not _has_table(conn, 'transactions'):
        op.create_table(
            'transactions',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
            sa.Column('type', sa.String(length=50), nullable=False),
            sa.Column('amount_kopeks', sa.Integer(), nullable=False),
            sa.Column('description', sa.Text(), nullable=True),
            sa.Column('payment_id', sa.Integer(), sa.ForeignKey('payments.id'), nullable=True),
            sa.Column('external_id', sa.String(length=255), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
            sa.UniqueConstraint('payment_id', name='uq_transactions_payment_id'),
        )

    if not _has_index(conn, 'ix_transactions_user_id'):
        op.create_index('ix_transactions_user_id', 'transactions', ['user_id'])

    if not _has_table(conn, 'promocodes'):
        op.create_table(
            'promocodes',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('code', sa.String(length=50), nullable=False),
            sa.Column('type', sa.String(length=50), nullable=False),
            sa.Column('value', sa.Integer(), nullable=False),
            sa.Column('max_uses', sa.Integer(), nullable=False, server_default=sa.text('0')),
            sa.Column('used_count', sa.Integer(), nullable=False, server_default=sa.text('0')),
            sa.Column('valid_from', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
            sa.Column('valid_until', sa.DateTime(timezone=True), nullable=True),
            sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column('description', sa.String(length=500), nullable=True),
            sa.Column('created_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
            *_timestamps(),
            sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
            sa.UniqueConstraint('code', name='uq_promocodes_code'),
            sa.CheckConstraint('max_uses = 0 OR used_count <= max_uses', name='ck_promocodes_uses_within_cap'),
        )

    if not _has_table(conn, 'promocode_uses'):
        op.create_table(
            'promocode_uses',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('promocode_id', sa.Integer(), sa.ForeignKey('promocodes.id'), nullable=False),
            sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
            sa.Column('used_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
            sa.UniqueConstraint('promocode_id', 'user_id', name='uq_promocode_uses_promocode_user'),
        )

    if not _has_index(conn, 'ix_promocode_uses_user_id'):
        op.create_index('ix_promocode_uses_user_id', 'promocode_uses', ['user_id'])

    if not _has_table(conn, 'user_notifications'):
        op.create_table(
            'user_notifications',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
            sa.Column('notification_type', sa.String(length=50), nullable=False),
            sa.Column('title', sa.String(length=255), nullable=False),
            sa.Column('body', sa.Text(), nullable=True),
            sa.Column('payload', sa.JSON(), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
            sa.Column('read_at', sa.DateTime(timezone=True), nullable=True),
        )

    if not _has_index(conn, 'ix_user_notifications_user_id'):
        op.create_index('ix_user_notifications_user_id', 'user_notifications', ['user_id'])


def downgrade() -> None:
    conn = op.get_bind()

    for table_name in (
        'user_notifications',
        'promocode_uses',
        'promocodes',
        'transactions',
        'payments',
        'subscriptions',
        'users',
    ):
        if _has_table(conn, table_name):
            op.drop_table(table_name)
