"""Create marketplace billing schema

Revision ID: 001
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps(*names):
    return [sa.Column(name, sa.DateTime(timezone=True), nullable=False) for name in names]


def upgrade() -> None:
    conn = op.get_bind()
    existing_tables = inspect(conn).get_table_names()

    if 'users' not in existing_tables:
        op.create_table(
            'users',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('email', sa.String(length=255), nullable=False),
            sa.Column('password_hash', sa.String(length=255), nullable=True),
            sa.Column('is_ghost', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('role', sa.String(length=20), nullable=False, server_default='user'),
            sa.Column('stripe_customer_id', sa.String(length=255), nullable=True),
            sa.Column('stripe_account_id', sa.String(length=255), nullable=True),
            sa.Column('email_notifications_enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
            *_timestamps('created_at', 'updated_at'),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_users_id', 'users', ['id'])
        op.create_index('ix_users_email', 'users', ['email'], unique=True)
        op.create_index('ix_users_stripe_customer_id', 'users', ['stripe_customer_id'])
        op.create_index('ix_users_stripe_account_id', 'users', ['stripe_account_id'], unique=True)

    if 'account_claim_tokens' not in existing_tables:
        op.create_table(
            'account_claim_tokens',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('user_id', sa.Integer(), nullable=False),
            sa.Column('token_hash', sa.String(length=64), nullable=False),
            sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('consumed_at', sa.DateTime(timezone=True), nullable=True),
            *_timestamps('created_at'),
            sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('token_hash')
        )
        op.create_index('ix_account_claim_tokens_id', 'account_claim_tokens', ['id'])
        op.create_index('ix_account_claim_tokens_user_id', 'account_claim_tokens', ['user_id'])
        op.create_index('ix_account_claim_tokens_user_open', 'account_claim_tokens', ['user_id', 'consumed_at'])

    if 'creator_profiles' not in existing_tables:
        op.create_table(
            'creator_profiles',
            sa.Column('user_id', sa.Integer(), nullable=False),
            sa.Column('display_name', sa.String(length=255), nullable=True),
            sa.Column('bio', sa.Text(), nullable=True),
            sa.Column('profile_image', sa.String(length=1024), nullable=True),
            sa.Column('is_profile_complete', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.false()),
            *_timestamps('updated_at'),
            sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
            sa.PrimaryKeyConstraint('user_id')
        )

    if 'products' not in existing_tables:
        op.create_table(
            'products',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('creator_id', sa.Integer(), nullable=False),
            sa.Column('title', sa.String(length=255), nullable=False),
            sa.Column('product_type', sa.String(length=20), nullable=False),
            sa.Column('price_cents', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
            *_timestamps('created_at'),
            sa.ForeignKeyConstraint(['creator_id'], ['users.id'], ondelete='CASCADE'),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_products_id', 'products', ['id'])
        op.create_index('ix_products_creator_id', 'products', ['creator_id'])

    if 'orders' not in existing_tables:
        op.create_table(
            'orders',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('buyer_id', sa.Integer(), nullable=True),
            sa.Column('product_id', sa.Integer(), nullable=False),
            sa.Column('amount_cents', sa.Integer(), nullable=False),
            sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
            sa.Column('stripe_payment_intent_id', sa.String(length=255), nullable=True),
            sa.Column('stripe_checkout_session_id', sa.String(length=255), nullable=True),
            *_timestamps('created_at', 'updated_at'),
            sa.ForeignKeyConstraint(['buyer_id'], ['users.id'], ondelete='SET NULL'),
            sa.ForeignKeyConstraint(['product_id'], ['products.id'], ondelete='RESTRICT'),
            sa.PrimaryKeyConstraint('id'),
            # Reconciliation relies on this for ON CONFLICT DO NOTHING
            sa.UniqueConstraint('stripe_checkout_session_id')
        )
        op.create_index('ix_orders_id', 'orders', ['id'])
        op.create_index('ix_orders_buyer_id', 'orders', ['buyer_id'])
        op.create_index('ix_orders_product_id', 'orders', ['product_id'])
        op.create_index('ix_orders_stripe_payment_intent_id', 'orders', ['stripe_payment_intent_id'])
        op.create_index('ix_orders_buyer_created', 'orders', ['buyer_id', 'created_at'])

    if 'memberships' not in existing_tables:
        op.create_table(
            'memberships',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('buyer_id', sa.Integer(), nullable=False),
            sa.Column('creator_id', sa.Integer(), nullable=False),
            sa.Column('product_id', sa.Integer(), nullable=False),
            sa.Column('stripe_subscription_id', sa.String(length=255), nullable=True),
            sa.Column('status', sa.String(length=20), nullable=False),
            sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=True),
            sa.Column('canceled_at', sa.DateTime(timezone=True), nullable=True),
            *_timestamps('created_at', 'updated_at'),
            sa.ForeignKeyConstraint(['buyer_id'], ['users.id'], ondelete='CASCADE'),
            sa.ForeignKeyConstraint(['creator_id'], ['users.id'], ondelete='CASCADE'),
            sa.ForeignKeyConstraint(['product_id'], ['products.id'], ondelete='CASCADE'),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('stripe_subscription_id'),
            sa.UniqueConstraint('buyer_id', 'creator_id', 'product_id', name='uq_memberships_buyer_creator_product')
        )
        op.create_index('ix_memberships_id', 'memberships', ['id'])
        op.create_index('ix_memberships_buyer_id', 'memberships', ['buyer_id'])
        op.create_index('ix_memberships_creator_id', 'memberships', ['creator_id'])

    if 'stripe_connect_accounts' not in existing_tables:
        op.create_table(
            'stripe_connect_accounts',
            sa.Column('user_id', sa.Integer(), nullable=False),
            sa.Column('stripe_account_id', sa.String(length=255), nullable=True),
            sa.Column('details_submitted', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('charges_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('payouts_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('connected_at', sa.DateTime(timezone=True), nullable=True),
            *_timestamps('updated_at'),
            sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
            sa.PrimaryKeyConstraint('user_id')
        )
        op.create_index(
            'ix_stripe_connect_accounts_stripe_account_id', 'stripe_connect_accounts', ['stripe_account_id'], unique=True
        )

    if 'stripe_events' not in existing_tables:
        op.create_table(
            'stripe_events',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('stripe_event_id', sa.String(length=255), nullable=False),
            sa.Column('event_type', sa.String(length=100), nullable=False),
            *_timestamps('created_at'),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_stripe_events_id', 'stripe_events', ['id'])
        op.create_index('ix_stripe_events_stripe_event_id', 'stripe_events', ['stripe_event_id'], unique=True)
        op.create_index('ix_stripe_events_event_type', 'stripe_events', ['event_type'])
        op.create_index('ix_stripe_events_created_at', 'stripe_events', ['created_at'])

    if 'notifications' not in existing_tables:
        op.create_table(
            'notifications',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('user_id', sa.Integer(), nullable=False),
            sa.Column('type', sa.String(length=50), nullable=False),
            sa.Column('title', sa.String(length=255), nullable=False),
            sa.Column('body', sa.Text(), nullable=True),
            sa.Column('notification_metadata', sa.JSON(), nullable=True),
            sa.Column('read_at', sa.DateTime(timezone=True), nullable=True),
            *_timestamps('created_at'),
            sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_notifications_id', 'notifications', ['id'])
        op.create_index('ix_notifications_user_id', 'notifications', ['user_id'])
        op.create_index('ix_notifications_user_created', 'notifications', ['user_id', 'created_at'])

    if 'notification_dispatches' not in existing_tables:
        op.create_table(
            'notification_dispatches',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('dedup_key', sa.String(length=255), nullable=False),
            sa.Column('notification_type', sa.String(length=50), nullable=False),
            sa.Column('user_id', sa.Integer(), nullable=True),
            *_timestamps('created_at'),
            sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('dedup_key')
        )
        op.create_index('ix_notification_dispatches_id', 'notification_dispatches', ['id'])


def downgrade() -> None:
    conn = op.get_bind()
    existing_tables = inspect(conn).get_table_names()

    # Reverse dependency order
    for table in (
        'notification_dispatches', 'notifications', 'stripe_events', 'stripe_connect_accounts',
        'memberships', 'orders', 'products', 'creator_profiles', 'account_claim_tokens', 'users',
    ):
        if table in existing_tables:
            op.drop_table(table)
