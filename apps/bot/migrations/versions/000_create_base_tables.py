"""Create paywall tables

Revision ID: 000
Revises: 
Create Date: 2026-10-19 10:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '000'
down_revision = None
branch_labels = None
depends_on = None


def _base_columns():
    return [
        sa.Column('id', sa.BigInteger(), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
    ]


def upgrade():
    # Create users table
    op.create_table('users',
        *_base_columns(),
        sa.Column('telegram_id', sa.BigInteger(), nullable=False),
        sa.Column('username', sa.String(), nullable=True),
        sa.Column('first_name', sa.String(), nullable=True),
        sa.Column('email', sa.String(), nullable=True),
        sa.Column('status', sa.String(), nullable=False, server_default='inactive'),
        sa.Column('subscription_end', sa.DateTime(), nullable=True),
        sa.Column('auto_payment_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('payment_method_id', sa.String(), nullable=True),
        sa.Column('auto_payment_amount', sa.Numeric(precision=10, scale=2), nullable=True),
        sa.Column('auto_payment_interval_minutes', sa.Integer(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_users_id'), 'users', ['id'])
    op.create_index(op.f('ix_users_telegram_id'), 'users', ['telegram_id'], unique=True)
    op.create_index(op.f('ix_users_status'), 'users', ['status'])
    op.create_index(op.f('ix_users_auto_payment_enabled'), 'users', ['auto_payment_enabled'])

    # Create payments table
    op.create_table('payments',
        *_base_columns(),
        sa.Column('payment_id', sa.String(), nullable=False),
        sa.Column('user_id', sa.BigInteger(), nullable=False),
        sa.Column('gateway', sa.String(), nullable=False),
        sa.Column('amount', sa.Numeric(precision=10, scale=2), nullable=False),
        sa.Column('currency', sa.String(), nullable=True),
        sa.Column('status', sa.String(), nullable=False, server_default='pending'),
        sa.Column('payment_method_id', sa.String(), nullable=True),
        sa.Column('confirmation_url', sa.String(), nullable=True),
        sa.Column('purpose', sa.String(), nullable=False),
        sa.Column('purpose_data', sa.JSON(), nullable=True),
        sa.Column('confirmed_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_payments_id'), 'payments', ['id'])
    op.create_index(op.f('ix_payments_payment_id'), 'payments', ['payment_id'], unique=True)
    op.create_index(op.f('ix_payments_user_id'), 'payments', ['user_id'])
    op.create_index(op.f('ix_payments_status'), 'payments', ['status'])

    # Create payment_methods table
    op.create_table('payment_methods',
        *_base_columns(),
        sa.Column('payment_method_id', sa.String(), nullable=False),
        sa.Column('user_id', sa.BigInteger(), nullable=False),
        sa.Column('gateway', sa.String(), nullable=False, server_default='yookassa'),
        sa.Column('type', sa.String(), nullable=False, server_default='card'),
        sa.Column('card_mask', sa.String(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('auto_payment_enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('next_charge_at', sa.DateTime(), nullable=True),
        sa.Column('deactivated_at', sa.DateTime(), nullable=True),
        sa.Column('deactivation_reason', sa.String(), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_payment_methods_id'), 'payment_methods', ['id'])
    op.create_index(op.f('ix_payment_methods_payment_method_id'), 'payment_methods', ['payment_method_id'], unique=True)
    op.create_index(op.f('ix_payment_methods_user_id'), 'payment_methods', ['user_id'])
    op.create_index(op.f('ix_payment_methods_next_charge_at'), 'payment_methods', ['next_charge_at'])

    # Create channel_requests table
    op.create_table('channel_requests',
        *_base_columns(),
        sa.Column('telegram_id', sa.BigInteger(), nullable=False),
        sa.Column('chat_id', sa.BigInteger(), nullable=False),
        sa.Column('chat_title', sa.String(), nullable=True),
        sa.Column('username', sa.String(), nullable=True),
        sa.Column('status', sa.String(), nullable=False, server_default='pending'),
        sa.Column('requested_at', sa.DateTime(), nullable=False),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('processed_by', sa.String(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_channel_requests_id'), 'channel_requests', ['id'])
    op.create_index(op.f('ix_channel_requests_telegram_id'), 'channel_requests', ['telegram_id'])
    op.create_index(op.f('ix_channel_requests_chat_id'), 'channel_requests', ['chat_id'])
    op.create_index(op.f('ix_channel_requests_status'), 'channel_requests', ['status'])

    # Create audit_log table
    op.create_table('audit_log',
        *_base_columns(),
        sa.Column('telegram_id', sa.BigInteger(), nullable=False),
        sa.Column('action', sa.String(), nullable=False),
        sa.Column('details', sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_audit_log_id'), 'audit_log', ['id'])
    op.create_index(op.f('ix_audit_log_telegram_id'), 'audit_log', ['telegram_id'])
    op.create_index(op.f('ix_audit_log_action'), 'audit_log', ['action'])


def downgrade():
    op.drop_table('audit_log')
    op.drop_table('channel_requests')
    op.drop_table('payment_methods')
    op.drop_table('payments')
    op.drop_table('users')
