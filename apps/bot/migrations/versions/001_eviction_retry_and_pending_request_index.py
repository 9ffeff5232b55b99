"""Retry failed channel evictions, one pending join request per user and channel

Revision ID: 001
Revises: 000
Create Date: 2026-10-20 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001'
down_revision = '000'
branch_labels = None
depends_on = None

PENDING_ONLY = sa.text("status = 'pending'")


def upgrade():
    with op.batch_alter_table('users') as batch_op:
        batch_op.add_column(sa.Column('eviction_pending', sa.Boolean(), nullable=False, server_default=sa.false()))
        batch_op.create_index(batch_op.f('ix_users_eviction_pending'), ['eviction_pending'])

    # Keep only the newest of any duplicated pending requests
    op.execute(
        "UPDATE channel_requests SET status = 'declined', processed_by = 'auto_system', "
        "processed_at = CURRENT_TIMESTAMP "
        "WHERE status = 'pending' AND id NOT IN ("
        "SELECT max_id FROM (SELECT MAX(id) AS max_id FROM channel_requests "
        "WHERE status = 'pending' GROUP BY telegram_id, chat_id) AS newest)"
    )

    op.create_index(
        'uq_channel_requests_pending',
        'channel_requests',
        ['telegram_id', 'chat_id'],
        unique=True,
        postgresql_where=PENDING_ONLY,
        sqlite_where=PENDING_ONLY
    )


def downgrade():
    op.drop_index('uq_channel_requests_pending', table_name='channel_requests')

    with op.batch_alter_table('users') as batch_op:
        batch_op.drop_index(batch_op.f('ix_users_eviction_pending'))
        batch_op.drop_column('eviction_pending')
