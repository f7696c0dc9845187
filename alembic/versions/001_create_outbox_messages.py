"""create outbox_messages table

Revision ID: 001
Revises:
Create Date: 2025-01-01 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'outbox_messages',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('message_type', sa.String(length=255), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('occurred_on', sa.DateTime(timezone=True), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('processed_on', sa.DateTime(timezone=True), nullable=True),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('last_modified_on', sa.DateTime(timezone=True), nullable=True),
        sa.Column('aggregate_type', sa.String(length=100), nullable=True),
        sa.Column('aggregate_id', sa.String(length=255), nullable=True),
        sa.Column('correlation_id', sa.String(length=64), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('retry_count >= 0', name='ck_outbox_messages_retry_count'),
        sa.CheckConstraint(
            "(status = 'processed') = (processed_on IS NOT NULL)",
            name='ck_outbox_messages_processed_on',
        ),
    )
    op.create_index('ix_outbox_messages_status_occurred_on', 'outbox_messages', ['status', 'occurred_on'])
    op.create_index('ix_outbox_messages_status_processed_on', 'outbox_messages', ['status', 'processed_on'])
    op.create_index(op.f('ix_outbox_messages_aggregate_id'), 'outbox_messages', ['aggregate_id'])


def downgrade() -> None:
    op.drop_index(op.f('ix_outbox_messages_aggregate_id'), table_name='outbox_messages')
    op.drop_index('ix_outbox_messages_status_processed_on', table_name='outbox_messages')
    op.drop_index('ix_outbox_messages_status_occurred_on', table_name='outbox_messages')
    op.drop_table('outbox_messages')
