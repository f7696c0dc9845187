"""add next_attempt_on to outbox_messages

Revision ID: 002
Revises: 001
Create Date: 2025-02-03 10:30:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '002'
down_revision: Union[str, None] = '001'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column('outbox_messages', sa.Column('next_attempt_on', sa.DateTime(timezone=True), nullable=True))
    op.create_index(
        'ix_outbox_messages_status_next_attempt_on',
        'outbox_messages',
        ['status', 'next_attempt_on'],
    )


def downgrade() -> None:
    op.drop_index('ix_outbox_messages_status_next_attempt_on', table_name='outbox_messages')
    op.drop_column('outbox_messages', 'next_attempt_on')
