"""Slot terms - rate segments and extension/upgrade ledger types

Revision ID: 002
Revises: 001
Create Date: 2026-10-18 09:00:00.000000

Adds rate_since and base_earnings to mining_slots so a rate upgrade can
restart accrual at the new rate without touching earlier earnings. Existing
slots start their only segment at start_at.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '002'
down_revision: Union[str, None] = '001'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

MONEY = sa.Numeric(precision=20, scale=8)
NEW_ACTIVITY_LOG_TYPES = ('SLOT_EXTENSION', 'SLOT_UPGRADE')


def upgrade() -> None:
    op.add_column(
        'mining_slots',
        sa.Column('rate_since', sa.DateTime(timezone=True), nullable=True,
                  comment='Start of the segment earning at the current weekly_rate'),
    )
    op.add_column(
        'mining_slots',
        sa.Column('base_earnings', MONEY, nullable=False, server_default='0',
                  comment='Earnings of all segments before rate_since'),
    )
    op.execute('UPDATE mining_slots SET rate_since = start_at')
    with op.batch_alter_table('mining_slots') as batch_op:
        batch_op.alter_column('rate_since', existing_type=sa.DateTime(timezone=True), nullable=False)

    if op.get_bind().dialect.name == 'postgresql':
        with op.get_context().autocommit_block():
            for value in NEW_ACTIVITY_LOG_TYPES:
                op.execute(f"ALTER TYPE activitylogtype ADD VALUE IF NOT EXISTS '{value}'")


def downgrade() -> None:
    # PostgreSQL cannot drop enum values; the extra labels stay unused
    with op.batch_alter_table('mining_slots') as batch_op:
        batch_op.drop_column('base_earnings')
        batch_op.drop_column('rate_since')
