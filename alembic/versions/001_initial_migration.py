"""Initial migration - mining slots, wallets and activity logs

Revision ID: 001
Revises: 
Create Date: 2026-10-17 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

MONEY = sa.Numeric(precision=20, scale=8)
ACTIVITY_LOG_TYPES = (
    'CLAIM', 'AUTO_CLAIM', 'SLOT_EXPIRED', 'INVESTMENT',
    'DEPOSIT', 'WITHDRAWAL', 'RECONCILIATION', 'ADJUSTMENT',
)


def upgrade() -> None:
    op.create_table('mining_slots',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('owner_id', sa.String(length=64), nullable=False, comment='Identifier of the owning user'),
        sa.Column('principal', MONEY, nullable=False, comment='Invested amount'),
        sa.Column('weekly_rate', MONEY, nullable=False, comment='Yield per week as a fraction of principal'),
        sa.Column('start_at', sa.DateTime(timezone=True), nullable=False, comment='When the slot started earning'),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True, comment='Hard expiry; NULL for open-ended slots'),
        sa.Column('last_accrued_at', sa.DateTime(timezone=True), nullable=False, comment='Watermark up to which earnings have been computed'),
        sa.Column('accrued_earnings', MONEY, nullable=False, comment='Earnings computed but not yet moved to the wallet'),
        sa.Column('claimed_earnings', MONEY, nullable=False, comment='Cumulative earnings credited to the wallet from this slot'),
        sa.Column('version', sa.Integer(), nullable=False, comment='Optimistic concurrency counter, incremented by every write'),
        sa.Column('is_active', sa.Boolean(), nullable=False, comment='False once the slot is closed'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, comment='Row creation timestamp'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, comment='Last modification timestamp'),
        sa.CheckConstraint('principal > 0', name='ck_mining_slots_principal_positive'),
        sa.CheckConstraint('weekly_rate >= 0 AND weekly_rate <= 1', name='ck_mining_slots_rate_range'),
        sa.CheckConstraint('accrued_earnings >= 0', name='ck_mining_slots_accrued_non_negative'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_mining_slots_owner_active', 'mining_slots', ['owner_id', 'is_active'])
    op.create_index('ix_mining_slots_active_expires', 'mining_slots', ['is_active', 'expires_at'])

    op.create_table('wallets',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('owner_id', sa.String(length=64), nullable=False, comment='Identifier of the owning user'),
        sa.Column('currency', sa.String(length=16), nullable=False, comment='Currency code'),
        sa.Column('balance', MONEY, nullable=False, comment='Spendable balance, never negative'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, comment='Row creation timestamp'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, comment='Last modification timestamp'),
        sa.CheckConstraint('balance >= 0', name='ck_wallets_balance_non_negative'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('owner_id', 'currency', name='uq_wallets_owner_currency')
    )

    op.create_table('activity_logs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('owner_id', sa.String(length=64), nullable=False),
        sa.Column('type', sa.Enum(*ACTIVITY_LOG_TYPES, name='activitylogtype'), nullable=False),
        sa.Column('amount', MONEY, nullable=False, comment='Signed balance change'),
        sa.Column('currency', sa.String(length=16), nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('reference_id', sa.String(length=64), nullable=True, comment='Slot id the entry concerns, if any'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_activity_logs_owner_created', 'activity_logs', ['owner_id', 'created_at'])
    op.create_index('ix_activity_logs_reference', 'activity_logs', ['reference_id'])


def downgrade() -> None:
    op.drop_index('ix_activity_logs_reference', table_name='activity_logs')
    op.drop_index('ix_activity_logs_owner_created', table_name='activity_logs')
    op.drop_table('activity_logs')
    op.drop_table('wallets')
    op.drop_index('ix_mining_slots_active_expires', table_name='mining_slots')
    op.drop_index('ix_mining_slots_owner_active', table_name='mining_slots')
    op.drop_table('mining_slots')
    sa.Enum(name='activitylogtype').drop(op.get_bind(), checkfirst=True)
