"""Create points ledger tables: journal_entries, points_lots, points_balances.

Revision ID: a1c4e7f20b31
Revises:
Create Date: 2026-10-16
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'a1c4e7f20b31'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    """Create the lot store, balance aggregate and journal."""
    op.create_table(
        'journal_entries',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('kind', sa.String(20), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('balance_after', sa.Integer(), nullable=False),
        sa.Column('lot_ids', sa.JSON(), nullable=False),
        sa.Column('external_reference', sa.String(100), nullable=True),
        sa.Column('purchase_amount', sa.Numeric(12, 2), nullable=True),
        sa.Column('category', sa.String(50), nullable=True),
        sa.Column('product_code', sa.String(50), nullable=True),
        sa.Column('occurred_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'kind', 'external_reference', name='uq_journal_user_kind_reference'),
    )
    op.create_index('ix_journal_entries_user_id', 'journal_entries', ['user_id'])
    op.create_index('ix_journal_entries_user_created', 'journal_entries', ['user_id', 'created_at'])

    op.create_table(
        'points_lots',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('original_amount', sa.Integer(), nullable=False),
        sa.Column('remaining_amount', sa.Integer(), nullable=False),
        sa.Column('state', sa.String(20), nullable=False, server_default='active'),
        sa.Column('earned_at', sa.DateTime(), nullable=False),
        sa.Column('valid_until', sa.DateTime(), nullable=False),
        sa.Column('journal_entry_id', sa.Integer(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['journal_entry_id'], ['journal_entries.id']),
        sa.CheckConstraint('remaining_amount >= 0', name='ck_points_lots_remaining_nonneg'),
        sa.CheckConstraint('remaining_amount <= original_amount', name='ck_points_lots_remaining_le_original'),
    )
    op.create_index('ix_points_lots_user_id', 'points_lots', ['user_id'])
    op.create_index('ix_points_lots_user_state_valid', 'points_lots', ['user_id', 'state', 'valid_until'])

    op.create_table(
        'points_balances',
        sa.Column('user_id', sa.Integer(), autoincrement=False, nullable=False),
        sa.Column('balance', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('lifetime_earned', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('lifetime_redeemed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('lifetime_expired', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('user_id'),
        sa.CheckConstraint('balance >= 0', name='ck_points_balances_nonneg'),
    )


def downgrade():
    """Drop points ledger tables."""
    op.drop_table('points_balances')
    op.drop_index('ix_points_lots_user_state_valid', table_name='points_lots')
    op.drop_index('ix_points_lots_user_id', table_name='points_lots')
    op.drop_table('points_lots')
    op.drop_index('ix_journal_entries_user_created', table_name='journal_entries')
    op.drop_index('ix_journal_entries_user_id', table_name='journal_entries')
    op.drop_table('journal_entries')
