"""
Organization wallets and wallet transactions

Revision ID: 0002_wallets
Revises: 0001_initial
Create Date: 2026-10-17 14:00:00
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '0002_wallets'
down_revision = '0001_initial'
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'wallets',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('org_id', sa.String(length=64), sa.ForeignKey('organizations.id'), nullable=False, unique=True),
        sa.Column('balance', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('reserved_balance', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(length=8), nullable=False, server_default='USD'),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='active'),
        sa.Column('low_balance_threshold', sa.Numeric(12, 2), nullable=False, server_default='100'),
        sa.Column('auto_reload_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('auto_reload_amount', sa.Numeric(12, 2), nullable=True),
        sa.Column('total_deposits', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('total_withdrawals', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('total_spent', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('last_deposit_at', sa.DateTime(), nullable=True),
        sa.Column('last_transaction_at', sa.DateTime(), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        'wallet_transactions',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('org_id', sa.String(length=64), nullable=False),
        sa.Column('wallet_id', sa.String(length=64), sa.ForeignKey('wallets.id'), nullable=False),
        sa.Column('type', sa.String(length=16), nullable=False),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(length=8), nullable=False, server_default='USD'),
        sa.Column('balance_before', sa.Numeric(12, 2), nullable=False),
        sa.Column('balance_after', sa.Numeric(12, 2), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='completed'),
        sa.Column('reference_type', sa.String(length=16), nullable=False, server_default='manual'),
        sa.Column('reference_id', sa.String(length=128), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('payment_provider', sa.String(length=32), nullable=True),
        sa.Column('payment_transaction_id', sa.String(length=128), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('created_by', sa.String(length=128), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_wallet_transactions_org_created', 'wallet_transactions', ['org_id', 'created_at'])
    op.create_index('ix_wallet_transactions_wallet_type', 'wallet_transactions', ['wallet_id', 'type'])
    op.create_index('ix_wallet_transactions_status', 'wallet_transactions', ['status'])
    op.create_index('ix_wallet_transactions_reference_id', 'wallet_transactions', ['reference_id'])


def downgrade() -> None:
    op.drop_index('ix_wallet_transactions_reference_id', table_name='wallet_transactions')
    op.drop_index('ix_wallet_transactions_status', table_name='wallet_transactions')
    op.drop_index('ix_wallet_transactions_wallet_type', table_name='wallet_transactions')
    op.drop_index('ix_wallet_transactions_org_created', table_name='wallet_transactions')
    op.drop_table('wallet_transactions')
    op.drop_table('wallets')
