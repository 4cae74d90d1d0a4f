"""
Initial schema: organizations, customers and balance ledger, transactions,
pricing, storefront, integrations and webhook logs

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-17 09:00:00
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '0001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # organizations
    op.create_table(
        'organizations',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('slug', sa.String(length=128), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('currency', sa.String(length=8), nullable=False, server_default='USD'),
        sa.Column('tier', sa.String(length=32), nullable=False, server_default='starter'),
        sa.Column('subscription_status', sa.String(length=32), nullable=False, server_default='active'),
        sa.Column('stripe_customer_id', sa.String(length=128), nullable=True),
        sa.Column('stripe_subscription_id', sa.String(length=128), nullable=True),
        sa.Column('current_period_end', sa.DateTime(), nullable=True),
        sa.Column('transactions_this_month', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('transaction_fees_this_month', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('revenue_this_month', sa.Numeric(14, 2), nullable=False, server_default='0'),
        sa.Column('last_usage_reset', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_organizations_slug', 'organizations', ['slug'], unique=True)
    op.create_index('ix_organizations_stripe_customer_id', 'organizations', ['stripe_customer_id'])

    # customers
    op.create_table(
        'customers',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('org_id', sa.String(length=64), sa.ForeignKey('organizations.id'), nullable=False),
        sa.Column('phone_number', sa.String(length=32), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('name', sa.String(length=255), nullable=True),
        sa.Column('country', sa.String(length=2), nullable=True),
        sa.Column('current_balance', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('balance_currency', sa.String(length=8), nullable=False, server_default='USD'),
        sa.Column('total_assigned', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('total_used', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('total_purchases', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_spent', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('last_purchase_at', sa.DateTime(), nullable=True),
        sa.Column('acquisition_source', sa.String(length=64), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('org_id', 'phone_number', name='uq_customers_org_phone'),
    )
    op.create_index('ix_customers_org_id', 'customers', ['org_id'])

    # balance_history (append-only)
    op.create_table(
        'balance_history',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('org_id', sa.String(length=64), nullable=False),
        sa.Column('customer_id', sa.String(length=64), sa.ForeignKey('customers.id'), nullable=False),
        sa.Column('entry_type', sa.String(length=16), nullable=False),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('previous_balance', sa.Numeric(12, 2), nullable=False),
        sa.Column('new_balance', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(length=8), nullable=False, server_default='USD'),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('created_by', sa.String(length=128), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_balance_history_org_id', 'balance_history', ['org_id'])
    op.create_index('ix_balance_history_customer_created', 'balance_history', ['customer_id', 'created_at'])

    # transactions
    op.create_table(
        'transactions',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('order_id', sa.String(length=64), nullable=False),
        sa.Column('org_id', sa.String(length=64), sa.ForeignKey('organizations.id'), nullable=False),
        sa.Column('customer_id', sa.String(length=64), nullable=True),
        sa.Column('product_sku', sa.String(length=128), nullable=False),
        sa.Column('product_name', sa.String(length=255), nullable=True),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('cost', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('markup', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('discount_amount', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(length=8), nullable=False, server_default='USD'),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('payment_type', sa.String(length=16), nullable=False),
        sa.Column('payment_gateway', sa.String(length=32), nullable=True),
        sa.Column('payment_id', sa.String(length=128), nullable=True),
        sa.Column('provider', sa.String(length=32), nullable=False, server_default='dingconnect'),
        sa.Column('provider_transaction_id', sa.String(length=128), nullable=True),
        sa.Column('recipient_phone', sa.String(length=32), nullable=False),
        sa.Column('recipient_email', sa.String(length=255), nullable=True),
        sa.Column('recipient_name', sa.String(length=255), nullable=True),
        sa.Column('operator_id', sa.String(length=64), nullable=True),
        sa.Column('operator_name', sa.String(length=255), nullable=True),
        sa.Column('operator_country', sa.String(length=2), nullable=False),
        sa.Column('metadata', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        sa.Column('processing_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('failed_at', sa.DateTime(), nullable=True),
        sa.Column('refunded_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_transactions_order_id', 'transactions', ['order_id'], unique=True)
    op.create_index('ix_transactions_customer_id', 'transactions', ['customer_id'])
    op.create_index('ix_transactions_status', 'transactions', ['status'])
    op.create_index('ix_transactions_payment_id', 'transactions', ['payment_id'])
    op.create_index('ix_transactions_provider_transaction_id', 'transactions', ['provider_transaction_id'])
    op.create_index('ix_transactions_org_status', 'transactions', ['org_id', 'status'])
    op.create_index('ix_transactions_org_created', 'transactions', ['org_id', 'created_at'])

    # pricing_rules
    op.create_table(
        'pricing_rules',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('org_id', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('percentage_markup', sa.Numeric(7, 3), nullable=True),
        sa.Column('fixed_markup', sa.Numeric(12, 2), nullable=True),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('applicable_countries', sa.JSON(), nullable=False),
        sa.Column('applicable_regions', sa.JSON(), nullable=False),
        sa.Column('excluded_countries', sa.JSON(), nullable=False),
        sa.Column('min_transaction_amount', sa.Numeric(12, 2), nullable=True),
        sa.Column('max_transaction_amount', sa.Numeric(12, 2), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_pricing_rules_org_active_priority', 'pricing_rules', ['org_id', 'is_active', 'priority'])

    # discounts
    op.create_table(
        'discounts',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('org_id', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('code', sa.String(length=64), nullable=True),
        sa.Column('discount_type', sa.String(length=16), nullable=False, server_default='percentage'),
        sa.Column('value', sa.Numeric(12, 2), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('start_date', sa.DateTime(), nullable=True),
        sa.Column('end_date', sa.DateTime(), nullable=True),
        sa.Column('min_purchase_amount', sa.Numeric(12, 2), nullable=True),
        sa.Column('max_discount_amount', sa.Numeric(12, 2), nullable=True),
        sa.Column('applicable_countries', sa.JSON(), nullable=False),
        sa.Column('applicable_products', sa.JSON(), nullable=False),
        sa.Column('usage_limit', sa.Integer(), nullable=True),
        sa.Column('usage_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_discounts_org_id', 'discounts', ['org_id'])
    op.create_index('uq_discounts_org_code', 'discounts', ['org_id', 'code'], unique=True)

    # products
    op.create_table(
        'products',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('org_id', sa.String(length=64), sa.ForeignKey('organizations.id'), nullable=False),
        sa.Column('sku_code', sa.String(length=128), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('provider', sa.String(length=32), nullable=False, server_default='dingconnect'),
        sa.Column('operator_id', sa.String(length=64), nullable=True),
        sa.Column('operator_name', sa.String(length=255), nullable=False),
        sa.Column('country', sa.String(length=2), nullable=False),
        sa.Column('cost', sa.Numeric(12, 2), nullable=False),
        sa.Column('send_value', sa.Numeric(12, 2), nullable=True),
        sa.Column('currency', sa.String(length=8), nullable=False, server_default='USD'),
        sa.Column('is_variable_value', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('org_id', 'sku_code', name='uq_products_org_sku'),
    )
    op.create_index('ix_products_org_id', 'products', ['org_id'])
    op.create_index('ix_products_country', 'products', ['country'])

    # storefront_settings
    op.create_table(
        'storefront_settings',
        sa.Column('org_id', sa.String(length=64), sa.ForeignKey('organizations.id'), primary_key=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('enabled_countries', sa.JSON(), nullable=False),
        sa.Column('disabled_countries', sa.JSON(), nullable=False),
        sa.Column('all_countries_enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('discount_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('discount_type', sa.String(length=16), nullable=False, server_default='percentage'),
        sa.Column('discount_value', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('discount_min_purchase', sa.Numeric(12, 2), nullable=True),
        sa.Column('discount_start', sa.DateTime(), nullable=True),
        sa.Column('discount_end', sa.DateTime(), nullable=True),
        sa.Column('discount_countries', sa.JSON(), nullable=False),
        sa.Column('discount_description', sa.String(length=255), nullable=True),
        sa.Column('business_name', sa.String(length=255), nullable=True),
        sa.Column('support_email', sa.String(length=255), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )

    # integrations
    op.create_table(
        'integrations',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('org_id', sa.String(length=64), nullable=False),
        sa.Column('provider', sa.String(length=32), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='active'),
        sa.Column('environment', sa.String(length=16), nullable=False, server_default='production'),
        sa.Column('is_primary_email', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('credentials', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_integrations_org_id', 'integrations', ['org_id'])
    # At most one primary email integration per organization
    op.create_index(
        'uq_integrations_primary_email',
        'integrations',
        ['org_id'],
        unique=True,
        postgresql_where=sa.text('is_primary_email'),
        sqlite_where=sa.text('is_primary_email = 1'),
    )

    # webhook_logs
    op.create_table(
        'webhook_logs',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('org_id', sa.String(length=64), nullable=True),
        sa.Column('source', sa.String(length=32), nullable=False),
        sa.Column('event', sa.String(length=128), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('response_code', sa.Integer(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('transaction_id', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_webhook_logs_org_id', 'webhook_logs', ['org_id'])


def downgrade() -> None:
    op.drop_table('webhook_logs')
    op.drop_index('uq_integrations_primary_email', table_name='integrations')
    op.drop_table('integrations')
    op.drop_table('storefront_settings')
    op.drop_table('products')
    op.drop_table('discounts')
    op.drop_table('pricing_rules')
    op.drop_table('transactions')
    op.drop_table('balance_history')
    op.drop_table('customers')
    op.drop_table('organizations')
