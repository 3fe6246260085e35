"""Stock pools/items and retailer credit/kickback ledgers

Revision ID: 20261019_initial
Revises:
Create Date: 2026-10-19

This migration adds:
1. stock_pools (materialized item-state counters, versioned)
2. stock_items (encrypted payloads, claim metadata)
3. ledger_accounts (one per retailer per kind, versioned)
4. ledger_transactions (append-only history, per-account sequence)
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20261019_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # ==========================================================================
    # 1. STOCK POOLS
    # ==========================================================================
    op.create_table('stock_pools',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('credential_type', sa.String(length=16), nullable=False),
        sa.Column('bucket_id', sa.String(length=64), nullable=False),
        sa.Column('network_provider', sa.String(length=64), nullable=True),
        sa.Column('product_type', sa.String(length=64), nullable=True),
        sa.Column('unit_price_cents', sa.Integer(), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('batch_label', sa.String(length=128), nullable=True),
        sa.Column('supplier', sa.String(length=128), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='ACTIVE'),
        sa.Column('total_quantity', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('available_quantity', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('reserved_quantity', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('used_quantity', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('retired_quantity', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_by', sa.String(length=64), nullable=True),
        sa.Column('last_modified_by', sa.String(length=64), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.CheckConstraint('available_quantity >= 0', name='ck_stock_pools_available_nonneg'),
        sa.CheckConstraint('reserved_quantity >= 0', name='ck_stock_pools_reserved_nonneg'),
        sa.CheckConstraint('used_quantity >= 0', name='ck_stock_pools_used_nonneg'),
        sa.CheckConstraint('retired_quantity >= 0', name='ck_stock_pools_retired_nonneg'),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('stock_pools', schema=None) as batch_op:
        batch_op.create_index('ix_stock_pools_bucket_type_status', ['bucket_id', 'credential_type', 'status'], unique=False)
        batch_op.create_index(batch_op.f('ix_stock_pools_bucket_id'), ['bucket_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_stock_pools_credential_type'), ['credential_type'], unique=False)
        batch_op.create_index(batch_op.f('ix_stock_pools_status'), ['status'], unique=False)

    # ==========================================================================
    # 2. STOCK ITEMS
    # ==========================================================================
    op.create_table('stock_items',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('item_id', sa.String(length=32), nullable=False),
        sa.Column('pool_id', sa.Integer(), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False),
        sa.Column('secret_ciphertext', sa.Text(), nullable=False),
        sa.Column('serial_number', sa.String(length=64), nullable=True),
        sa.Column('price_cents', sa.Integer(), nullable=True),
        sa.Column('item_type', sa.String(length=64), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('extras', sa.JSON(), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='AVAILABLE'),
        sa.Column('order_id', sa.String(length=64), nullable=True),
        sa.Column('claimant_id', sa.String(length=64), nullable=True),
        sa.Column('claimant_email', sa.String(length=255), nullable=True),
        sa.Column('assigned_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('used_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('expired_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('status_reason', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.ForeignKeyConstraint(['pool_id'], ['stock_pools.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('item_id', name='uq_stock_items_item_id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('stock_items', schema=None) as batch_op:
        batch_op.create_index('ix_stock_items_pool_status_position', ['pool_id', 'status', 'position'], unique=False)
        batch_op.create_index('ix_stock_items_order', ['order_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_stock_items_pool_id'), ['pool_id'], unique=False)

    # ==========================================================================
    # 3. LEDGER ACCOUNTS
    # ==========================================================================
    op.create_table('ledger_accounts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('retailer_id', sa.String(length=64), nullable=False),
        sa.Column('kind', sa.String(length=16), nullable=False),
        sa.Column('limit_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('used_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('available_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('outstanding_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('payment_terms_days', sa.Integer(), nullable=False, server_default='30'),
        sa.Column('last_payment_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('next_due_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('low_balance_threshold_cents', sa.Integer(), nullable=True),
        sa.Column('send_low_balance_alert', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='ACTIVE'),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('next_sequence', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_by', sa.String(length=64), nullable=True),
        sa.Column('last_modified_by', sa.String(length=64), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.CheckConstraint('limit_cents >= 0', name='ck_ledger_accounts_limit_nonneg'),
        sa.CheckConstraint('used_cents >= 0', name='ck_ledger_accounts_used_nonneg'),
        sa.CheckConstraint('available_cents >= 0', name='ck_ledger_accounts_available_nonneg'),
        sa.CheckConstraint('outstanding_cents >= 0', name='ck_ledger_accounts_outstanding_nonneg'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('retailer_id', 'kind', name='uq_ledger_accounts_retailer_kind'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('ledger_accounts', schema=None) as batch_op:
        batch_op.create_index('ix_ledger_accounts_kind_status', ['kind', 'status'], unique=False)
        batch_op.create_index(batch_op.f('ix_ledger_accounts_retailer_id'), ['retailer_id'], unique=False)

    # ==========================================================================
    # 4. LEDGER TRANSACTIONS
    # ==========================================================================
    op.create_table('ledger_transactions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('account_id', sa.Integer(), nullable=False),
        sa.Column('sequence', sa.Integer(), nullable=False),
        sa.Column('transaction_ref', sa.String(length=40), nullable=False),
        sa.Column('transaction_type', sa.String(length=24), nullable=False),
        sa.Column('amount_cents', sa.Integer(), nullable=False),
        sa.Column('balance_after_cents', sa.Integer(), nullable=False),
        sa.Column('description', sa.String(length=255), nullable=True),
        sa.Column('order_id', sa.String(length=64), nullable=True),
        sa.Column('processed_by', sa.String(length=64), nullable=True),
        sa.Column('occurred_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.ForeignKeyConstraint(['account_id'], ['ledger_accounts.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('account_id', 'sequence', name='uq_ledger_transactions_account_sequence'),
        sa.UniqueConstraint('transaction_ref', name='uq_ledger_transactions_ref'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('ledger_transactions', schema=None) as batch_op:
        batch_op.create_index('ix_ledger_transactions_order', ['order_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_ledger_transactions_account_id'), ['account_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_ledger_transactions_transaction_type'), ['transaction_type'], unique=False)
        batch_op.create_index(batch_op.f('ix_ledger_transactions_occurred_at'), ['occurred_at'], unique=False)


def downgrade():
    with op.batch_alter_table('ledger_transactions', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_ledger_transactions_occurred_at'))
        batch_op.drop_index(batch_op.f('ix_ledger_transactions_transaction_type'))
        batch_op.drop_index(batch_op.f('ix_ledger_transactions_account_id'))
        batch_op.drop_index('ix_ledger_transactions_order')
    op.drop_table('ledger_transactions')

    with op.batch_alter_table('ledger_accounts', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_ledger_accounts_retailer_id'))
        batch_op.drop_index('ix_ledger_accounts_kind_status')
    op.drop_table('ledger_accounts')

    with op.batch_alter_table('stock_items', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_stock_items_pool_id'))
        batch_op.drop_index('ix_stock_items_order')
        batch_op.drop_index('ix_stock_items_pool_status_position')
    op.drop_table('stock_items')

    with op.batch_alter_table('stock_pools', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_stock_pools_status'))
        batch_op.drop_index(batch_op.f('ix_stock_pools_credential_type'))
        batch_op.drop_index(batch_op.f('ix_stock_pools_bucket_id'))
        batch_op.drop_index('ix_stock_pools_bucket_type_status')
    op.drop_table('stock_pools')
