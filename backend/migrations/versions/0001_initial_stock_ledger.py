"""initial stock ledger schema

Revision ID: 0001_initial_stock_ledger
Revises:
Create Date: 2026-10-18 00:00:00.000000

Creates the complete schema from scratch:
- merchants, shops, inventory_items: catalog read by the ledger
- stock_accounts: materialized on-hand balance per (shop, item)
- movement_entries: append-only stock ledger
- sale_transactions, sale_line_items: committed sales
- sequence_counters: gap-free invoice numbering
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '0001_initial_stock_ledger'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # ============================================================================
    # Catalog
    # ============================================================================
    op.create_table(
        'merchants',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )

    op.create_table(
        'shops',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('merchant_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['merchant_id'], ['merchants.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('merchant_id', 'name', name='uq_shops_merchant_name'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_shops_merchant_id', 'shops', ['merchant_id'])
    op.create_index('ix_shops_is_active', 'shops', ['is_active'])

    op.create_table(
        'inventory_items',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('merchant_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('sku', sa.String(length=100), nullable=True),
        sa.Column('price_cents', sa.Integer(), nullable=True),
        sa.Column('low_stock_threshold', sa.Integer(), nullable=True),
        sa.Column('is_archived', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['merchant_id'], ['merchants.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('merchant_id', 'sku', name='uq_inventory_items_merchant_sku'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_inventory_items_merchant_id', 'inventory_items', ['merchant_id'])
    op.create_index('ix_inventory_items_merchant_archived', 'inventory_items', ['merchant_id', 'is_archived'])

    # ============================================================================
    # Stock accounts and ledger
    # ============================================================================
    op.create_table(
        'stock_accounts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('shop_id', sa.Integer(), nullable=False),
        sa.Column('item_id', sa.Integer(), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('last_movement_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['shop_id'], ['shops.id']),
        sa.ForeignKeyConstraint(['item_id'], ['inventory_items.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('shop_id', 'item_id', name='uq_stock_accounts_shop_item'),
        sa.CheckConstraint('quantity >= 0', name='ck_stock_accounts_quantity_non_negative'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_stock_accounts_shop_id', 'stock_accounts', ['shop_id'])
    op.create_index('ix_stock_accounts_item_id', 'stock_accounts', ['item_id'])

    op.create_table(
        'movement_entries',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('shop_id', sa.Integer(), nullable=False),
        sa.Column('item_id', sa.Integer(), nullable=False),
        sa.Column('actor_id', sa.String(length=64), nullable=False),
        sa.Column('kind', sa.String(length=32), nullable=False),
        sa.Column('quantity_delta', sa.Integer(), nullable=False),
        sa.Column('resulting_quantity', sa.Integer(), nullable=False),
        sa.Column('reason', sa.String(length=255), nullable=True),
        sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('correlation_id', sa.String(length=64), nullable=False),
        sa.Column('reference_correlation_id', sa.String(length=64), nullable=True),
        sa.ForeignKeyConstraint(['shop_id'], ['shops.id']),
        sa.ForeignKeyConstraint(['item_id'], ['inventory_items.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('resulting_quantity >= 0', name='ck_movement_entries_resulting_non_negative'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_movement_entries_kind', 'movement_entries', ['kind'])
    op.create_index('ix_movement_entries_shop_item_occurred', 'movement_entries',
                    ['shop_id', 'item_id', 'occurred_at'])
    op.create_index('ix_movement_entries_correlation', 'movement_entries', ['correlation_id'])
    op.create_index('ix_movement_entries_reference', 'movement_entries',
                    ['reference_correlation_id', 'item_id'])

    # ============================================================================
    # Sales
    # ============================================================================
    op.create_table(
        'sale_transactions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('shop_id', sa.Integer(), nullable=False),
        sa.Column('merchant_id', sa.Integer(), nullable=False),
        sa.Column('actor_id', sa.String(length=64), nullable=False),
        sa.Column('correlation_id', sa.String(length=64), nullable=False),
        sa.Column('invoice_number', sa.String(length=32), nullable=False),
        sa.Column('idempotency_key', sa.String(length=128), nullable=True),
        sa.Column('payment_type', sa.String(length=32), nullable=False),
        sa.Column('customer_id', sa.String(length=64), nullable=True),
        sa.Column('notes', sa.String(length=255), nullable=True),
        sa.Column('subtotal_cents', sa.Integer(), nullable=False),
        sa.Column('discount_cents', sa.Integer(), nullable=False),
        sa.Column('total_cents', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['shop_id'], ['shops.id']),
        sa.ForeignKeyConstraint(['merchant_id'], ['merchants.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('invoice_number', name='uq_sale_transactions_invoice_number'),
        sa.UniqueConstraint('correlation_id', name='uq_sale_transactions_correlation'),
        sa.UniqueConstraint('shop_id', 'idempotency_key', name='uq_sale_transactions_shop_idempotency'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_sale_transactions_shop_id', 'sale_transactions', ['shop_id'])
    op.create_index('ix_sale_transactions_merchant_id', 'sale_transactions', ['merchant_id'])
    op.create_index('ix_sale_transactions_shop_created', 'sale_transactions', ['shop_id', 'created_at'])

    op.create_table(
        'sale_line_items',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('sale_id', sa.Integer(), nullable=False),
        sa.Column('line_number', sa.Integer(), nullable=False),
        sa.Column('item_id', sa.Integer(), nullable=False),
        sa.Column('item_name', sa.String(length=255), nullable=False),
        sa.Column('item_sku', sa.String(length=100), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('unit_price_cents', sa.Integer(), nullable=False),
        sa.Column('line_total_cents', sa.Integer(), nullable=False),
        sa.Column('movement_entry_id', sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(['sale_id'], ['sale_transactions.id']),
        sa.ForeignKeyConstraint(['item_id'], ['inventory_items.id']),
        sa.ForeignKeyConstraint(['movement_entry_id'], ['movement_entries.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('sale_id', 'item_id', name='uq_sale_line_items_sale_item'),
        sa.UniqueConstraint('sale_id', 'line_number', name='uq_sale_line_items_sale_line'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_sale_line_items_sale_id', 'sale_line_items', ['sale_id'])

    # ============================================================================
    # Sequences
    # ============================================================================
    op.create_table(
        'sequence_counters',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('scope_key', sa.String(length=64), nullable=False),
        sa.Column('last_issued', sa.Integer(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('scope_key', name='uq_sequence_counters_scope'),
        sqlite_autoincrement=True
    )


def downgrade():
    """Drop all tables (destructive operation)."""
    op.drop_table('sequence_counters')
    op.drop_table('sale_line_items')
    op.drop_table('sale_transactions')
    op.drop_table('movement_entries')
    op.drop_table('stock_accounts')
    op.drop_table('inventory_items')
    op.drop_table('shops')
    op.drop_table('merchants')
