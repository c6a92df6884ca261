"""Initial stock ledger schema

Revision ID: 20261019_ledger
Revises:
Create Date: 2026-10-19

This migration adds:
1. categories (size configuration per category)
2. products (natural key + weighted-average cost state, optimistic version_id)
3. stock_in_entries (purchases; product_id stored at creation)
4. sale_entries (sales with COGS snapshot)
5. inventory_movements (append-only movement log)
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20261019_ledger'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # ==========================================================================
    # 1. CATEGORIES
    # ==========================================================================
    op.create_table('categories',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=128), nullable=False),
        sa.Column('sizes', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('name', name='uq_categories_name'),
        sqlite_autoincrement=True
    )

    # ==========================================================================
    # 2. PRODUCTS
    # ==========================================================================
    op.create_table('products',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('category_id', sa.Integer(), nullable=False),
        sa.Column('product_name', sa.String(length=255), nullable=False),
        sa.Column('variant', sa.String(length=128), nullable=True, server_default=''),
        sa.Column('ip_category', sa.String(length=128), nullable=True),
        sa.Column('size_stock', sa.JSON(), nullable=False),
        sa.Column('total_stock', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('avg_unit_cost', sa.Numeric(precision=18, scale=6), nullable=False, server_default='0'),
        sa.Column('total_cost_value', sa.Numeric(precision=18, scale=4), nullable=False, server_default='0'),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.ForeignKeyConstraint(['category_id'], ['categories.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('category_id', 'product_name', 'variant', name='uq_products_natural_key'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('products', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_products_category_id'), ['category_id'], unique=False)
        batch_op.create_index('ix_products_category_name', ['category_id', 'product_name'], unique=False)

    # ==========================================================================
    # 3. STOCK-IN ENTRIES
    # ==========================================================================
    op.create_table('stock_in_entries',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('order_type', sa.String(length=16), nullable=False),
        sa.Column('category_id', sa.Integer(), nullable=False),
        sa.Column('product_name', sa.String(length=255), nullable=False),
        sa.Column('variant', sa.String(length=128), nullable=True, server_default=''),
        sa.Column('ip_category', sa.String(length=128), nullable=True),
        sa.Column('product_id', sa.Integer(), nullable=True),
        sa.Column('quantities', sa.JSON(), nullable=False),
        sa.Column('total_quantity', sa.Integer(), nullable=False),
        sa.Column('unit_cost', sa.Numeric(precision=18, scale=4), nullable=False),
        sa.Column('total_cost', sa.Numeric(precision=18, scale=4), nullable=False),
        sa.Column('note', sa.String(length=255), nullable=True),
        sa.Column('created_by', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.ForeignKeyConstraint(['category_id'], ['categories.id'], ),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('stock_in_entries', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_stock_in_entries_date'), ['date'], unique=False)
        batch_op.create_index(batch_op.f('ix_stock_in_entries_category_id'), ['category_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_stock_in_entries_product_id'), ['product_id'], unique=False)
        batch_op.create_index('ix_stock_in_product_date', ['product_id', 'date'], unique=False)
        batch_op.create_index('ix_stock_in_natural_key', ['category_id', 'product_name', 'variant'], unique=False)

    # ==========================================================================
    # 4. SALE ENTRIES
    # ==========================================================================
    op.create_table('sale_entries',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('customer_type', sa.String(length=16), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=True),
        sa.Column('product_name', sa.String(length=255), nullable=False),
        sa.Column('size', sa.String(length=32), nullable=True),
        sa.Column('channel', sa.String(length=16), nullable=True),
        sa.Column('shipping_method', sa.String(length=32), nullable=True),
        sa.Column('unit_price', sa.Numeric(precision=18, scale=4), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('total_amount', sa.Numeric(precision=18, scale=4), nullable=False),
        sa.Column('cost_of_goods_sold', sa.Numeric(precision=18, scale=4), nullable=False, server_default='0'),
        sa.Column('note', sa.String(length=255), nullable=True),
        sa.Column('created_by', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('sale_entries', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_sale_entries_date'), ['date'], unique=False)
        batch_op.create_index(batch_op.f('ix_sale_entries_customer_type'), ['customer_type'], unique=False)
        batch_op.create_index(batch_op.f('ix_sale_entries_product_id'), ['product_id'], unique=False)
        batch_op.create_index('ix_sale_product_date', ['product_id', 'date'], unique=False)

    # ==========================================================================
    # 5. INVENTORY MOVEMENTS (append-only)
    # ==========================================================================
    op.create_table('inventory_movements',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('movement_type', sa.String(length=16), nullable=False),
        sa.Column('size', sa.String(length=32), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('previous_total', sa.Integer(), nullable=False),
        sa.Column('current_total', sa.Integer(), nullable=False),
        sa.Column('reference_type', sa.String(length=32), nullable=True),
        sa.Column('reference_id', sa.Integer(), nullable=True),
        sa.Column('note', sa.String(length=255), nullable=True),
        sa.Column('created_by', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('inventory_movements', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_inventory_movements_product_id'), ['product_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_inventory_movements_movement_type'), ['movement_type'], unique=False)
        batch_op.create_index('ix_movements_product_created', ['product_id', 'created_at'], unique=False)
        batch_op.create_index('ix_movements_reference', ['reference_type', 'reference_id'], unique=False)


def downgrade():
    # Drop tables in reverse order of creation (respect foreign keys)
    op.drop_table('inventory_movements')
    op.drop_table('sale_entries')
    op.drop_table('stock_in_entries')
    op.drop_table('products')
    op.drop_table('categories')
