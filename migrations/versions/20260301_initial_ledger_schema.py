"""Initial ledger schema: stores, products, sales, stock and cash ledgers, drawers, returns

Revision ID: 20260301_initial
Revises:
Create Date: 2026-03-01

This migration creates:
1. stores, products, expense_categories
2. sales and sale_lines
3. stock_movements (append-only) and stock_opnames
4. returns and return_lines
5. cash_transactions (unique sale/return/reversal links)
6. cash_drawers (one OPEN drawer per cashier, partial unique index)
7. daily_sequences and audit_events
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20260301_initial'
down_revision = None
branch_labels = None
depends_on = None


def _timestamp(name, nullable=False):
    return sa.Column(name, sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=nullable)


def upgrade():
    # ==========================================================================
    # 1. REFERENCE DATA
    # ==========================================================================
    op.create_table('stores',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.Column('code', sa.String(length=32), nullable=True),
        sa.Column('timezone', sa.String(length=64), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        _timestamp('created_at'),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('stores', schema=None) as batch_op:
        batch_op.create_index('ix_stores_code', ['code'], unique=True)

    op.create_table('products',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('store_id', sa.Integer(), nullable=False),
        sa.Column('sku', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('price_cents', sa.BigInteger(), nullable=True),
        sa.Column('cost_cents', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('qty', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('min_stock', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('track_stock', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        _timestamp('created_at'),
        _timestamp('updated_at'),
        sa.ForeignKeyConstraint(['store_id'], ['stores.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('store_id', 'sku', name='uq_products_store_sku'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('products', schema=None) as batch_op:
        batch_op.create_index('ix_products_store_id', ['store_id'], unique=False)
        batch_op.create_index('ix_products_store_name', ['store_id', 'name'], unique=False)
        batch_op.create_index('ix_products_store_active', ['store_id', 'is_active'], unique=False)

    op.create_table('expense_categories',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('store_id', sa.Integer(), nullable=False),
        sa.Column('code', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=128), nullable=False),
        sa.Column('description', sa.String(length=255), nullable=True),
        sa.Column('is_system', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        _timestamp('created_at'),
        sa.ForeignKeyConstraint(['store_id'], ['stores.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('store_id', 'code', name='uq_expense_categories_store_code'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('expense_categories', schema=None) as batch_op:
        batch_op.create_index('ix_expense_categories_store_id', ['store_id'], unique=False)

    # ==========================================================================
    # 2. SALES
    # ==========================================================================
    op.create_table('sales',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('store_id', sa.Integer(), nullable=False),
        sa.Column('cashier_id', sa.Integer(), nullable=False),
        sa.Column('business_date', sa.Date(), nullable=False),
        sa.Column('daily_number', sa.Integer(), nullable=False),
        sa.Column('transaction_number', sa.String(length=32), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='DRAFT'),
        sa.Column('total_cents', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('payment_amount_cents', sa.BigInteger(), nullable=True),
        sa.Column('change_cents', sa.BigInteger(), nullable=True),
        sa.Column('payment_method', sa.String(length=16), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        _timestamp('created_at'),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('locked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('deleted_by_user_id', sa.Integer(), nullable=True),
        sa.Column('delete_reason', sa.String(length=255), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['store_id'], ['stores.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('store_id', 'transaction_number', name='uq_sales_store_transaction_number'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('sales', schema=None) as batch_op:
        batch_op.create_index('ix_sales_store_id', ['store_id'], unique=False)
        batch_op.create_index('ix_sales_cashier_id', ['cashier_id'], unique=False)
        batch_op.create_index('ix_sales_status', ['status'], unique=False)
        batch_op.create_index('ix_sales_transaction_number', ['transaction_number'], unique=False)
        batch_op.create_index('ix_sales_store_status_completed', ['store_id', 'status', 'completed_at'], unique=False)
        batch_op.create_index('ix_sales_store_business_date', ['store_id', 'business_date'], unique=False)
        batch_op.create_index('ix_sales_cashier_status', ['cashier_id', 'status'], unique=False)

    # ==========================================================================
    # 3. STOCK LEDGER
    # ==========================================================================
    op.create_table('stock_movements',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('store_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('movement_type', sa.String(length=16), nullable=False),
        sa.Column('quantity_delta', sa.Integer(), nullable=False),
        sa.Column('before_qty', sa.Integer(), nullable=False),
        sa.Column('after_qty', sa.Integer(), nullable=False),
        sa.Column('unit_cost_cents', sa.BigInteger(), nullable=True),
        sa.Column('reference_type', sa.String(length=16), nullable=False),
        sa.Column('reference_id', sa.Integer(), nullable=True),
        sa.Column('notes', sa.String(length=255), nullable=True),
        sa.Column('created_by_user_id', sa.Integer(), nullable=True),
        _timestamp('occurred_at'),
        sa.ForeignKeyConstraint(['store_id'], ['stores.id'], ),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('stock_movements', schema=None) as batch_op:
        batch_op.create_index('ix_stock_movements_store_id', ['store_id'], unique=False)
        batch_op.create_index('ix_stock_movements_product_id', ['product_id'], unique=False)
        batch_op.create_index('ix_stock_movements_movement_type', ['movement_type'], unique=False)
        batch_op.create_index('ix_stock_movements_reference_type', ['reference_type'], unique=False)
        batch_op.create_index('ix_stock_movements_occurred_at', ['occurred_at'], unique=False)
        batch_op.create_index('ix_stock_movements_store_product_occurred', ['store_id', 'product_id', 'occurred_at'], unique=False)
        batch_op.create_index('ix_stock_movements_product_type_occurred', ['product_id', 'movement_type', 'occurred_at'], unique=False)
        batch_op.create_index('ix_stock_movements_reference', ['reference_type', 'reference_id'], unique=False)

    op.create_table('sale_lines',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('sale_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('unit_price_cents', sa.BigInteger(), nullable=False),
        sa.Column('subtotal_cents', sa.BigInteger(), nullable=False),
        sa.Column('stock_movement_id', sa.Integer(), nullable=True),
        _timestamp('created_at'),
        sa.ForeignKeyConstraint(['sale_id'], ['sales.id'], ),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ),
        sa.ForeignKeyConstraint(['stock_movement_id'], ['stock_movements.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('sale_id', 'product_id', name='uq_sale_lines_sale_product'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('sale_lines', schema=None) as batch_op:
        batch_op.create_index('ix_sale_lines_sale_id', ['sale_id'], unique=False)
        batch_op.create_index('ix_sale_lines_product_id', ['product_id'], unique=False)

    op.create_table('stock_opnames',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('store_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('system_qty', sa.Integer(), nullable=False),
        sa.Column('actual_qty', sa.Integer(), nullable=False),
        sa.Column('difference', sa.Integer(), nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('processed', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('processed_by_user_id', sa.Integer(), nullable=True),
        sa.Column('stock_movement_id', sa.Integer(), nullable=True),
        sa.Column('created_by_user_id', sa.Integer(), nullable=True),
        _timestamp('created_at'),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['store_id'], ['stores.id'], ),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ),
        sa.ForeignKeyConstraint(['stock_movement_id'], ['stock_movements.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('stock_opnames', schema=None) as batch_op:
        batch_op.create_index('ix_stock_opnames_store_id', ['store_id'], unique=False)
        batch_op.create_index('ix_stock_opnames_product_id', ['product_id'], unique=False)
        batch_op.create_index('ix_stock_opnames_store_processed', ['store_id', 'processed'], unique=False)

    # ==========================================================================
    # 4. RETURNS
    # ==========================================================================
    op.create_table('returns',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('store_id', sa.Integer(), nullable=False),
        sa.Column('original_sale_id', sa.Integer(), nullable=False),
        sa.Column('cashier_id', sa.Integer(), nullable=False),
        sa.Column('business_date', sa.Date(), nullable=False),
        sa.Column('daily_number', sa.Integer(), nullable=False),
        sa.Column('return_number', sa.String(length=32), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='COMPLETED'),
        sa.Column('refund_total_cents', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('refund_method', sa.String(length=16), nullable=False, server_default='CASH'),
        sa.Column('notes', sa.Text(), nullable=True),
        _timestamp('created_at'),
        sa.ForeignKeyConstraint(['store_id'], ['stores.id'], ),
        sa.ForeignKeyConstraint(['original_sale_id'], ['sales.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('store_id', 'return_number', name='uq_returns_store_return_number'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('returns', schema=None) as batch_op:
        batch_op.create_index('ix_returns_store_id', ['store_id'], unique=False)
        batch_op.create_index('ix_returns_original_sale_id', ['original_sale_id'], unique=False)
        batch_op.create_index('ix_returns_cashier_id', ['cashier_id'], unique=False)
        batch_op.create_index('ix_returns_store_created', ['store_id', 'created_at'], unique=False)

    op.create_table('return_lines',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('return_id', sa.Integer(), nullable=False),
        sa.Column('original_sale_line_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('unit_price_cents', sa.BigInteger(), nullable=False),
        sa.Column('subtotal_cents', sa.BigInteger(), nullable=False),
        sa.Column('stock_movement_id', sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(['return_id'], ['returns.id'], ),
        sa.ForeignKeyConstraint(['original_sale_line_id'], ['sale_lines.id'], ),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ),
        sa.ForeignKeyConstraint(['stock_movement_id'], ['stock_movements.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('return_lines', schema=None) as batch_op:
        batch_op.create_index('ix_return_lines_return_id', ['return_id'], unique=False)
        batch_op.create_index('ix_return_lines_product_id', ['product_id'], unique=False)
        batch_op.create_index('ix_return_lines_sale_line', ['original_sale_line_id'], unique=False)

    # ==========================================================================
    # 5. CASH LEDGER
    # ==========================================================================
    op.create_table('cash_transactions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('store_id', sa.Integer(), nullable=False),
        sa.Column('transaction_number', sa.String(length=32), nullable=False),
        sa.Column('transaction_type', sa.String(length=16), nullable=False),
        sa.Column('amount_cents', sa.BigInteger(), nullable=False),
        sa.Column('payment_method', sa.String(length=16), nullable=False),
        sa.Column('category_id', sa.Integer(), nullable=True),
        sa.Column('category_type', sa.String(length=16), nullable=True),
        sa.Column('sale_id', sa.Integer(), nullable=True),
        sa.Column('return_id', sa.Integer(), nullable=True),
        sa.Column('reversed_sale_id', sa.Integer(), nullable=True),
        sa.Column('description', sa.String(length=255), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('transaction_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('is_verified', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('verified_by_user_id', sa.Integer(), nullable=True),
        sa.Column('verified_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_by_user_id', sa.Integer(), nullable=True),
        _timestamp('created_at'),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('deleted_by_user_id', sa.Integer(), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['store_id'], ['stores.id'], ),
        sa.ForeignKeyConstraint(['category_id'], ['expense_categories.id'], ),
        sa.ForeignKeyConstraint(['sale_id'], ['sales.id'], ),
        sa.ForeignKeyConstraint(['return_id'], ['returns.id'], ),
        sa.ForeignKeyConstraint(['reversed_sale_id'], ['sales.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('store_id', 'transaction_number', name='uq_cash_transactions_store_number'),
        sa.UniqueConstraint('sale_id'),
        sa.UniqueConstraint('return_id'),
        sa.UniqueConstraint('reversed_sale_id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('cash_transactions', schema=None) as batch_op:
        batch_op.create_index('ix_cash_transactions_store_id', ['store_id'], unique=False)
        batch_op.create_index('ix_cash_transactions_transaction_type', ['transaction_type'], unique=False)
        batch_op.create_index('ix_cash_transactions_payment_method', ['payment_method'], unique=False)
        batch_op.create_index('ix_cash_transactions_category_id', ['category_id'], unique=False)
        batch_op.create_index('ix_cash_transactions_transaction_date', ['transaction_date'], unique=False)
        batch_op.create_index('ix_cash_transactions_store_date', ['store_id', 'transaction_date'], unique=False)
        batch_op.create_index(
            'ix_cash_transactions_creator_method_date',
            ['created_by_user_id', 'payment_method', 'transaction_date'],
            unique=False,
        )

    # ==========================================================================
    # 6. CASH DRAWERS
    # ==========================================================================
    op.create_table('cash_drawers',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('store_id', sa.Integer(), nullable=False),
        sa.Column('cashier_id', sa.Integer(), nullable=False),
        sa.Column('shift_start_time', sa.DateTime(timezone=True), nullable=False),
        sa.Column('shift_end_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('opening_balance_cents', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('cash_in_cents', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('cash_out_cents', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('expected_balance_cents', sa.BigInteger(), nullable=True),
        sa.Column('closing_balance_cents', sa.BigInteger(), nullable=True),
        sa.Column('difference_cents', sa.BigInteger(), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='OPEN'),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('closed_by_user_id', sa.Integer(), nullable=True),
        _timestamp('created_at'),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['store_id'], ['stores.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('cash_drawers', schema=None) as batch_op:
        batch_op.create_index('ix_cash_drawers_store_id', ['store_id'], unique=False)
        batch_op.create_index('ix_cash_drawers_cashier_id', ['cashier_id'], unique=False)
        batch_op.create_index('ix_cash_drawers_status', ['status'], unique=False)
        batch_op.create_index('ix_cash_drawers_store_shift_start', ['store_id', 'shift_start_time'], unique=False)
        batch_op.create_index(
            'uq_cash_drawers_open_per_cashier',
            ['cashier_id'],
            unique=True,
            sqlite_where=sa.text("status = 'OPEN'"),
            postgresql_where=sa.text("status = 'OPEN'"),
        )

    # ==========================================================================
    # 7. SEQUENCES AND AUDIT
    # ==========================================================================
    op.create_table('daily_sequences',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('store_id', sa.Integer(), nullable=False),
        sa.Column('sequence_type', sa.String(length=16), nullable=False),
        sa.Column('business_date', sa.Date(), nullable=False),
        sa.Column('next_number', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['store_id'], ['stores.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('store_id', 'sequence_type', 'business_date', name='uq_daily_sequences_store_type_date'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('daily_sequences', schema=None) as batch_op:
        batch_op.create_index('ix_daily_sequences_store_id', ['store_id'], unique=False)

    op.create_table('audit_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('store_id', sa.Integer(), nullable=False),
        sa.Column('event_type', sa.String(length=64), nullable=False),
        sa.Column('event_category', sa.String(length=32), nullable=False),
        sa.Column('entity_type', sa.String(length=64), nullable=False),
        sa.Column('entity_id', sa.Integer(), nullable=False),
        sa.Column('actor_user_id', sa.Integer(), nullable=True),
        _timestamp('occurred_at'),
        sa.Column('note', sa.String(length=255), nullable=True),
        sa.Column('payload', sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(['store_id'], ['stores.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('audit_events', schema=None) as batch_op:
        batch_op.create_index('ix_audit_events_store_id', ['store_id'], unique=False)
        batch_op.create_index('ix_audit_events_event_type', ['event_type'], unique=False)
        batch_op.create_index('ix_audit_events_event_category', ['event_category'], unique=False)
        batch_op.create_index('ix_audit_events_actor_user_id', ['actor_user_id'], unique=False)
        batch_op.create_index('ix_audit_events_store_occurred', ['store_id', 'occurred_at'], unique=False)
        batch_op.create_index('ix_audit_events_entity', ['entity_type', 'entity_id'], unique=False)


def downgrade():
    for table in (
        'audit_events',
        'daily_sequences',
        'cash_drawers',
        'cash_transactions',
        'return_lines',
        'returns',
        'stock_opnames',
        'sale_lines',
        'stock_movements',
        'sales',
        'expense_categories',
        'products',
        'stores',
    ):
        op.drop_table(table)
