"""0001 initial schema - catalog, ledger, POS, counting, sync

Revision ID: 0001_initial_schema
Revises: 
Create Date: 2026-10-19

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '0001_initial_schema'
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade():
    # 1) Catalog
    op.create_table(
        'product',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('sku', sa.String(length=64), nullable=False, unique=True),
        sa.Column('barcode', sa.String(length=64), nullable=True, unique=True),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('category', sa.String(length=128), nullable=True),
        sa.Column('location', sa.String(length=128), nullable=True),
        sa.Column('base_price', sa.Numeric(12, 2), nullable=False, server_default='0.00'),
        sa.Column('cost_price', sa.Numeric(12, 2), nullable=True),
        sa.Column('tax_rate', sa.Numeric(5, 2), nullable=False, server_default='0.00'),
        sa.Column('quantity_in_stock', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('reorder_level', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('reorder_quantity', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('version', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index('ix_product_category', 'product', ['category'])
    op.create_index('ix_product_location', 'product', ['location'])
    op.create_index('ix_product_category_active', 'product', ['category', 'is_active'])

    op.create_table(
        'document_sequence',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('sequence_key', sa.String(length=128), nullable=False, unique=True),
        sa.Column('current_value', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    )

    # 2) Ledger (append-only)
    op.create_table(
        'inventory_adjustment',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('adjustment_number', sa.String(length=32), nullable=False, unique=True),
        sa.Column('product_id', sa.Integer(), sa.ForeignKey('product.id'), nullable=False),
        sa.Column('adjustment_type', sa.String(length=32), nullable=False),
        sa.Column('quantity_change', sa.Integer(), nullable=False),
        sa.Column('old_quantity', sa.Integer(), nullable=False),
        sa.Column('new_quantity', sa.Integer(), nullable=False),
        sa.Column('reason', sa.Text(), nullable=False),
        sa.Column('actor_id', sa.String(length=64), nullable=True),
        sa.Column('reference_type', sa.String(length=32), nullable=True),
        sa.Column('reference_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint('quantity_change <> 0', name='ck_adjustment_nonzero_change'),
        sa.CheckConstraint('new_quantity = old_quantity + quantity_change', name='ck_adjustment_fold'),
    )
    op.create_index('ix_inventory_adjustment_product_id', 'inventory_adjustment', ['product_id'])
    op.create_index('ix_inventory_adjustment_adjustment_type', 'inventory_adjustment', ['adjustment_type'])
    op.create_index('ix_inventory_adjustment_actor_id', 'inventory_adjustment', ['actor_id'])
    op.create_index('ix_inventory_adjustment_created_at', 'inventory_adjustment', ['created_at'])
    op.create_index('ix_adjustment_product_id_id', 'inventory_adjustment', ['product_id', 'id'])
    op.create_index('ix_adjustment_reference', 'inventory_adjustment', ['reference_type', 'reference_id'])

    # 3) Point of sale
    op.create_table(
        'terminal',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('terminal_number', sa.String(length=32), nullable=False, unique=True),
        sa.Column('terminal_name', sa.String(length=128), nullable=False),
        sa.Column('location', sa.String(length=255), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('last_sync_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_heartbeat_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_synced_sequence', sa.Integer(), nullable=False, server_default='0'),
        *_timestamps(),
    )

    op.create_table(
        'pos_transaction',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('transaction_number', sa.String(length=64), nullable=False, unique=True),
        sa.Column('idempotency_key', sa.String(length=128), nullable=False, unique=True),
        sa.Column('terminal_id', sa.Integer(), sa.ForeignKey('terminal.id'), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='draft'),
        sa.Column('source', sa.String(length=16), nullable=False, server_default='online'),
        sa.Column('subtotal', sa.Numeric(12, 2), nullable=False, server_default='0.00'),
        sa.Column('tax_amount', sa.Numeric(12, 2), nullable=False, server_default='0.00'),
        sa.Column('discount_amount', sa.Numeric(12, 2), nullable=False, server_default='0.00'),
        sa.Column('total_amount', sa.Numeric(12, 2), nullable=False, server_default='0.00'),
        sa.Column('customer_note', sa.Text(), nullable=True),
        sa.Column('note_updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('failure_reason', sa.String(length=64), nullable=True),
        sa.Column('failure_detail', sa.JSON(), nullable=True),
        sa.Column('void_reason', sa.Text(), nullable=True),
        sa.Column('voided_by', sa.String(length=64), nullable=True),
        sa.Column('voided_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_by', sa.String(length=64), nullable=True),
        sa.Column('captured_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_pos_transaction_terminal_id', 'pos_transaction', ['terminal_id'])
    op.create_index('ix_pos_transaction_status', 'pos_transaction', ['status'])
    op.create_index('ix_transaction_terminal_created', 'pos_transaction', ['terminal_id', 'created_at'])

    op.create_table(
        'pos_transaction_item',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('transaction_id', sa.Integer(), sa.ForeignKey('pos_transaction.id'), nullable=False),
        sa.Column('product_id', sa.Integer(), sa.ForeignKey('product.id'), nullable=False),
        sa.Column('product_snapshot', sa.JSON(), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('unit_price', sa.Numeric(12, 2), nullable=False),
        sa.Column('discount_amount', sa.Numeric(12, 2), nullable=False, server_default='0.00'),
        sa.Column('tax_amount', sa.Numeric(12, 2), nullable=False, server_default='0.00'),
        sa.Column('line_total', sa.Numeric(12, 2), nullable=False),
        sa.Column('refunded_quantity', sa.Integer(), nullable=False, server_default='0'),
        sa.CheckConstraint('quantity > 0', name='ck_transaction_item_quantity_positive'),
    )
    op.create_index('ix_pos_transaction_item_transaction_id', 'pos_transaction_item', ['transaction_id'])
    op.create_index('ix_pos_transaction_item_product_id', 'pos_transaction_item', ['product_id'])

    op.create_table(
        'pos_payment',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('transaction_id', sa.Integer(), sa.ForeignKey('pos_transaction.id'), nullable=False),
        sa.Column('method', sa.String(length=32), nullable=False),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('cash_received', sa.Numeric(12, 2), nullable=True),
        sa.Column('cash_change', sa.Numeric(12, 2), nullable=True),
        sa.Column('reference', sa.String(length=128), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_pos_payment_transaction_id', 'pos_payment', ['transaction_id'])

    # 4) Physical counting
    op.create_table(
        'count_session',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('session_number', sa.String(length=32), nullable=False, unique=True),
        sa.Column('count_type', sa.String(length=16), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='scheduled'),
        sa.Column('is_blind', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('scope_category', sa.String(length=128), nullable=True),
        sa.Column('scope_location', sa.String(length=128), nullable=True),
        sa.Column('scope_product_ids', sa.JSON(), nullable=False),
        sa.Column('snapshot_key', sa.String(length=64), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('scheduled_for', sa.DateTime(timezone=True), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('closed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_by', sa.String(length=64), nullable=True),
        sa.Column('closed_by', sa.String(length=64), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_count_session_status', 'count_session', ['status'])

    op.create_table(
        'count_session_counter',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('session_id', sa.Integer(), sa.ForeignKey('count_session.id'), nullable=False),
        sa.Column('counter_id', sa.String(length=64), nullable=False),
        sa.UniqueConstraint('session_id', 'counter_id', name='uq_count_session_counter'),
    )
    op.create_index('ix_count_session_counter_session_id', 'count_session_counter', ['session_id'])

    op.create_table(
        'inventory_count',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('session_id', sa.Integer(), sa.ForeignKey('count_session.id'), nullable=False),
        sa.Column('product_id', sa.Integer(), sa.ForeignKey('product.id'), nullable=False),
        sa.Column('counted_quantity', sa.Integer(), nullable=False),
        sa.Column('counted_by', sa.String(length=64), nullable=False),
        sa.Column('counted_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('system_quantity_at_count_time', sa.Integer(), nullable=False),
        sa.Column('variance', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('variance_percentage', sa.Numeric(9, 2), nullable=False, server_default='0'),
        sa.Column('unit_cost', sa.Numeric(12, 2), nullable=True),
        sa.Column('cost_impact', sa.Numeric(14, 2), nullable=False, server_default='0'),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='counted'),
        sa.Column('recount_quantity', sa.Integer(), nullable=True),
        sa.Column('recount_by', sa.String(length=64), nullable=True),
        sa.Column('recount_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('recount_system_quantity', sa.Integer(), nullable=True),
        sa.Column('resolved_quantity', sa.Integer(), nullable=True),
        sa.Column('resolved_by', sa.String(length=64), nullable=True),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('resolution_note', sa.Text(), nullable=True),
        sa.UniqueConstraint('session_id', 'product_id', name='uq_inventory_count_session_product'),
        sa.CheckConstraint('counted_quantity >= 0', name='ck_inventory_count_nonnegative'),
    )
    op.create_index('ix_inventory_count_session_id', 'inventory_count', ['session_id'])
    op.create_index('ix_inventory_count_product_id', 'inventory_count', ['product_id'])
    op.create_index('ix_inventory_count_status', 'inventory_count', ['status'])

    op.create_table(
        'reconciliation',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('reconciliation_number', sa.String(length=32), nullable=False, unique=True),
        sa.Column('session_id', sa.Integer(), sa.ForeignKey('count_session.id'), nullable=False, unique=True),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='draft'),
        sa.Column('total_items_counted', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('items_with_variance', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('disputed_items', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_variance_units', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_absolute_variance_units', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_cost_impact', sa.Numeric(14, 2), nullable=False, server_default='0.00'),
        sa.Column('variance_percentage', sa.Numeric(9, 2), nullable=False, server_default='0.00'),
        sa.Column('submitted_by', sa.String(length=64), nullable=True),
        sa.Column('submitted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('requires_second_approval', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('first_approved_by', sa.String(length=64), nullable=True),
        sa.Column('first_approved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('approved_by', sa.String(length=64), nullable=True),
        sa.Column('approved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('rejected_by', sa.String(length=64), nullable=True),
        sa.Column('rejected_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('rejection_reason', sa.Text(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_reconciliation_status', 'reconciliation', ['status'])

    op.create_table(
        'inventory_snapshot',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('snapshot_key', sa.String(length=64), nullable=False),
        sa.Column('snapshot_type', sa.String(length=32), nullable=False),
        sa.Column('product_id', sa.Integer(), sa.ForeignKey('product.id'), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('cost_price', sa.Numeric(12, 2), nullable=True),
        sa.Column('value', sa.Numeric(14, 2), nullable=True),
        sa.Column('last_adjustment_id', sa.Integer(), nullable=True),
        sa.Column('reference_type', sa.String(length=32), nullable=True),
        sa.Column('reference_id', sa.Integer(), nullable=True),
        sa.Column('taken_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('snapshot_key', 'product_id', name='uq_snapshot_key_product'),
    )
    op.create_index('ix_inventory_snapshot_snapshot_key', 'inventory_snapshot', ['snapshot_key'])
    op.create_index('ix_inventory_snapshot_snapshot_type', 'inventory_snapshot', ['snapshot_type'])
    op.create_index('ix_inventory_snapshot_product_id', 'inventory_snapshot', ['product_id'])
    op.create_index('ix_inventory_snapshot_taken_at', 'inventory_snapshot', ['taken_at'])

    # 5) Offline sync and idempotency
    op.create_table(
        'sync_operation',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('terminal_id', sa.Integer(), sa.ForeignKey('terminal.id'), nullable=False),
        sa.Column('local_sequence', sa.Integer(), nullable=False),
        sa.Column('idempotency_key', sa.String(length=128), nullable=False),
        sa.Column('operation_type', sa.String(length=32), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('captured_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('received_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('result', sa.JSON(), nullable=True),
        sa.Column('error_type', sa.String(length=64), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.UniqueConstraint('terminal_id', 'local_sequence', name='uq_sync_operation_terminal_sequence'),
    )
    op.create_index('ix_sync_operation_terminal_id', 'sync_operation', ['terminal_id'])
    op.create_index('ix_sync_operation_idempotency_key', 'sync_operation', ['idempotency_key'])

    op.create_table(
        'idempotency_record',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('idempotency_key', sa.String(length=128), nullable=False, unique=True),
        sa.Column('operation', sa.String(length=64), nullable=False),
        sa.Column('entity_type', sa.String(length=64), nullable=False),
        sa.Column('entity_id', sa.Integer(), nullable=False),
        sa.Column('actor_id', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )


def downgrade():
    for table_name in (
        'idempotency_record',
        'sync_operation',
        'inventory_snapshot',
        'reconciliation',
        'inventory_count',
        'count_session_counter',
        'count_session',
        'pos_payment',
        'pos_transaction_item',
        'pos_transaction',
        'terminal',
        'inventory_adjustment',
        'document_sequence',
        'product',
    ):
        op.drop_table(table_name)
