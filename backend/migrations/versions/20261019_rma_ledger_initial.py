"""Initial schema: tenants, source records, return requests, store credit ledger

Revision ID: 20261019_initial
Revises:
Create Date: 2026-10-19

This migration adds:
1. organizations and document_sequences (per org/type/month counters)
2. products, sales, sale_lines (read-only compliance sources)
3. return_requests and return_lines (RMA workflow + compliance snapshot)
4. store_credit_entries and store_credit_usages (credit ledger)
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20261019_initial'
down_revision = None
branch_labels = None
depends_on = None


def _compliance_columns():
    return [
        sa.Column('batch_number', sa.String(length=64), nullable=True),
        sa.Column('state_tracking_id', sa.String(length=64), nullable=True),
        sa.Column('category', sa.String(length=32), nullable=True),
        sa.Column('strain_type', sa.String(length=32), nullable=True),
        sa.Column('strain_name', sa.String(length=128), nullable=True),
        sa.Column('thc_content', sa.Float(), nullable=True),
        sa.Column('cbd_content', sa.Float(), nullable=True),
        sa.Column('thc_mg', sa.Float(), nullable=True),
        sa.Column('cbd_mg', sa.Float(), nullable=True),
        sa.Column('unit', sa.String(length=16), nullable=True),
        sa.Column('weight_grams', sa.Float(), nullable=True),
        sa.Column('licensed_producer', sa.String(length=255), nullable=True),
        sa.Column('producer_license', sa.String(length=64), nullable=True),
        sa.Column('packaged_date', sa.Date(), nullable=True),
        sa.Column('harvest_date', sa.Date(), nullable=True),
        sa.Column('lab_test_date', sa.Date(), nullable=True),
        sa.Column('lab_tested', sa.Boolean(), nullable=True),
        sa.Column('lab_test_result', sa.String(length=32), nullable=True),
    ]


def upgrade():
    # ==========================================================================
    # 1. TENANCY + SEQUENCES
    # ==========================================================================
    op.create_table('organizations',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('code', sa.String(length=32), nullable=True),
        sa.Column('license_number', sa.String(length=64), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('organizations', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_organizations_code'), ['code'], unique=True)
        batch_op.create_index(batch_op.f('ix_organizations_is_active'), ['is_active'], unique=False)

    op.create_table('document_sequences',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('org_id', sa.Integer(), nullable=False),
        sa.Column('document_type', sa.String(length=32), nullable=False),
        sa.Column('period', sa.String(length=6), nullable=False),
        sa.Column('next_number', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.ForeignKeyConstraint(['org_id'], ['organizations.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('org_id', 'document_type', 'period', name='uq_doc_sequences_org_type_period'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('document_sequences', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_document_sequences_org_id'), ['org_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_document_sequences_document_type'), ['document_type'], unique=False)

    # ==========================================================================
    # 2. SOURCE RECORDS (read-only to the return workflow)
    # ==========================================================================
    op.create_table('products',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('org_id', sa.Integer(), nullable=False),
        sa.Column('sku', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('price_cents', sa.Integer(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        *_compliance_columns(),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.ForeignKeyConstraint(['org_id'], ['organizations.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('org_id', 'sku', name='uq_products_org_sku'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('products', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_products_org_id'), ['org_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_products_state_tracking_id'), ['state_tracking_id'], unique=False)

    op.create_table('sales',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('org_id', sa.Integer(), nullable=False),
        sa.Column('invoice_number', sa.String(length=64), nullable=False),
        sa.Column('customer_id', sa.Integer(), nullable=True),
        sa.Column('customer_name', sa.String(length=255), nullable=True),
        sa.Column('customer_email', sa.String(length=255), nullable=True),
        sa.Column('customer_phone', sa.String(length=32), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.ForeignKeyConstraint(['org_id'], ['organizations.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('org_id', 'invoice_number', name='uq_sales_org_invoice'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('sales', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_sales_org_id'), ['org_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_sales_customer_id'), ['customer_id'], unique=False)

    op.create_table('sale_lines',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('sale_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=True),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('sku', sa.String(length=64), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('unit_price_cents', sa.Integer(), nullable=False),
        *_compliance_columns(),
        sa.ForeignKeyConstraint(['sale_id'], ['sales.id'], ),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('sale_lines', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_sale_lines_sale_id'), ['sale_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_sale_lines_product_id'), ['product_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_sale_lines_state_tracking_id'), ['state_tracking_id'], unique=False)

    # ==========================================================================
    # 3. RETURN REQUESTS
    # ==========================================================================
    op.create_table('return_requests',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('org_id', sa.Integer(), nullable=False),
        sa.Column('rma_number', sa.String(length=32), nullable=False),
        sa.Column('type', sa.String(length=32), nullable=False, server_default='customer_return'),
        sa.Column('related_sale_id', sa.Integer(), nullable=True),
        sa.Column('invoice_number', sa.String(length=64), nullable=True),
        sa.Column('customer_id', sa.Integer(), nullable=True),
        sa.Column('customer_name', sa.String(length=255), nullable=False),
        sa.Column('customer_email', sa.String(length=255), nullable=True),
        sa.Column('customer_phone', sa.String(length=32), nullable=True),
        sa.Column('total_value_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('return_reason', sa.String(length=32), nullable=False),
        sa.Column('detailed_reason', sa.Text(), nullable=False),
        sa.Column('customer_complaint', sa.Text(), nullable=True),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='pending_approval'),
        sa.Column('approved_by_user_id', sa.Integer(), nullable=True),
        sa.Column('approved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('rejected_by_user_id', sa.Integer(), nullable=True),
        sa.Column('rejected_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('rejection_reason', sa.Text(), nullable=True),
        sa.Column('received_by_user_id', sa.Integer(), nullable=True),
        sa.Column('received_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('inspection_started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('inspected_by_user_id', sa.Integer(), nullable=True),
        sa.Column('inspected_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('inspection_result', sa.String(length=32), nullable=False, server_default='pending'),
        sa.Column('inspection_notes', sa.Text(), nullable=True),
        sa.Column('resolution_type', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('resolved_by_user_id', sa.Integer(), nullable=True),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('refund_amount_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('replacement_order_reference', sa.String(length=64), nullable=True),
        sa.Column('credit_amount_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('credit_memo_number', sa.String(length=32), nullable=True),
        sa.Column('store_credit_entry_id', sa.Integer(), nullable=True),
        sa.Column('closed_by_user_id', sa.Integer(), nullable=True),
        sa.Column('closed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_by_user_id', sa.Integer(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancellation_reason', sa.Text(), nullable=True),
        sa.Column('regulatory_notification_required', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('destruction_method', sa.String(length=64), nullable=True),
        sa.Column('destruction_location', sa.String(length=255), nullable=True),
        sa.Column('destruction_witness_name', sa.String(length=255), nullable=True),
        sa.Column('destruction_witness_title', sa.String(length=128), nullable=True),
        sa.Column('destruction_notes', sa.Text(), nullable=True),
        sa.Column('destroyed_by_user_id', sa.Integer(), nullable=True),
        sa.Column('destroyed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('total_weight_destroyed_grams', sa.Float(), nullable=True),
        sa.Column('total_thc_destroyed_mg', sa.Float(), nullable=True),
        sa.Column('total_cbd_destroyed_mg', sa.Float(), nullable=True),
        sa.Column('waste_manifest_number', sa.String(length=96), nullable=True),
        sa.Column('metrc_reported', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('metrc_report_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('metrc_adjustment_id', sa.Text(), nullable=True),
        sa.Column('requires_manual_reporting', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('metrc_report_error', sa.Text(), nullable=True),
        sa.Column('internal_notes', sa.Text(), nullable=True),
        sa.Column('created_by_user_id', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('last_modified_by_user_id', sa.Integer(), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['org_id'], ['organizations.id'], ),
        sa.ForeignKeyConstraint(['related_sale_id'], ['sales.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('org_id', 'rma_number', name='uq_return_requests_org_rma_number'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('return_requests', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_return_requests_org_id'), ['org_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_return_requests_related_sale_id'), ['related_sale_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_return_requests_status'), ['status'], unique=False)
        batch_op.create_index(batch_op.f('ix_return_requests_created_at'), ['created_at'], unique=False)
        batch_op.create_index('ix_return_requests_org_created', ['org_id', 'created_at'], unique=False)
        batch_op.create_index('ix_return_requests_org_status', ['org_id', 'status'], unique=False)
        batch_op.create_index('ix_return_requests_org_customer', ['org_id', 'customer_id'], unique=False)
        batch_op.create_index('ix_return_requests_org_reason', ['org_id', 'return_reason'], unique=False)

    op.create_table('return_lines',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('return_request_id', sa.Integer(), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('product_id', sa.Integer(), nullable=True),
        sa.Column('sale_line_id', sa.Integer(), nullable=True),
        sa.Column('product_name', sa.String(length=255), nullable=False),
        sa.Column('sku', sa.String(length=64), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('unit_price_cents', sa.Integer(), nullable=False),
        sa.Column('line_value_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('condition', sa.String(length=16), nullable=False, server_default='unopened'),
        sa.Column('reason', sa.Text(), nullable=True),
        *_compliance_columns(),
        sa.Column('compliance_source', sa.String(length=16), nullable=False, server_default='placeholder'),
        sa.Column('disposition_method', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('disposition_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('disposition_notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.ForeignKeyConstraint(['return_request_id'], ['return_requests.id'], ),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ),
        sa.ForeignKeyConstraint(['sale_line_id'], ['sale_lines.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('return_lines', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_return_lines_return_request_id'), ['return_request_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_return_lines_product_id'), ['product_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_return_lines_state_tracking_id'), ['state_tracking_id'], unique=False)

    # ==========================================================================
    # 4. STORE CREDIT LEDGER
    # ==========================================================================
    op.create_table('store_credit_entries',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('org_id', sa.Integer(), nullable=False),
        sa.Column('credit_memo_number', sa.String(length=32), nullable=False),
        sa.Column('customer_id', sa.Integer(), nullable=True),
        sa.Column('customer_name', sa.String(length=255), nullable=False),
        sa.Column('customer_email', sa.String(length=255), nullable=True),
        sa.Column('customer_phone', sa.String(length=32), nullable=True),
        sa.Column('original_amount_cents', sa.Integer(), nullable=False),
        sa.Column('remaining_balance_cents', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='active'),
        sa.Column('source_type', sa.String(length=16), nullable=False),
        sa.Column('return_request_id', sa.Integer(), nullable=True),
        sa.Column('source_description', sa.Text(), nullable=True),
        sa.Column('issued_by_user_id', sa.Integer(), nullable=False),
        sa.Column('issued_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('voided_by_user_id', sa.Integer(), nullable=True),
        sa.Column('voided_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('void_reason', sa.Text(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.CheckConstraint('remaining_balance_cents >= 0', name='ck_store_credit_entries_remaining_nonnegative'),
        sa.CheckConstraint('remaining_balance_cents <= original_amount_cents', name='ck_store_credit_entries_remaining_le_original'),
        sa.ForeignKeyConstraint(['org_id'], ['organizations.id'], ),
        sa.ForeignKeyConstraint(['return_request_id'], ['return_requests.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('org_id', 'credit_memo_number', name='uq_store_credit_entries_org_memo'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('store_credit_entries', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_store_credit_entries_org_id'), ['org_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_store_credit_entries_customer_id'), ['customer_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_store_credit_entries_customer_email'), ['customer_email'], unique=False)
        batch_op.create_index(batch_op.f('ix_store_credit_entries_customer_phone'), ['customer_phone'], unique=False)
        batch_op.create_index(batch_op.f('ix_store_credit_entries_status'), ['status'], unique=False)
        batch_op.create_index(batch_op.f('ix_store_credit_entries_return_request_id'), ['return_request_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_store_credit_entries_expires_at'), ['expires_at'], unique=False)
        batch_op.create_index('ix_store_credit_entries_org_customer_status', ['org_id', 'customer_id', 'status'], unique=False)

    # return_requests <-> store_credit_entries reference each other
    with op.batch_alter_table('return_requests', schema=None) as batch_op:
        batch_op.create_foreign_key(
            'fk_return_requests_store_credit_entry_id',
            'store_credit_entries',
            ['store_credit_entry_id'],
            ['id'],
        )

    op.create_table('store_credit_usages',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('org_id', sa.Integer(), nullable=False),
        sa.Column('entry_id', sa.Integer(), nullable=False),
        sa.Column('entry_type', sa.String(length=8), nullable=False, server_default='apply'),
        sa.Column('amount_cents', sa.Integer(), nullable=False),
        sa.Column('balance_after_cents', sa.Integer(), nullable=False),
        sa.Column('used_by_user_id', sa.Integer(), nullable=False),
        sa.Column('used_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('transaction_reference', sa.String(length=64), nullable=True),
        sa.Column('register_reference', sa.String(length=64), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.CheckConstraint('amount_cents > 0', name='ck_store_credit_usages_amount_positive'),
        sa.ForeignKeyConstraint(['org_id'], ['organizations.id'], ),
        sa.ForeignKeyConstraint(['entry_id'], ['store_credit_entries.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('store_credit_usages', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_store_credit_usages_org_id'), ['org_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_store_credit_usages_entry_id'), ['entry_id'], unique=False)


def downgrade():
    op.drop_table('store_credit_usages')
    with op.batch_alter_table('return_requests', schema=None) as batch_op:
        batch_op.drop_constraint('fk_return_requests_store_credit_entry_id', type_='foreignkey')
    op.drop_table('store_credit_entries')
    op.drop_table('return_lines')
    op.drop_table('return_requests')
    op.drop_table('sale_lines')
    op.drop_table('sales')
    op.drop_table('products')
    op.drop_table('document_sequences')
    op.drop_table('organizations')
