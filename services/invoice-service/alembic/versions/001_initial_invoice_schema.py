"""Initial invoice service schema

Revision ID: 001_initial_invoice_schema
Revises:
Create Date: 2026-02-24 12:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001_initial_invoice_schema'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Customers are owned by the customer CRUD layer; invoices reference them
    op.create_table('customers',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('region_id', sa.String(), nullable=True),
        sa.Column('business_name', sa.String(), nullable=False),
        sa.Column('contact_name', sa.String(), nullable=True),
        sa.Column('email', sa.String(), nullable=True),
        sa.Column('phone', sa.String(), nullable=True),
        sa.Column('deleted_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_customers_region_id', 'customers', ['region_id'])

    # Create invoices table
    op.create_table('invoices',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('invoice_number', sa.Integer(), nullable=False),
        sa.Column('region_id', sa.String(), nullable=False),
        sa.Column('customer_id', sa.String(36), nullable=False),
        sa.Column('invoice_date', sa.DateTime(), nullable=False),
        sa.Column('due_date', sa.DateTime(), nullable=False),
        sa.Column('paid_date', sa.DateTime(), nullable=True),
        sa.Column('status', sa.String(), nullable=False, server_default='DRAFT'),
        sa.Column('line_items', sa.JSON(), nullable=False),
        sa.Column('subtotal', sa.Numeric(precision=12, scale=2), nullable=False, server_default='0'),
        sa.Column('gst_amount', sa.Numeric(precision=12, scale=2), nullable=False, server_default='0'),
        sa.Column('pst_amount', sa.Numeric(precision=12, scale=2), nullable=False, server_default='0'),
        sa.Column('total', sa.Numeric(precision=12, scale=2), nullable=False, server_default='0'),
        sa.Column('gst_rate', sa.Numeric(precision=6, scale=4), nullable=False),
        sa.Column('pst_rate', sa.Numeric(precision=6, scale=4), nullable=False),
        sa.Column('payment_terms_days', sa.Integer(), nullable=False),
        sa.Column('payment_method', sa.String(), nullable=True),
        sa.Column('emailed_at', sa.DateTime(), nullable=True),
        sa.Column('emailed_to', sa.String(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=True),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=True),
        sa.ForeignKeyConstraint(['customer_id'], ['customers.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('region_id', 'invoice_number', name='uq_invoices_region_number')
    )
    op.create_index('idx_invoices_invoice_number', 'invoices', ['invoice_number'])
    op.create_index('idx_invoices_region_id', 'invoices', ['region_id'])
    op.create_index('idx_invoices_customer_id', 'invoices', ['customer_id'])
    op.create_index('idx_invoices_status', 'invoices', ['status'])
    op.create_index('idx_invoices_invoice_date', 'invoices', ['invoice_date'])
    op.create_index('idx_invoices_due_date', 'invoices', ['due_date'])

    # Per-region invoice number sequences
    op.create_table('invoice_sequences',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('region_id', sa.String(), nullable=False),
        sa.Column('last_invoice_number', sa.Integer(), nullable=False),
        sa.Column('prefix', sa.String(), nullable=True),
        sa.Column('suffix', sa.String(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('region_id')
    )

    # Settings stored as JSON per category/key, NULL region is the global row
    op.create_table('settings',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('category', sa.String(), nullable=False),
        sa.Column('key', sa.String(), nullable=False),
        sa.Column('region_id', sa.String(), nullable=True),
        sa.Column('value', sa.JSON(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('is_system', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=True),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_settings_lookup', 'settings', ['category', 'key', 'region_id'])


def downgrade() -> None:
    op.drop_index('idx_settings_lookup', table_name='settings')
    op.drop_table('settings')
    op.drop_table('invoice_sequences')

    op.drop_index('idx_invoices_due_date', table_name='invoices')
    op.drop_index('idx_invoices_invoice_date', table_name='invoices')
    op.drop_index('idx_invoices_status', table_name='invoices')
    op.drop_index('idx_invoices_customer_id', table_name='invoices')
    op.drop_index('idx_invoices_region_id', table_name='invoices')
    op.drop_index('idx_invoices_invoice_number', table_name='invoices')
    op.drop_table('invoices')

    op.drop_index('idx_customers_region_id', table_name='customers')
    op.drop_table('customers')
