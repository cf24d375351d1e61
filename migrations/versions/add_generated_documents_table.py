"""add generated_documents and document_activity tables

Revision ID: 7d1e4a9c2b10
Revises:
Create Date: 2026-10-18

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect

# revision identifiers, used by Alembic.
revision = '7d1e4a9c2b10'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    conn = op.get_bind()
    inspector = inspect(conn)
    tables = inspector.get_table_names()

    if 'generated_documents' not in tables:
        op.create_table(
            'generated_documents',
            sa.Column('id', sa.String(length=64), nullable=False),
            sa.Column('template_id', sa.String(length=64), nullable=False),
            sa.Column('template_name', sa.String(length=200), nullable=False),
            sa.Column('status', sa.String(length=32), nullable=False, server_default='draft'),
            sa.Column('property_id', sa.String(length=64), nullable=False),
            sa.Column('property_address', sa.String(length=300), nullable=True),
            sa.Column('buyer_id', sa.String(length=64), nullable=True),
            sa.Column('seller_id', sa.String(length=64), nullable=True),
            sa.Column('agent_id', sa.String(length=64), nullable=True),
            sa.Column('transaction_id', sa.String(length=64), nullable=True),
            sa.Column('category', sa.String(length=64), nullable=False),
            sa.Column('category_number', sa.String(length=4), nullable=False),
            sa.Column('version', sa.String(length=20), nullable=False),
            sa.Column('page_count', sa.Integer(), nullable=False),
            sa.Column('fields', sa.JSON(), nullable=False),
            sa.Column('signatures', sa.JSON(), nullable=False),
            sa.Column('storage_key', sa.String(length=300), nullable=True),
            sa.Column('file_name', sa.String(length=255), nullable=True),
            sa.Column('file_size', sa.Integer(), nullable=True),
            sa.Column('created_by', sa.String(length=64), nullable=True),
            sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
            sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
            sa.PrimaryKeyConstraint('id', name='pk_generated_documents')
        )

        op.create_index('ix_generated_documents_template_id', 'generated_documents', ['template_id'], unique=False)
        op.create_index('ix_generated_documents_status', 'generated_documents', ['status'], unique=False)
        op.create_index('ix_generated_documents_property_id', 'generated_documents', ['property_id'], unique=False)
        op.create_index('ix_generated_documents_created_by', 'generated_documents', ['created_by'], unique=False)
        op.create_index('ix_generated_documents_created_at', 'generated_documents', ['created_at'], unique=False)

    if 'document_activity' not in tables:
        op.create_table(
            'document_activity',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('document_id', sa.String(length=64), nullable=False),
            sa.Column('action', sa.String(length=40), nullable=False),
            sa.Column('user_id', sa.String(length=64), nullable=True),
            sa.Column('user_name', sa.String(length=120), nullable=True),
            sa.Column('timestamp', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
            sa.Column('details', sa.Text(), nullable=True),
            sa.Column('ip_address', sa.String(length=45), nullable=True),
            sa.ForeignKeyConstraint(['document_id'], ['generated_documents.id'], name='fk_document_activity_document_id', ondelete='CASCADE'),
            sa.PrimaryKeyConstraint('id', name='pk_document_activity')
        )

        op.create_index('ix_document_activity_document_id', 'document_activity', ['document_id'], unique=False)


def downgrade():
    conn = op.get_bind()
    inspector = inspect(conn)
    tables = inspector.get_table_names()

    if 'document_activity' in tables:
        op.drop_index('ix_document_activity_document_id', table_name='document_activity')
        op.drop_table('document_activity')

    if 'generated_documents' in tables:
        op.drop_index('ix_generated_documents_created_at', table_name='generated_documents')
        op.drop_index('ix_generated_documents_created_by', table_name='generated_documents')
        op.drop_index('ix_generated_documents_property_id', table_name='generated_documents')
        op.drop_index('ix_generated_documents_status', table_name='generated_documents')
        op.drop_index('ix_generated_documents_template_id', table_name='generated_documents')
        op.drop_table('generated_documents')
