"""Initial schema: documents, page_content, cases

Revision ID: 5b2c9e1d7a40
Revises: 
Create Date: 2026-10-19 09:12:44.318205

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '5b2c9e1d7a40'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

EMBEDDING_DIMENSION = 384


def upgrade() -> None:
    """Upgrade schema."""
    op.execute("CREATE EXTENSION IF NOT EXISTS vector")
    op.execute("CREATE EXTENSION IF NOT EXISTS pg_trgm")

    # Case records are owned by the case-management side; this table only
    # carries the columns joined onto search results.
    op.create_table('cases',
        sa.Column('id', sa.Text(), nullable=False),
        sa.Column('case_number', sa.Text(), nullable=False),
        sa.Column('case_type', sa.Text(), nullable=True),
        sa.Column('appellant', sa.Text(), nullable=True),
        sa.Column('respondent', sa.Text(), nullable=True),
        sa.Column('filing_date', sa.Date(), nullable=True),
        sa.Column('hearing_date', sa.Date(), nullable=True),
        sa.Column('decision_date', sa.Date(), nullable=True),
        sa.Column('outcome', sa.Text(), nullable=True),
        sa.Column('tax_amount_disputed', sa.Numeric(18, 2), nullable=True),
        sa.Column('chairperson', sa.Text(), nullable=True),
        sa.Column('board_members', sa.ARRAY(sa.Text()), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('case_number')
    )

    op.create_table('documents',
        sa.Column('id', sa.Text(), nullable=False),
        sa.Column('case_id', sa.Text(), nullable=False),
        sa.Column('file_name', sa.Text(), nullable=False),
        sa.Column('file_path', sa.Text(), nullable=False),
        sa.Column('file_size', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('mime_type', sa.Text(), nullable=False, server_default='application/pdf'),
        sa.Column('content_hash', sa.Text(), nullable=True),
        sa.Column('page_count', sa.Integer(), nullable=True),
        sa.Column('ocr_status', sa.Text(), nullable=False, server_default='pending'),
        sa.Column('ocr_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('processed_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.CheckConstraint(
            "ocr_status IN ('pending', 'processing', 'completed', 'failed', 'manual_review')",
            name='documents_ocr_status_check'
        ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_documents_case_id', 'documents', ['case_id'])
    op.create_index('idx_documents_status_created', 'documents', ['ocr_status', 'created_at'])

    op.create_table('page_content',
        sa.Column('id', sa.Text(), nullable=False),
        sa.Column('document_id', sa.Text(), nullable=False),
        sa.Column('case_id', sa.Text(), nullable=False),
        sa.Column('page_number', sa.Integer(), nullable=False),
        sa.Column('raw_text', sa.Text(), nullable=False),
        sa.Column('cleaned_text', sa.Text(), nullable=False),
        sa.Column('word_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('language', sa.Text(), nullable=False, server_default='en'),
        sa.Column('ocr_engine', sa.Text(), nullable=False),
        sa.Column('ocr_confidence', sa.Float(), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('processed_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['document_id'], ['documents.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('document_id', 'page_number', name='uq_page_content_document_page')
    )

    # pgvector and tsvector columns have no SQLAlchemy core type
    op.execute(f"ALTER TABLE page_content ADD COLUMN embedding vector({EMBEDDING_DIMENSION})")
    op.execute("ALTER TABLE page_content ADD COLUMN lexical_index tsvector")

    op.create_index('idx_page_content_case_id', 'page_content', ['case_id'])
    op.execute("CREATE INDEX idx_page_content_lexical ON page_content USING GIN (lexical_index)")
    op.execute(
        "CREATE INDEX idx_page_content_embedding ON page_content "
        "USING hnsw (embedding vector_cosine_ops)"
    )
    op.execute(
        "CREATE INDEX idx_page_content_trgm ON page_content "
        "USING GIN (cleaned_text gin_trgm_ops)"
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table('page_content')
    op.drop_index('idx_documents_status_created', table_name='documents')
    op.drop_index('idx_documents_case_id', table_name='documents')
    op.drop_table('documents')
    op.drop_table('cases')
