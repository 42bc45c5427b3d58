"""receipts classification columns and predictions audit table

Revision ID: 001_categorization_schema
Revises:
Create Date: 2025-10-20 09:00:00.000000

receipts: written by the OCR extractor (status=ocr_done), classification
columns written back by the categorization pipeline.
predictions: append-only audit log, one row per categorization attempt.
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001_categorization_schema'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto")

    op.create_table(
        'receipts',
        sa.Column('id', sa.Text, primary_key=True, comment='Opaque receipt id'),
        sa.Column('status', sa.Text, nullable=False, server_default='ocr_done',
                  comment='ocr_done → categorized (null category = needs review)'),

        # Extracted by OCR (read-only to categorization)
        sa.Column('vendor_text', sa.Text),
        sa.Column('total', sa.Numeric(12, 2)),
        sa.Column('subtotal', sa.Numeric(12, 2)),
        sa.Column('tax', sa.Numeric(12, 2)),
        sa.Column('tax_breakdown', postgresql.JSONB),
        sa.Column('receipt_date', sa.Date),
        sa.Column('line_items', postgresql.JSONB, comment='[{description, total}]'),
        sa.Column('raw_ocr', sa.Text),

        # Classification (owned by categorization pipeline)
        sa.Column('category_id', sa.Integer, comment='Schedule C taxonomy id'),
        sa.Column('category', sa.Text, comment='Schedule C category name'),
        sa.Column('category_confidence', sa.Float),
        sa.Column('category_source', sa.Text, comment='rules | llm'),

        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint("status IN ('ocr_done', 'categorized')", name='ck_receipts_status'),
        sa.CheckConstraint("category_source IS NULL OR category_source IN ('rules', 'llm')",
                           name='ck_receipts_category_source'),
        sa.CheckConstraint(
            "category_confidence IS NULL OR (category_confidence >= 0 AND category_confidence <= 1)",
            name='ck_receipts_category_confidence_range',
        ),
        # category_id, category and category_confidence are null together
        sa.CheckConstraint(
            "(category_id IS NULL) = (category IS NULL) "
            "AND (category_id IS NULL) = (category_confidence IS NULL)",
            name='ck_receipts_category_fields_together',
        ),
        sa.CheckConstraint(
            "category_id IS NULL OR status = 'categorized'",
            name='ck_receipts_category_requires_categorized',
        ),
    )

    op.create_index('idx_receipts_status_created', 'receipts', ['status', 'created_at'])

    op.create_table(
        'predictions',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('subject_type', sa.Text, nullable=False, server_default='receipt'),
        sa.Column('subject_id', sa.Text, nullable=False, comment='Logical FK to receipts.id (no constraint)'),
        sa.Column('category_id', sa.Integer, comment='Null for failed attempts'),
        sa.Column('confidence', sa.Float),
        sa.Column('method', sa.Text, nullable=False, comment='rule | llm'),
        sa.Column('version', sa.Text, nullable=False, comment='rules@<pack version> | llm@<model>'),
        sa.Column('details', postgresql.JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.CheckConstraint("method IN ('rule', 'llm')", name='ck_predictions_method'),
    )

    op.create_index('idx_predictions_subject', 'predictions', ['subject_type', 'subject_id', 'created_at'])

    # Append-only: reject UPDATE/DELETE at the database level
    op.execute("""
        CREATE OR REPLACE FUNCTION predictions_append_only() RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION 'predictions is append-only';
        END;
        $$ LANGUAGE plpgsql
    """)
    op.execute("""
        CREATE TRIGGER trg_predictions_append_only
        BEFORE UPDATE OR DELETE ON predictions
        FOR EACH ROW EXECUTE FUNCTION predictions_append_only()
    """)


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS trg_predictions_append_only ON predictions")
    op.execute("DROP FUNCTION IF EXISTS predictions_append_only()")
    op.drop_index('idx_predictions_subject', table_name='predictions')
    op.drop_table('predictions')
    op.drop_index('idx_receipts_status_created', table_name='receipts')
    op.drop_table('receipts')
