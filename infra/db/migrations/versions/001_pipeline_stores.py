"""Key-value tables for the normalization cache and LLM usage records

Revision ID: 001_pipeline_stores
Revises:
Create Date: 2025-10-20 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001_pipeline_stores'
down_revision = None
branch_labels = None
depends_on = None

SCHEMA = 'pipeline'


def create_kv_table(name):
    """key → JSONB document with optional expiry"""
    op.create_table(
        name,
        sa.Column('key', sa.Text, primary_key=True),
        sa.Column('doc', postgresql.JSONB, nullable=False),
        sa.Column('expires_at', sa.TIMESTAMP(timezone=True)),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        schema=SCHEMA
    )
    op.create_index(f'idx_{name}_expires_at', name, ['expires_at'], schema=SCHEMA)


def upgrade():
    op.execute(f'CREATE SCHEMA IF NOT EXISTS {SCHEMA}')

    # 90-day retention per entry (expires_at), hit_count inside doc
    create_kv_table('normalization_cache')
    op.execute(f"""
        CREATE INDEX idx_normalization_cache_hit_count
        ON {SCHEMA}.normalization_cache (((doc->>'hit_count')::numeric) DESC)
    """)

    # One row per (user, month) and per (system, day); never expires
    create_kv_table('llm_usage')


def downgrade():
    op.drop_table('llm_usage', schema=SCHEMA)
    op.drop_index('idx_normalization_cache_hit_count', table_name='normalization_cache', schema=SCHEMA)
    op.drop_table('normalization_cache', schema=SCHEMA)
