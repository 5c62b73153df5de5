"""Create search pipeline tables

Revision ID: 001_initial_search_schema
Revises:
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001_initial_search_schema'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create search_requests, search_results, duplicate_relationships and search_cache."""
    op.create_table(
        'search_requests',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('owner_id', sa.String(length=255), nullable=True),
        sa.Column('query', sa.Text(), nullable=False),
        sa.Column('filters', sa.JSON(), nullable=True),
        sa.Column('providers', sa.JSON(), nullable=True),
        sa.Column('search_title', sa.String(length=500), nullable=True),
        sa.Column('is_saved', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('error_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_search_requests_owner_id', 'search_requests', ['owner_id'], unique=False)
    op.create_index('ix_search_requests_owner_created', 'search_requests', ['owner_id', 'created_at'], unique=False)

    op.create_table(
        'search_results',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('search_request_id', sa.String(length=36), nullable=False),
        sa.Column('provider', sa.String(length=50), nullable=False),
        sa.Column('title', sa.Text(), nullable=False),
        sa.Column('url', sa.Text(), nullable=False),
        sa.Column('snippet', sa.Text(), nullable=True),
        sa.Column('rank', sa.Integer(), nullable=True),
        sa.Column('result_type', sa.String(length=50), nullable=True),
        sa.Column('search_engine', sa.String(length=50), nullable=True),
        sa.Column('total_results', sa.Integer(), nullable=True),
        sa.Column('credits_used', sa.Integer(), nullable=True),
        sa.Column('search_id', sa.String(length=255), nullable=True),
        sa.Column('search_url', sa.Text(), nullable=True),
        sa.Column('related_searches', sa.JSON(), nullable=True),
        sa.Column('similar_questions', sa.JSON(), nullable=True),
        sa.Column('raw_response', sa.JSON(), nullable=True),
        sa.Column('deduped', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['search_request_id'], ['search_requests.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_search_results_request_rank', 'search_results', ['search_request_id', 'rank'], unique=False)

    op.create_table(
        'duplicate_relationships',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('original_result_id', sa.String(length=36), nullable=False),
        sa.Column('duplicate_result_id', sa.String(length=36), nullable=False),
        sa.Column('confidence_score', sa.Float(), nullable=False),
        sa.Column('reason', sa.String(length=50), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['original_result_id'], ['search_results.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['duplicate_result_id'], ['search_results.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('original_result_id', 'duplicate_result_id', name='uq_duplicate_pair'),
        sa.CheckConstraint('original_result_id <> duplicate_result_id', name='ck_duplicate_not_self'),
        sa.CheckConstraint('confidence_score >= 0 AND confidence_score <= 1', name='ck_confidence_range'),
    )
    op.create_index('ix_duplicate_relationships_duplicate', 'duplicate_relationships', ['duplicate_result_id'], unique=False)

    op.create_table(
        'search_cache',
        sa.Column('key', sa.String(length=64), nullable=False),
        sa.Column('data', sa.JSON(), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('key')
    )
    op.create_index('ix_search_cache_expires_at', 'search_cache', ['expires_at'], unique=False)


def downgrade() -> None:
    """Drop all search pipeline tables."""
    op.drop_index('ix_search_cache_expires_at', table_name='search_cache')
    op.drop_table('search_cache')
    op.drop_index('ix_duplicate_relationships_duplicate', table_name='duplicate_relationships')
    op.drop_table('duplicate_relationships')
    op.drop_index('ix_search_results_request_rank', table_name='search_results')
    op.drop_table('search_results')
    op.drop_index('ix_search_requests_owner_created', table_name='search_requests')
    op.drop_index('ix_search_requests_owner_id', table_name='search_requests')
    op.drop_table('search_requests')
