"""Initial research engine schema

Revision ID: 0e1f2a3b4c5d
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '0e1f2a3b4c5d'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

run_status = sa.Enum('PENDING', 'IN_PROGRESS', 'COMPLETED', 'FAILED', 'CANCELLED', name='runstatus')
search_method = sa.Enum('STANDARD', 'PAID_SEARCH', 'DEEP_RESEARCH', name='searchmethod')
research_scope = sa.Enum(
    'GENERAL', 'MARKET_ANALYSIS', 'COMPETITOR_ANALYSIS', 'LEAD_GENERATION', name='researchscope'
)
action_priority = sa.Enum('HIGH', 'MEDIUM', 'LOW', name='actionpriority')


def upgrade() -> None:
    op.create_table(
        'research_runs',
        sa.Column('id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('original_prompt', sa.Text(), nullable=False),
        sa.Column('refined_prompt', sa.Text(), nullable=False),
        sa.Column('prompt_hash', sa.String(64), nullable=False),
        sa.Column('search_method', search_method, nullable=False),
        sa.Column('scope', research_scope, nullable=False),
        sa.Column('status', run_status, nullable=False),
        sa.Column('progress', sa.Integer(), nullable=False),
        sa.Column('analysis_result', sa.JSON(), nullable=True),
        sa.Column('error_message', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_research_runs_user_id'), 'research_runs', ['user_id'], unique=False)
    op.create_index(op.f('ix_research_runs_prompt_hash'), 'research_runs', ['prompt_hash'], unique=False)

    op.create_table(
        'research_sources',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('run_id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('url', sa.String(), nullable=False),
        sa.Column('title', sa.String(), nullable=True),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('excerpt', sa.Text(), nullable=True),
        sa.Column('source_type', sa.String(), nullable=False),
        sa.Column('provider', sa.String(), nullable=True),
        sa.Column('rank_score', sa.Float(), nullable=True),
        sa.Column('meta', sa.JSON(), nullable=True),
        sa.Column('discussion_excerpts', sa.JSON(), nullable=True),
        sa.Column('scraped_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['run_id'], ['research_runs.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('run_id', 'url', name='uq_research_sources_run_url')
    )
    op.create_index(op.f('ix_research_sources_run_id'), 'research_sources', ['run_id'], unique=False)

    op.create_table(
        'research_insights',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('run_id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('category', sa.String(), nullable=False),
        sa.Column('confidence', sa.Float(), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['run_id'], ['research_runs.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('run_id', 'title', name='uq_research_insights_run_title')
    )
    op.create_index(op.f('ix_research_insights_run_id'), 'research_insights', ['run_id'], unique=False)

    op.create_table(
        'competitor_intel',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('run_id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('mentions', sa.Integer(), nullable=False),
        sa.Column('sentiment', sa.String(), nullable=True),
        sa.Column('strengths', sa.JSON(), nullable=True),
        sa.Column('weaknesses', sa.JSON(), nullable=True),
        sa.Column('pricing', sa.Text(), nullable=True),
        sa.Column('market_position', sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(['run_id'], ['research_runs.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('run_id', 'name', name='uq_competitor_intel_run_name')
    )
    op.create_index(op.f('ix_competitor_intel_run_id'), 'competitor_intel', ['run_id'], unique=False)

    op.create_table(
        'action_items',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('run_id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('priority', action_priority, nullable=False),
        sa.Column('effort', sa.Integer(), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False),
        sa.Column('completed', sa.Boolean(), nullable=False),
        sa.ForeignKeyConstraint(['run_id'], ['research_runs.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_action_items_run_id'), 'action_items', ['run_id'], unique=False)

    op.create_table(
        'lead_data',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('run_id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('total_found', sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(['run_id'], ['research_runs.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('run_id')
    )

    op.create_table(
        'leads',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('lead_data_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('company', sa.String(), nullable=False),
        sa.Column('email', sa.String(), nullable=True),
        sa.Column('phone', sa.String(), nullable=True),
        sa.Column('website', sa.String(), nullable=True),
        sa.Column('industry', sa.String(), nullable=True),
        sa.Column('location', sa.String(), nullable=True),
        sa.Column('pain_points', sa.JSON(), nullable=True),
        sa.Column('suggested_dm', sa.String(), nullable=True),
        sa.Column('suggested_email', sa.String(), nullable=True),
        sa.ForeignKeyConstraint(['lead_data_id'], ['lead_data.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_leads_lead_data_id'), 'leads', ['lead_data_id'], unique=False)

    op.create_table(
        'user_settings',
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('llm_provider', sa.String(), nullable=False),
        sa.Column('gemini_api_key', sa.String(), nullable=True),
        sa.Column('gemini_model', sa.String(), nullable=True),
        sa.Column('groq_api_key', sa.String(), nullable=True),
        sa.Column('serper_api_key', sa.String(), nullable=True),
        sa.Column('jina_api_key', sa.String(), nullable=True),
        sa.PrimaryKeyConstraint('user_id')
    )

    op.create_table(
        'cached_extractions',
        sa.Column('url', sa.String(), nullable=False),
        sa.Column('title', sa.String(), nullable=True),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('excerpt', sa.Text(), nullable=True),
        sa.Column('published_at', sa.String(), nullable=True),
        sa.Column('extracted_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('url')
    )
    op.create_index(op.f('ix_cached_extractions_extracted_at'), 'cached_extractions', ['extracted_at'], unique=False)

    op.create_table(
        'research_step_checkpoints',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('run_id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('output', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('run_id', 'name', name='uq_step_checkpoints_run_name')
    )
    op.create_index(
        op.f('ix_research_step_checkpoints_run_id'), 'research_step_checkpoints', ['run_id'], unique=False
    )

    op.create_table(
        'research_trace_events',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('run_id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('phase', sa.String(), nullable=False),
        sa.Column('step', sa.String(), nullable=True),
        sa.Column('label', sa.String(), nullable=False),
        sa.Column('detail', sa.String(), nullable=True),
        sa.Column('meta', sa.JSON(), nullable=True),
        sa.ForeignKeyConstraint(['run_id'], ['research_runs.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_research_trace_events_run_id'), 'research_trace_events', ['run_id'], unique=False)


def downgrade() -> None:
    op.drop_index(op.f('ix_research_trace_events_run_id'), table_name='research_trace_events')
    op.drop_table('research_trace_events')
    op.drop_index(op.f('ix_research_step_checkpoints_run_id'), table_name='research_step_checkpoints')
    op.drop_table('research_step_checkpoints')
    op.drop_index(op.f('ix_cached_extractions_extracted_at'), table_name='cached_extractions')
    op.drop_table('cached_extractions')
    op.drop_table('user_settings')
    op.drop_index(op.f('ix_leads_lead_data_id'), table_name='leads')
    op.drop_table('leads')
    op.drop_table('lead_data')
    op.drop_index(op.f('ix_action_items_run_id'), table_name='action_items')
    op.drop_table('action_items')
    op.drop_index(op.f('ix_competitor_intel_run_id'), table_name='competitor_intel')
    op.drop_table('competitor_intel')
    op.drop_index(op.f('ix_research_insights_run_id'), table_name='research_insights')
    op.drop_table('research_insights')
    op.drop_index(op.f('ix_research_sources_run_id'), table_name='research_sources')
    op.drop_table('research_sources')
    op.drop_index(op.f('ix_research_runs_prompt_hash'), table_name='research_runs')
    op.drop_index(op.f('ix_research_runs_user_id'), table_name='research_runs')
    op.drop_table('research_runs')
    for enum_type in (action_priority, research_scope, search_method, run_status):
        enum_type.drop(op.get_bind(), checkfirst=True)
