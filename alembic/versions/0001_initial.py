"""ticket ledger and generation jobs

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-18
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '0001_initial'
down_revision = None
branch_labels = None
depends_on = None


JSON = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), 'postgresql')


def upgrade() -> None:
    op.create_table(
        'ticket_balances',
        sa.Column('user_id', sa.Integer(), primary_key=True, autoincrement=False),
        sa.Column('balance', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('reserved', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('total_used', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint('balance >= 0', name='ck_ticket_balances_balance_non_negative'),
        sa.CheckConstraint('reserved >= 0', name='ck_ticket_balances_reserved_non_negative'),
    )

    op.create_table(
        'ticket_entries',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('job_id', sa.String(length=36), nullable=True),
        sa.Column('operation', sa.String(length=16), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('reason', sa.String(length=64), nullable=False),
        sa.Column('idempotency_key', sa.String(length=128), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['ticket_balances.user_id'], ondelete='CASCADE'),
        sa.UniqueConstraint('idempotency_key', name='uq_ticket_entries_idempotency_key'),
        sa.UniqueConstraint('job_id', 'operation', name='uq_ticket_entries_job_operation'),
    )
    op.create_index('ix_ticket_entries_user_id', 'ticket_entries', ['user_id'])
    op.create_index('ix_ticket_entries_job_id', 'ticket_entries', ['job_id'])

    op.create_table(
        'generation_jobs',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('model_key', sa.String(length=64), nullable=False),
        sa.Column('model_type', sa.String(length=16), nullable=False),
        sa.Column('provider', sa.String(length=32), nullable=False),
        sa.Column('prompt', sa.Text(), nullable=False),
        sa.Column('parameters', JSON, nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('ticket_cost', sa.Integer(), nullable=False),
        sa.Column('provider_endpoint', sa.String(length=255), nullable=True),
        sa.Column('provider_request_id', sa.String(length=128), nullable=True),
        sa.Column('queue_position', sa.Integer(), nullable=True),
        sa.Column('result_url', sa.String(length=1024), nullable=True),
        sa.Column('result_urls', JSON, nullable=True),
        sa.Column('error_code', sa.String(length=64), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('settled_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_generation_jobs_user_id', 'generation_jobs', ['user_id'])
    op.create_index('ix_generation_jobs_status', 'generation_jobs', ['status'])
    op.create_index('ix_generation_jobs_provider_request_id', 'generation_jobs', ['provider_request_id'])
    op.create_index('ix_generation_jobs_user_status', 'generation_jobs', ['user_id', 'status'])
    op.create_index('ix_generation_jobs_model_status', 'generation_jobs', ['model_key', 'status'])

    op.create_table(
        'generated_assets',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('job_id', sa.String(length=36), nullable=True),
        sa.Column('model_key', sa.String(length=64), nullable=False),
        sa.Column('media_type', sa.String(length=16), nullable=False),
        sa.Column('prompt', sa.Text(), nullable=False),
        sa.Column('url', sa.String(length=1024), nullable=False),
        sa.Column('storage_key', sa.String(length=512), nullable=False),
        sa.Column('ticket_cost', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('reference_urls', JSON, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['job_id'], ['generation_jobs.id'], ondelete='SET NULL'),
    )
    op.create_index('ix_generated_assets_user_id', 'generated_assets', ['user_id'])
    op.create_index('ix_generated_assets_job_id', 'generated_assets', ['job_id'])


def downgrade() -> None:
    op.drop_index('ix_generated_assets_job_id', table_name='generated_assets')
    op.drop_index('ix_generated_assets_user_id', table_name='generated_assets')
    op.drop_table('generated_assets')
    op.drop_index('ix_generation_jobs_model_status', table_name='generation_jobs')
    op.drop_index('ix_generation_jobs_user_status', table_name='generation_jobs')
    op.drop_index('ix_generation_jobs_provider_request_id', table_name='generation_jobs')
    op.drop_index('ix_generation_jobs_status', table_name='generation_jobs')
    op.drop_index('ix_generation_jobs_user_id', table_name='generation_jobs')
    op.drop_table('generation_jobs')
    op.drop_index('ix_ticket_entries_job_id', table_name='ticket_entries')
    op.drop_index('ix_ticket_entries_user_id', table_name='ticket_entries')
    op.drop_table('ticket_entries')
    op.drop_table('ticket_balances')
