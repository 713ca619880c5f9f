"""orchestration_schema

Revision ID: 001
Revises: 
Create Date: 2026-10-17 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


quota_tier = sa.Enum('free', 'pro', 'enterprise', name='quotatier')
audit_job_status = sa.Enum('pending', 'running', 'completed', 'failed', name='auditjobstatus')
pdf_job_status = sa.Enum('queued', 'processing', 'completed', 'failed', name='pdfjobstatus')


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    ]


def upgrade() -> None:
    """Upgrade schema."""
    # Quotas
    op.create_table(
        'user_subscriptions',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('tier', quota_tier, nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_user_subscriptions_id'), 'user_subscriptions', ['id'], unique=False)
    op.create_index(op.f('ix_user_subscriptions_user_id'), 'user_subscriptions', ['user_id'], unique=True)

    op.create_table(
        'quota_records',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('tier', quota_tier, nullable=False),
        sa.Column('period_start', sa.DateTime(), nullable=False),
        sa.Column('audits_used', sa.Integer(), nullable=False),
        sa.Column('audits_limit', sa.Integer(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'period_start', name='uq_quota_records_user_period'),
        sa.CheckConstraint('audits_used >= 0', name='check_audits_used_non_negative'),
        sa.CheckConstraint('audits_used <= audits_limit', name='check_audits_within_limit'),
    )
    op.create_index(op.f('ix_quota_records_id'), 'quota_records', ['id'], unique=False)
    op.create_index(op.f('ix_quota_records_user_id'), 'quota_records', ['user_id'], unique=False)

    # Audits
    op.create_table(
        'audit_results',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('audit_job_id', sa.String(), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_audit_results_id'), 'audit_results', ['id'], unique=False)
    op.create_index(op.f('ix_audit_results_audit_job_id'), 'audit_results', ['audit_job_id'], unique=True)

    op.create_table(
        'audit_jobs',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('project_id', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('status', audit_job_status, nullable=False),
        sa.Column('remote_job_id', sa.String(128), nullable=True),
        sa.Column('options', sa.JSON(), nullable=True),
        sa.Column('progress', sa.Integer(), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('period_start', sa.DateTime(), nullable=True),
        sa.Column('queued_at', sa.DateTime(), nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('last_polled_at', sa.DateTime(), nullable=True),
        sa.Column('result_ref', sa.String(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['result_ref'], ['audit_results.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_audit_jobs_id'), 'audit_jobs', ['id'], unique=False)
    op.create_index(op.f('ix_audit_jobs_project_id'), 'audit_jobs', ['project_id'], unique=False)
    op.create_index(op.f('ix_audit_jobs_user_id'), 'audit_jobs', ['user_id'], unique=False)
    op.create_index(op.f('ix_audit_jobs_status'), 'audit_jobs', ['status'], unique=False)
    op.create_index(op.f('ix_audit_jobs_remote_job_id'), 'audit_jobs', ['remote_job_id'], unique=False)
    op.create_index('idx_audit_jobs_user_created', 'audit_jobs', ['user_id', 'created_at'], unique=False)
    # At most one pending/running audit per project
    op.create_index(
        'uq_audit_jobs_active_project',
        'audit_jobs',
        ['project_id'],
        unique=True,
        postgresql_where=sa.text("status IN ('pending', 'running')"),
    )

    # PDF jobs
    op.create_table(
        'pdf_jobs',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('requested_by', sa.String(), nullable=False),
        sa.Column('project_id', sa.String(), nullable=False),
        sa.Column('template_id', sa.String(128), nullable=False),
        sa.Column('theme', sa.JSON(), nullable=True),
        sa.Column('status', pdf_job_status, nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False),
        sa.Column('max_attempts', sa.Integer(), nullable=False),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('progress', sa.Integer(), nullable=False),
        sa.Column('artifact_ref', sa.String(1024), nullable=True),
        sa.Column('queued_at', sa.DateTime(), nullable=False),
        sa.Column('dispatched_at', sa.DateTime(), nullable=True),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('heartbeat_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('attempts <= max_attempts', name='check_pdf_attempts_within_max'),
    )
    op.create_index(op.f('ix_pdf_jobs_id'), 'pdf_jobs', ['id'], unique=False)
    op.create_index(op.f('ix_pdf_jobs_requested_by'), 'pdf_jobs', ['requested_by'], unique=False)
    op.create_index(op.f('ix_pdf_jobs_project_id'), 'pdf_jobs', ['project_id'], unique=False)
    op.create_index(op.f('ix_pdf_jobs_status'), 'pdf_jobs', ['status'], unique=False)
    op.create_index('idx_pdf_jobs_status_heartbeat', 'pdf_jobs', ['status', 'heartbeat_at'], unique=False)


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index('idx_pdf_jobs_status_heartbeat', table_name='pdf_jobs')
    op.drop_index(op.f('ix_pdf_jobs_status'), table_name='pdf_jobs')
    op.drop_index(op.f('ix_pdf_jobs_project_id'), table_name='pdf_jobs')
    op.drop_index(op.f('ix_pdf_jobs_requested_by'), table_name='pdf_jobs')
    op.drop_index(op.f('ix_pdf_jobs_id'), table_name='pdf_jobs')
    op.drop_table('pdf_jobs')

    op.drop_index('uq_audit_jobs_active_project', table_name='audit_jobs')
    op.drop_index('idx_audit_jobs_user_created', table_name='audit_jobs')
    op.drop_index(op.f('ix_audit_jobs_remote_job_id'), table_name='audit_jobs')
    op.drop_index(op.f('ix_audit_jobs_status'), table_name='audit_jobs')
    op.drop_index(op.f('ix_audit_jobs_user_id'), table_name='audit_jobs')
    op.drop_index(op.f('ix_audit_jobs_project_id'), table_name='audit_jobs')
    op.drop_index(op.f('ix_audit_jobs_id'), table_name='audit_jobs')
    op.drop_table('audit_jobs')

    op.drop_index(op.f('ix_audit_results_audit_job_id'), table_name='audit_results')
    op.drop_index(op.f('ix_audit_results_id'), table_name='audit_results')
    op.drop_table('audit_results')

    op.drop_index(op.f('ix_quota_records_user_id'), table_name='quota_records')
    op.drop_index(op.f('ix_quota_records_id'), table_name='quota_records')
    op.drop_table('quota_records')

    op.drop_index(op.f('ix_user_subscriptions_user_id'), table_name='user_subscriptions')
    op.drop_index(op.f('ix_user_subscriptions_id'), table_name='user_subscriptions')
    op.drop_table('user_subscriptions')

    pdf_job_status.drop(op.get_bind(), checkfirst=True)
    audit_job_status.drop(op.get_bind(), checkfirst=True)
    quota_tier.drop(op.get_bind(), checkfirst=True)
