"""Add speaking evaluation jobs, results and practice tests

Revision ID: add_speaking_jobs_table
Revises:
Create Date: 2026-10-19 10:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = 'add_speaking_jobs_table'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'practice_tests',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('user_id', sa.String(length=36), nullable=False),
        sa.Column('module', sa.String(length=20), nullable=False),
        sa.Column('topic', sa.String(length=255), nullable=True),
        sa.Column('difficulty', sa.String(length=50), nullable=True),
        sa.Column('payload', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text("(now() at time zone 'utc')"), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_practice_tests_user_id', 'practice_tests', ['user_id'], unique=False)

    op.create_table(
        'speaking_evaluation_jobs',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('user_id', sa.String(length=36), nullable=False),
        sa.Column('test_id', sa.String(length=36), nullable=False),
        sa.Column('file_paths', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('durations', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('topic', sa.String(length=255), nullable=True),
        sa.Column('difficulty', sa.String(length=50), nullable=True),
        sa.Column('fluency_flag', sa.Boolean(), server_default=sa.text('false'), nullable=False),
        sa.Column('provider_file_refs', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('status', sa.String(length=20), server_default='pending', nullable=False),
        sa.Column('stage', sa.String(length=20), server_default='pending_upload', nullable=False),
        sa.Column('lock_token', sa.String(length=36), nullable=True),
        sa.Column('lock_expires_at', sa.DateTime(), nullable=True),
        sa.Column('heartbeat_at', sa.DateTime(), nullable=True),
        sa.Column('retry_count', sa.Integer(), server_default='0', nullable=False),
        sa.Column('max_retries', sa.Integer(), server_default='3', nullable=False),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('result_id', sa.String(length=36), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text("(now() at time zone 'utc')"), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text("(now() at time zone 'utc')"), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_speaking_evaluation_jobs_user_id', 'speaking_evaluation_jobs', ['user_id'], unique=False)
    op.create_index('idx_speaking_jobs_status_stage', 'speaking_evaluation_jobs', ['status', 'stage'], unique=False)
    op.create_index('idx_speaking_jobs_heartbeat_at', 'speaking_evaluation_jobs', ['heartbeat_at'], unique=False)
    op.create_index('idx_speaking_jobs_created_at', 'speaking_evaluation_jobs', ['created_at'], unique=False)

    op.create_table(
        'evaluation_results',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('job_id', sa.String(length=36), nullable=False),
        sa.Column('user_id', sa.String(length=36), nullable=False),
        sa.Column('test_id', sa.String(length=36), nullable=False),
        sa.Column('module', sa.String(length=20), nullable=False),
        sa.Column('band_score', sa.Float(), nullable=False),
        sa.Column('score', sa.Integer(), nullable=False),
        sa.Column('total_questions', sa.Integer(), nullable=False),
        sa.Column('time_spent_seconds', sa.Integer(), nullable=False),
        sa.Column('question_results', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('answers', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('model_used', sa.String(length=100), nullable=True),
        sa.Column('completed_at', sa.DateTime(), server_default=sa.text("(now() at time zone 'utc')"), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_evaluation_results_job_id', 'evaluation_results', ['job_id'], unique=False)
    op.create_index('ix_evaluation_results_user_id', 'evaluation_results', ['user_id'], unique=False)
    op.create_index('idx_evaluation_results_user_test', 'evaluation_results', ['user_id', 'test_id'], unique=False)


def downgrade() -> None:
    op.drop_index('idx_evaluation_results_user_test', table_name='evaluation_results')
    op.drop_index('ix_evaluation_results_user_id', table_name='evaluation_results')
    op.drop_index('ix_evaluation_results_job_id', table_name='evaluation_results')
    op.drop_table('evaluation_results')
    op.drop_index('idx_speaking_jobs_created_at', table_name='speaking_evaluation_jobs')
    op.drop_index('idx_speaking_jobs_heartbeat_at', table_name='speaking_evaluation_jobs')
    op.drop_index('idx_speaking_jobs_status_stage', table_name='speaking_evaluation_jobs')
    op.drop_index('ix_speaking_evaluation_jobs_user_id', table_name='speaking_evaluation_jobs')
    op.drop_table('speaking_evaluation_jobs')
    op.drop_index('ix_practice_tests_user_id', table_name='practice_tests')
    op.drop_table('practice_tests')
