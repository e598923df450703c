"""Add API key pool with per-capability quota flags

Revision ID: add_api_keys_table
Revises: add_speaking_jobs_table
Create Date: 2026-10-19 10:30:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = 'add_api_keys_table'
down_revision: Union[str, None] = 'add_speaking_jobs_table'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

CAPABILITIES = ('flash_2_5', 'pro', 'tts')


def upgrade() -> None:
    quota_columns = []
    for cap in CAPABILITIES:
        quota_columns.append(sa.Column(f'{cap}_quota_exhausted', sa.Boolean(), server_default=sa.text('false'), nullable=False))
        quota_columns.append(sa.Column(f'{cap}_quota_exhausted_date', sa.Date(), nullable=True))

    op.create_table(
        'api_keys',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('provider', sa.String(length=50), nullable=False),
        sa.Column('key_value', sa.Text(), nullable=False),
        sa.Column('is_active', sa.Boolean(), server_default=sa.text('true'), nullable=False),
        sa.Column('error_count', sa.Integer(), server_default='0', nullable=False),
        *quota_columns,
        sa.Column('created_at', sa.DateTime(), server_default=sa.text("(now() at time zone 'utc')"), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text("(now() at time zone 'utc')"), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_api_keys_provider', 'api_keys', ['provider'], unique=False)
    op.create_index('idx_api_keys_provider_active', 'api_keys', ['provider', 'is_active'], unique=False)
    op.create_index('idx_api_keys_error_count', 'api_keys', ['error_count'], unique=False)


def downgrade() -> None:
    op.drop_index('idx_api_keys_error_count', table_name='api_keys')
    op.drop_index('idx_api_keys_provider_active', table_name='api_keys')
    op.drop_index('ix_api_keys_provider', table_name='api_keys')
    op.drop_table('api_keys')
