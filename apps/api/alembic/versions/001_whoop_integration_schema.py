"""whoop integration schema

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    op.create_table(
        'app_user',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('email', sa.Text(), nullable=True),
        sa.UniqueConstraint('email'),
    )

    op.create_table(
        'oauth_state',
        sa.Column('state', sa.Text(), primary_key=True),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('provider', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('consumed_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['app_user.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_oauth_state_user_id', 'oauth_state', ['user_id'])

    # No unique constraint on (user_id, provider): duplicates are reconciled on read.
    op.create_table(
        'provider_token',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('provider', sa.Text(), nullable=False),
        sa.Column('access_token', sa.Text(), nullable=False),
        sa.Column('refresh_token', sa.Text(), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('last_sync_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['app_user.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_provider_token_user_provider', 'provider_token', ['user_id', 'provider'])

    op.create_table(
        'metric',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('metric_name', sa.Text(), nullable=False),
        sa.Column('metric_category', sa.Text(), nullable=False),
        sa.Column('unit', sa.Text(), nullable=False),
        sa.Column('source', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['app_user.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('user_id', 'metric_name', 'source', name='uq_metric_user_name_source'),
    )

    op.create_table(
        'metric_value',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('metric_id', sa.Uuid(), nullable=False),
        sa.Column('value', sa.Float(), nullable=False),
        sa.Column('measurement_date', sa.Date(), nullable=False),
        sa.Column('external_id', sa.Text(), nullable=False),
        sa.Column('source_data', JSON_TYPE, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['metric_id'], ['metric.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('metric_id', 'measurement_date', 'external_id', name='uq_metric_value_identity'),
    )
    op.create_index('ix_metric_value_metric_date', 'metric_value', ['metric_id', 'measurement_date'])

    op.create_table(
        'integration_event',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('user_id', sa.Uuid(), nullable=True),
        sa.Column('provider', sa.Text(), nullable=False),
        sa.Column('event_type', sa.Text(), nullable=False),
        sa.Column('status', sa.Text(), nullable=False),
        sa.Column('error_code', sa.Text(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('details', JSON_TYPE, nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_integration_event_user_id', 'integration_event', ['user_id'])
    op.create_index('ix_integration_event_provider_type', 'integration_event', ['provider', 'event_type'])


def downgrade() -> None:
    op.drop_index('ix_integration_event_provider_type', table_name='integration_event')
    op.drop_index('ix_integration_event_user_id', table_name='integration_event')
    op.drop_table('integration_event')
    op.drop_index('ix_metric_value_metric_date', table_name='metric_value')
    op.drop_table('metric_value')
    op.drop_table('metric')
    op.drop_index('ix_provider_token_user_provider', table_name='provider_token')
    op.drop_table('provider_token')
    op.drop_index('ix_oauth_state_user_id', table_name='oauth_state')
    op.drop_table('oauth_state')
    op.drop_table('app_user')
