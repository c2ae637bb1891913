"""Initial migration

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create users table
    op.create_table(
        'users',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('external_id', sa.String(255), nullable=True, index=True),
        sa.Column('active_subscription_id', sa.String(36), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Create subscriptions table (the usage ledger; all times are epoch ms)
    op.create_table(
        'subscriptions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id'), nullable=False, index=True),
        sa.Column('tier', sa.String(20), nullable=False, server_default='free'),
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('product_id', sa.String(100), nullable=False, server_default='free-tier'),
        sa.Column('platform', sa.String(20), nullable=True),
        sa.Column('consumed_credits', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('period_start', sa.BigInteger(), nullable=False),
        sa.Column('custom_credit_limit', sa.Integer(), nullable=True),
        sa.Column('last_verified_at', sa.BigInteger(), nullable=False),
        sa.Column('expires_at', sa.BigInteger(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Create subscription_events table (billing audit log)
    op.create_table(
        'subscription_events',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), nullable=False, index=True),
        sa.Column('event_type', sa.String(50), nullable=False, index=True),
        sa.Column('product_id', sa.String(100), nullable=False),
        sa.Column('tier', sa.String(20), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('store', sa.String(30), nullable=True),
        sa.Column('entitlement_ids', sa.JSON(), nullable=True),
        sa.Column('expires_at', sa.BigInteger(), nullable=True),
        sa.Column('tier_reset', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('recorded_at', sa.BigInteger(), nullable=False),
    )

    # Create subjects table
    op.create_table(
        'subjects',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('owner_id', sa.String(36), sa.ForeignKey('users.id'), nullable=False, index=True),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('title', sa.String(255), nullable=True),
        sa.Column('primary_audio_output_id', sa.String(36), nullable=True),
        sa.Column('primary_video_output_id', sa.String(36), nullable=True),
        sa.Column('updated_at', sa.BigInteger(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Create generation_tasks table
    op.create_table(
        'generation_tasks',
        sa.Column('task_id', sa.String(100), primary_key=True),
        sa.Column('owner_id', sa.String(36), nullable=False, index=True),
        sa.Column('subject_id', sa.String(36), nullable=False, index=True),
        sa.Column('kind', sa.String(20), nullable=False),
        sa.Column('output_count', sa.Integer(), nullable=False),
        sa.Column('credit_cost', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.BigInteger(), nullable=False),
    )

    # Create generation_outputs table
    op.create_table(
        'generation_outputs',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('task_id', sa.String(100), sa.ForeignKey('generation_tasks.task_id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('subject_id', sa.String(36), nullable=False),
        sa.Column('kind', sa.String(20), nullable=False),
        sa.Column('output_index', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('result_ref', sa.Text(), nullable=True),
        sa.Column('title', sa.String(255), nullable=True),
        sa.Column('duration', sa.Float(), nullable=True),
        sa.Column('result_metadata', sa.JSON(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.BigInteger(), nullable=False),
        sa.Column('updated_at', sa.BigInteger(), nullable=False),
        sa.UniqueConstraint('task_id', 'output_index', name='uq_generation_outputs_task_index'),
    )

    # Create queue_entries table
    op.create_table(
        'queue_entries',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('provider_type', sa.String(20), nullable=False),
        sa.Column('owner_id', sa.String(36), nullable=False, index=True),
        sa.Column('subject_id', sa.String(36), nullable=True, index=True),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('correlation_task_id', sa.String(100), nullable=True, index=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.BigInteger(), nullable=False),
        sa.Column('started_at', sa.BigInteger(), nullable=True),
        sa.Column('completed_at', sa.BigInteger(), nullable=True),
        sa.Column('updated_at', sa.BigInteger(), nullable=False),
    )

    # Create api_keys table
    op.create_table(
        'api_keys',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('key_hash', sa.String(255), nullable=False, unique=True, index=True),
        sa.Column('key_prefix', sa.String(12), nullable=False, index=True),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id'), nullable=False, index=True),
        sa.Column('scopes', sa.JSON(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
    )

    # Create indexes
    op.create_index('ix_generation_outputs_subject_status', 'generation_outputs', ['subject_id', 'status'])
    op.create_index('ix_queue_entries_provider_status', 'queue_entries', ['provider_type', 'status'])


def downgrade() -> None:
    op.drop_index('ix_queue_entries_provider_status')
    op.drop_index('ix_generation_outputs_subject_status')
    op.drop_table('api_keys')
    op.drop_table('queue_entries')
    op.drop_table('generation_outputs')
    op.drop_table('generation_tasks')
    op.drop_table('subjects')
    op.drop_table('subscription_events')
    op.drop_table('subscriptions')
    op.drop_table('users')
