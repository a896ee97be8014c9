"""add_message_processing_core

Revision ID: 20261017_add_core
Revises:
Create Date: 2026-10-17 09:00:00

Adds: processed_messages, chat_sessions, dead_letter_messages
Purpose: Durable dedup records, versioned conversation state and the dead-letter queue
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '20261017_add_core'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """
    Create the three tables of the message processing core.

    Features:
    - Unique message_id on processed_messages backs the atomic insert-if-absent
    - Integer version on chat_sessions backs optimistic concurrency
    - (status, next_retry_at) index serves the dead-letter sweep query
    """
    op.create_table(
        'processed_messages',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('message_id', sa.String(length=255), nullable=False),
        sa.Column('subject', sa.String(length=64), nullable=False),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('first_seen_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('last_seen_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('message_id'),
    )
    op.create_index('ix_processed_messages_last_seen_at', 'processed_messages', ['last_seen_at'])

    op.create_table(
        'chat_sessions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('subject', sa.String(length=64), nullable=False),
        sa.Column('state_code', sa.String(length=50), nullable=False),
        sa.Column('data', sa.JSON(), nullable=True),
        sa.Column('equipment_id', sa.Integer(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('last_activity_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('subject'),
    )

    op.create_table(
        'dead_letter_messages',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('message_id', sa.String(length=255), nullable=False),
        sa.Column('subject', sa.String(length=64), nullable=False),
        sa.Column('message_type', sa.String(length=50), nullable=False),
        sa.Column('payload', sa.Text(), nullable=False),
        sa.Column('correlation_id', sa.String(length=100), nullable=True),
        sa.Column('error_message', sa.String(length=1000), nullable=True),
        sa.Column('error_code', sa.String(length=100), nullable=True),
        sa.Column('error_stack', sa.Text(), nullable=True),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_retries', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('next_retry_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_retry_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='PENDING'),
        sa.Column('status_reason', sa.String(length=500), nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('message_id'),
        sa.CheckConstraint('retry_count <= max_retries', name='ck_dead_letter_retry_bound'),
    )
    op.create_index('ix_dead_letter_status_next_retry', 'dead_letter_messages', ['status', 'next_retry_at'])
    op.create_index('ix_dead_letter_created_at', 'dead_letter_messages', ['created_at'])


def downgrade() -> None:
    """Drop the message processing core tables."""
    op.drop_index('ix_dead_letter_created_at', table_name='dead_letter_messages')
    op.drop_index('ix_dead_letter_status_next_retry', table_name='dead_letter_messages')
    op.drop_table('dead_letter_messages')
    op.drop_table('chat_sessions')
    op.drop_index('ix_processed_messages_last_seen_at', table_name='processed_messages')
    op.drop_table('processed_messages')
