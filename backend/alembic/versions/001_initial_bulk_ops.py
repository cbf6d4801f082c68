"""Create action ledger, idempotency, usage and token tables

Revision ID: 001_initial_bulk_ops
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001_initial_bulk_ops'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create the bulk operation tables."""
    op.create_table(
        'actions',
        sa.Column('id', sa.String(length=255), nullable=False),
        sa.Column('user_id', sa.String(length=255), nullable=False),
        sa.Column('type', sa.String(length=16), nullable=False),
        sa.Column('source_playlist_id', sa.String(length=255), nullable=True),
        sa.Column('target_playlist_id', sa.String(length=255), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('finished_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('parent_action_id', sa.String(length=255), nullable=True),
        sa.Column('using_fallback', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.ForeignKeyConstraint(['parent_action_id'], ['actions.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_actions_user_id', 'actions', ['user_id'], unique=False)
    op.create_index('ix_actions_parent_action_id', 'actions', ['parent_action_id'], unique=False)
    op.create_index('ix_actions_user_created', 'actions', ['user_id', 'created_at'], unique=False)
    op.create_index('ix_actions_status_updated', 'actions', ['status', 'updated_at'], unique=False)

    op.create_table(
        'action_items',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('action_id', sa.String(length=255), nullable=False),
        sa.Column('seq', sa.Integer(), nullable=False),
        sa.Column('type', sa.String(length=16), nullable=False),
        sa.Column('video_id', sa.String(length=255), nullable=True),
        sa.Column('source_playlist_id', sa.String(length=255), nullable=True),
        sa.Column('target_playlist_id', sa.String(length=255), nullable=True),
        sa.Column('source_playlist_item_id', sa.String(length=255), nullable=True),
        sa.Column('target_playlist_item_id', sa.String(length=255), nullable=True),
        sa.Column('position', sa.Integer(), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('error_code', sa.String(length=128), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['action_id'], ['actions.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_action_items_action_seq', 'action_items', ['action_id', 'seq'], unique=True)
    op.create_index('ix_action_items_action_status', 'action_items', ['action_id', 'status'], unique=False)

    op.create_table(
        'idempotency_keys',
        sa.Column('key', sa.String(length=255), nullable=False),
        sa.Column('user_id', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('key')
    )
    op.create_index('ix_idempotency_keys_created_at', 'idempotency_keys', ['created_at'], unique=False)

    op.create_table(
        'quota_usage',
        sa.Column('date_key', sa.String(length=10), nullable=False),
        sa.Column('scope', sa.String(length=320), nullable=False),
        sa.Column('used', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('date_key', 'scope')
    )

    op.create_table(
        'video_ops_totals',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('total', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )

    op.create_table(
        'user_tokens',
        sa.Column('user_id', sa.String(length=255), nullable=False),
        sa.Column('access_token', sa.Text(), nullable=True),
        sa.Column('refresh_token', sa.Text(), nullable=True),
        sa.Column('scope', sa.Text(), nullable=True),
        sa.Column('token_type', sa.String(length=32), nullable=True),
        sa.Column('expiry_date', sa.BigInteger(), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('user_id')
    )


def downgrade() -> None:
    """Drop the bulk operation tables."""
    op.drop_table('user_tokens')
    op.drop_table('video_ops_totals')
    op.drop_table('quota_usage')
    op.drop_index('ix_idempotency_keys_created_at', table_name='idempotency_keys')
    op.drop_table('idempotency_keys')
    op.drop_index('ix_action_items_action_status', table_name='action_items')
    op.drop_index('ix_action_items_action_seq', table_name='action_items')
    op.drop_table('action_items')
    op.drop_index('ix_actions_status_updated', table_name='actions')
    op.drop_index('ix_actions_user_created', table_name='actions')
    op.drop_index('ix_actions_parent_action_id', table_name='actions')
    op.drop_index('ix_actions_user_id', table_name='actions')
    op.drop_table('actions')
