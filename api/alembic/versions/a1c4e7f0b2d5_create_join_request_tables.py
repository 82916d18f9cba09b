"""create users, activities, join requests and conversations

Revision ID: a1c4e7f0b2d5
Revises:
Create Date: 2026-10-19 10:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = 'a1c4e7f0b2d5'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('handle', sa.String(50), nullable=False),
        sa.Column('avatar', sa.String(500), nullable=True),
        sa.Column('bio', sa.String(300), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_users_handle', 'users', ['handle'], unique=True)

    op.create_table(
        'activities',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('host_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('title', sa.String(200), nullable=False),
        sa.Column('description', sa.String(2000), nullable=True),
        sa.Column('capacity', sa.Integer(), nullable=False),
        sa.Column('attendee_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint('capacity >= 1', name='ck_activities_capacity_positive'),
        sa.CheckConstraint('attendee_count <= capacity', name='ck_activities_within_capacity'),
    )
    op.create_index('ix_activities_host_id', 'activities', ['host_id'])

    op.create_table(
        'activity_attendees',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('activity_id', sa.Integer(), sa.ForeignKey('activities.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('joined_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('activity_id', 'user_id', name='unique_activity_attendee'),
    )

    op.create_table(
        'join_requests',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('activity_id', sa.Integer(), sa.ForeignKey('activities.id', ondelete='CASCADE'), nullable=False),
        sa.Column('requester_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('host_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('resolved_at', sa.DateTime(), nullable=True),
        sa.Column('resolved_by', sa.Integer(), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True),
    )
    op.create_index('ix_join_requests_host_id', 'join_requests', ['host_id'])
    op.create_index('ix_join_requests_activity_status', 'join_requests', ['activity_id', 'status'])
    # At most one pending request per (activity, requester)
    op.create_index(
        'uq_join_requests_pending_pair',
        'join_requests',
        ['activity_id', 'requester_id'],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
    )

    op.create_table(
        'conversations',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('join_request_id', sa.Integer(), sa.ForeignKey('join_requests.id', ondelete='CASCADE'), nullable=False),
        sa.Column('activity_id', sa.Integer(), sa.ForeignKey('activities.id', ondelete='CASCADE'), nullable=False),
        sa.Column('requester_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('host_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('last_message_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('join_request_id', name='unique_conversation_join_request'),
    )
    op.create_index('ix_conversations_requester_id', 'conversations', ['requester_id'])
    op.create_index('ix_conversations_host_id', 'conversations', ['host_id'])

    op.create_table(
        'messages',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('conversation_id', sa.Integer(), sa.ForeignKey('conversations.id', ondelete='CASCADE'), nullable=False),
        sa.Column('sender_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True),
        sa.Column('text', sa.Text(), nullable=False),
        sa.Column('kind', sa.String(20), nullable=False, server_default='text'),
        sa.Column('metadata', sa.JSON(), nullable=False, server_default='{}'),
        sa.Column('client_msg_id', sa.String(64), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('conversation_id', 'client_msg_id', name='unique_client_msg'),
    )
    # Transcript order
    op.create_index('ix_messages_conversation_created', 'messages', ['conversation_id', 'created_at', 'id'])


def downgrade() -> None:
    op.drop_index('ix_messages_conversation_created', 'messages')
    op.drop_table('messages')
    op.drop_index('ix_conversations_host_id', 'conversations')
    op.drop_index('ix_conversations_requester_id', 'conversations')
    op.drop_table('conversations')
    op.drop_index('uq_join_requests_pending_pair', 'join_requests')
    op.drop_index('ix_join_requests_activity_status', 'join_requests')
    op.drop_index('ix_join_requests_host_id', 'join_requests')
    op.drop_table('join_requests')
    op.drop_table('activity_attendees')
    op.drop_index('ix_activities_host_id', 'activities')
    op.drop_table('activities')
    op.drop_index('ix_users_handle', 'users')
    op.drop_table('users')
