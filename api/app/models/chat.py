from datetime import datetime
from enum import Enum
from sqlalchemy import (
    String, ForeignKey, DateTime, Text, JSON, Index, UniqueConstraint, text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.database import Base


class JoinRequestStatus(str, Enum):
    """Join request lifecycle. APPROVED and DENIED are terminal."""
    PENDING = 'pending'
    APPROVED = 'approved'
    DENIED = 'denied'


class Decision(str, Enum):
    """Host decision on a pending request."""
    APPROVE = 'approve'
    DENY = 'deny'

    @property
    def target_status(self) -> JoinRequestStatus:
        if self is Decision.APPROVE:
            return JoinRequestStatus.APPROVED
        return JoinRequestStatus.DENIED


class ConversationStatus(str, Enum):
    ACTIVE = 'active'
    READ_ONLY = 'read_only'


class MessageKind(str, Enum):
    TEXT = 'text'
    SYSTEM = 'system'
    JOIN_REQUEST = 'join_request'
    APPROVAL = 'approval'
    REJECTION = 'rejection'


class JoinRequest(Base):
    """A requester's application to join an activity."""

    __tablename__ = 'join_requests'

    id: Mapped[int] = mapped_column(primary_key=True)
    activity_id: Mapped[int] = mapped_column(
        ForeignKey('activities.id', ondelete='CASCADE')
    )
    requester_id: Mapped[int] = mapped_column(ForeignKey('users.id', ondelete='CASCADE'))
    # Copied from the activity at creation time
    host_id: Mapped[int] = mapped_column(ForeignKey('users.id', ondelete='CASCADE'), index=True)
    message: Mapped[str] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(20), default=JoinRequestStatus.PENDING.value)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    # Null when resolved by the system (expiry)
    resolved_by: Mapped[int | None] = mapped_column(
        ForeignKey('users.id', ondelete='SET NULL'), default=None
    )

    # Relationships
    conversation: Mapped['Conversation'] = relationship(
        'Conversation', back_populates='join_request', uselist=False
    )

    __table_args__ = (
        Index('ix_join_requests_activity_status', 'activity_id', 'status'),
        Index(
            'uq_join_requests_pending_pair',
            'activity_id',
            'requester_id',
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
    )


class Conversation(Base):
    """The 1:1 thread permanently linked to one join request."""

    __tablename__ = 'conversations'

    id: Mapped[int] = mapped_column(primary_key=True)
    join_request_id: Mapped[int] = mapped_column(
        ForeignKey('join_requests.id', ondelete='CASCADE'), unique=True
    )
    activity_id: Mapped[int] = mapped_column(ForeignKey('activities.id', ondelete='CASCADE'))

    # Participants
    requester_id: Mapped[int] = mapped_column(
        ForeignKey('users.id', ondelete='CASCADE'), index=True
    )
    host_id: Mapped[int] = mapped_column(ForeignKey('users.id', ondelete='CASCADE'), index=True)

    status: Mapped[str] = mapped_column(String(20), default=ConversationStatus.ACTIVE.value)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    last_message_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    # Relationships
    join_request: Mapped['JoinRequest'] = relationship(
        'JoinRequest', back_populates='conversation'
    )
    messages: Mapped[list['Message']] = relationship(
        'Message', back_populates='conversation', cascade='all, delete-orphan'
    )

    @property
    def participant_ids(self) -> tuple[int, int]:
        return (self.requester_id, self.host_id)


class Message(Base):
    """Conversation message. Append-only."""

    __tablename__ = 'messages'

    id: Mapped[int] = mapped_column(primary_key=True)
    conversation_id: Mapped[int] = mapped_column(
        ForeignKey('conversations.id', ondelete='CASCADE')
    )
    # Null for system-authored messages
    sender_id: Mapped[int | None] = mapped_column(
        ForeignKey('users.id', ondelete='SET NULL'), default=None
    )
    text: Mapped[str] = mapped_column(Text)
    kind: Mapped[str] = mapped_column(String(20), default=MessageKind.TEXT.value)
    meta: Mapped[dict] = mapped_column('metadata', JSON, default=dict)

    # Client-generated correlation id, echoed back so optimistic copies can be matched
    client_msg_id: Mapped[str | None] = mapped_column(String(64), default=None)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    # Relationships
    conversation: Mapped['Conversation'] = relationship(
        'Conversation', back_populates='messages'
    )

    __table_args__ = (
        Index('ix_messages_conversation_created', 'conversation_id', 'created_at', 'id'),
        UniqueConstraint('conversation_id', 'client_msg_id', name='unique_client_msg'),
    )
