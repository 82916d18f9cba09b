from app.models.user import User
from app.models.activity import Activity, ActivityAttendee
from app.models.chat import (
    JoinRequest, Conversation, Message,
    JoinRequestStatus, ConversationStatus, MessageKind, Decision,
)

__all__ = [
    'User',
    'Activity',
    'ActivityAttendee',
    'JoinRequest',
    'Conversation',
    'Message',
    'JoinRequestStatus',
    'ConversationStatus',
    'MessageKind',
    'Decision',
]
