from app.schemas.user import UserCreate, UserResponse, UserBrief
from app.schemas.activity import ActivityCreate, ActivityResponse, AttendeeResponse
from app.schemas.chat import (
    JoinRequestCreate,
    JoinRequestResponse,
    ConversationResponse,
    MessageCreate,
    MessageResponse,
    JoinRequestCreatedResponse,
    ResolutionResponse,
    ErrorResponse,
)

__all__ = [
    'UserCreate',
    'UserResponse',
    'UserBrief',
    'ActivityCreate',
    'ActivityResponse',
    'AttendeeResponse',
    'JoinRequestCreate',
    'JoinRequestResponse',
    'ConversationResponse',
    'MessageCreate',
    'MessageResponse',
    'JoinRequestCreatedResponse',
    'ResolutionResponse',
    'ErrorResponse',
]
