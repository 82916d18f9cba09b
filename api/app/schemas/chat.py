from datetime import datetime
from typing import Any
from pydantic import AliasChoices, BaseModel, Field

from app.models.chat import JoinRequestStatus, ConversationStatus, MessageKind
from app.schemas.user import UserBrief


class JoinRequestCreate(BaseModel):
    """Schema for requesting to join an activity."""
    activity_id: int
    message: str | None = Field(None, max_length=2000)


class JoinRequestResponse(BaseModel):
    """Join request response."""
    id: int
    activity_id: int
    requester_id: int
    host_id: int
    message: str
    status: JoinRequestStatus
    created_at: datetime
    updated_at: datetime
    resolved_at: datetime | None = None
    resolved_by: int | None = None
    # Display fields, filled in by the service
    requester: UserBrief | None = None
    host: UserBrief | None = None
    activity_title: str | None = None

    class Config:
        from_attributes = True


class ConversationResponse(BaseModel):
    """Conversation attached to a join request."""
    id: int
    join_request_id: int
    activity_id: int
    requester_id: int
    host_id: int
    status: ConversationStatus
    created_at: datetime
    last_message_at: datetime
    requester: UserBrief | None = None
    host: UserBrief | None = None
    activity_title: str | None = None

    class Config:
        from_attributes = True


class MessageCreate(BaseModel):
    """Schema for sending a text message."""
    text: str = Field(..., min_length=1, max_length=2000)
    # Client correlation id for optimistic sends
    client_msg_id: str | None = Field(None, min_length=8, max_length=64)


class MessageResponse(BaseModel):
    """Message response."""
    id: int
    conversation_id: int
    sender_id: int | None
    text: str
    kind: MessageKind
    metadata: dict[str, Any] = Field(
        default_factory=dict, validation_alias=AliasChoices('meta', 'metadata')
    )
    client_msg_id: str | None = None
    created_at: datetime
    # None for system-authored messages
    sender: UserBrief | None = None

    class Config:
        from_attributes = True


class JoinRequestCreatedResponse(BaseModel):
    """Everything written by one join request creation."""
    join_request: JoinRequestResponse
    conversation: ConversationResponse
    messages: list[MessageResponse]


class ResolutionResponse(BaseModel):
    """Outcome of an approve or deny."""
    join_request: JoinRequestResponse
    conversation: ConversationResponse
    message: MessageResponse
    attendee_count: int | None = None


class ErrorResponse(BaseModel):
    detail: str
    code: str
