from datetime import datetime
from pydantic import BaseModel, Field


class ActivityCreate(BaseModel):
    """Schema for creating an activity. Capacity counts the host."""
    title: str = Field(..., min_length=1, max_length=200)
    description: str | None = Field(None, max_length=2000)
    capacity: int = Field(..., ge=1, le=1000)
    host_attends: bool = True


class ActivityResponse(BaseModel):
    id: int
    host_id: int
    title: str
    description: str | None = None
    capacity: int
    attendee_count: int
    created_at: datetime

    class Config:
        from_attributes = True


class AttendeeResponse(BaseModel):
    """Roster entry."""
    activity_id: int
    user_id: int
    joined_at: datetime

    class Config:
        from_attributes = True
