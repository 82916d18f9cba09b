from datetime import datetime
from pydantic import BaseModel, Field, field_validator


class UserBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    handle: str = Field(..., min_length=1, max_length=50, pattern=r'^@?[a-zA-Z0-9_]+$')
    avatar: str | None = None


class UserCreate(UserBase):
    """Dev-mode sign up: no password, the handle is the identity."""
    bio: str | None = Field(None, max_length=300)

    @field_validator('handle')
    @classmethod
    def normalize_handle(cls, v: str) -> str:
        return v.lstrip('@').lower()


class UserBrief(UserBase):
    """Shown next to requests and messages."""
    id: int

    class Config:
        from_attributes = True


class UserResponse(UserBrief):
    bio: str | None = None
    created_at: datetime

    class Config:
        from_attributes = True
