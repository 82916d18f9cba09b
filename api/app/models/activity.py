from datetime import datetime
from sqlalchemy import String, Integer, ForeignKey, DateTime, UniqueConstraint, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.database import Base


class Activity(Base):
    """An activity hosted by one user that others can request to join."""

    __tablename__ = 'activities'

    id: Mapped[int] = mapped_column(primary_key=True)
    host_id: Mapped[int] = mapped_column(
        ForeignKey('users.id', ondelete='CASCADE'), index=True
    )
    title: Mapped[str] = mapped_column(String(200))
    description: Mapped[str | None] = mapped_column(String(2000), default=None)

    # Seats, including the host's when the host attends
    capacity: Mapped[int] = mapped_column(Integer)
    # Kept in step with activity_attendees; only incremented by a conditional update
    attendee_count: Mapped[int] = mapped_column(Integer, default=0)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    # Relationships
    host: Mapped['User'] = relationship('User', back_populates='hosted_activities')
    attendees: Mapped[list['ActivityAttendee']] = relationship(
        'ActivityAttendee', back_populates='activity', cascade='all, delete-orphan'
    )

    __table_args__ = (
        CheckConstraint('capacity >= 1', name='ck_activities_capacity_positive'),
        CheckConstraint('attendee_count <= capacity', name='ck_activities_within_capacity'),
    )


class ActivityAttendee(Base):
    """Roster entry: a user holding a seat in an activity."""

    __tablename__ = 'activity_attendees'

    id: Mapped[int] = mapped_column(primary_key=True)
    activity_id: Mapped[int] = mapped_column(
        ForeignKey('activities.id', ondelete='CASCADE'), index=True
    )
    user_id: Mapped[int] = mapped_column(ForeignKey('users.id', ondelete='CASCADE'))
    joined_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    # Relationships
    activity: Mapped['Activity'] = relationship('Activity', back_populates='attendees')

    __table_args__ = (
        UniqueConstraint('activity_id', 'user_id', name='unique_activity_attendee'),
    )
