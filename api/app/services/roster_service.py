"""Activity roster with capacity enforcement."""
from enum import Enum
from sqlalchemy import select, update, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.activity import Activity, ActivityAttendee
from app.services.errors import NotFound, AtCapacity, Conflict


class RosterOutcome(str, Enum):
    ADDED = 'added'
    ALREADY_PRESENT = 'already_present'


class RosterManager:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_activity(self, activity_id: int) -> Activity:
        activity = await self.db.get(Activity, activity_id)
        if not activity:
            raise NotFound(f'Activity {activity_id} not found')
        return activity

    async def is_attendee(self, activity_id: int, user_id: int) -> bool:
        result = await self.db.execute(
            select(ActivityAttendee.id).where(
                and_(
                    ActivityAttendee.activity_id == activity_id,
                    ActivityAttendee.user_id == user_id,
                )
            )
        )
        return result.scalar_one_or_none() is not None

    async def add_attendee(self, activity_id: int, user_id: int) -> RosterOutcome:
        """Seat a user, or raise AtCapacity.

        The seat is claimed with a conditional increment, so the capacity
        check and the claim are one statement: concurrent approvals on the
        same activity cannot together exceed capacity.
        """
        activity = await self.get_activity(activity_id)

        if await self.is_attendee(activity_id, user_id):
            return RosterOutcome.ALREADY_PRESENT

        result = await self.db.execute(
            update(Activity)
            .where(
                and_(
                    Activity.id == activity_id,
                    Activity.attendee_count < Activity.capacity,
                )
            )
            .values(attendee_count=Activity.attendee_count + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise AtCapacity(f'{activity.title} is full ({activity.capacity} spots)')

        self.db.add(ActivityAttendee(activity_id=activity_id, user_id=user_id))
        try:
            await self.db.flush()
        except IntegrityError as e:
            raise Conflict('Already attending this activity') from e

        await self.db.refresh(activity)
        return RosterOutcome.ADDED

    async def list_attendees(self, activity_id: int) -> list[ActivityAttendee]:
        await self.get_activity(activity_id)
        result = await self.db.execute(
            select(ActivityAttendee)
            .where(ActivityAttendee.activity_id == activity_id)
            .order_by(ActivityAttendee.joined_at, ActivityAttendee.id)
        )
        return list(result.scalars().all())
