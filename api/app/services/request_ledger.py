"""Join request records and their status transitions."""
from datetime import datetime
from sqlalchemy import select, update, and_, desc
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.activity import Activity, ActivityAttendee
from app.models.chat import JoinRequest, JoinRequestStatus, Decision
from app.models.user import User
from app.services.errors import ValidationFailed, NotFound, Forbidden, Conflict


class RequestLedger:
    """Owns JoinRequest rows. Every status change goes through a compare-and-swap."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, request_id: int) -> JoinRequest:
        join_request = await self.db.get(JoinRequest, request_id)
        if not join_request:
            raise NotFound(f'Join request {request_id} not found')
        return join_request

    async def get_pending(self, activity_id: int, requester_id: int) -> JoinRequest | None:
        result = await self.db.execute(
            select(JoinRequest).where(
                and_(
                    JoinRequest.activity_id == activity_id,
                    JoinRequest.requester_id == requester_id,
                    JoinRequest.status == JoinRequestStatus.PENDING.value,
                )
            )
        )
        return result.scalar_one_or_none()

    async def create(self, activity_id: int, requester_id: int, message: str | None) -> JoinRequest:
        """Create a pending request.

        Raises NotFound for an unknown activity or requester, ValidationFailed
        when the requester hosts the activity or the message is too long, and
        Conflict when a pending request already exists for the pair.
        """
        activity = await self.db.get(Activity, activity_id)
        if not activity:
            raise NotFound(f'Activity {activity_id} not found')
        if not await self.db.get(User, requester_id):
            raise NotFound(f'User {requester_id} not found')

        if activity.host_id == requester_id:
            raise ValidationFailed('Hosts cannot request to join their own activity')

        text = (message or '').strip() or settings.default_join_message
        if len(text) > settings.max_message_length:
            raise ValidationFailed(
                f'Message exceeds {settings.max_message_length} characters'
            )

        if await self.get_pending(activity_id, requester_id):
            raise Conflict('You already have a pending request for this activity')

        attending = await self.db.scalar(
            select(ActivityAttendee.id).where(
                and_(
                    ActivityAttendee.activity_id == activity_id,
                    ActivityAttendee.user_id == requester_id,
                )
            )
        )
        if attending:
            raise Conflict('Already attending this activity')

        join_request = JoinRequest(
            activity_id=activity_id,
            requester_id=requester_id,
            host_id=activity.host_id,
            message=text,
            status=JoinRequestStatus.PENDING.value,
        )
        self.db.add(join_request)
        try:
            await self.db.flush()
        except IntegrityError as e:
            # Partial unique index on (activity_id, requester_id) WHERE pending
            raise Conflict('You already have a pending request for this activity') from e
        await self.db.refresh(join_request)
        return join_request

    async def resolve(self, request_id: int, actor_id: int, decision: Decision) -> JoinRequest:
        """Approve or deny a pending request on behalf of the host."""
        join_request = await self.get(request_id)
        if join_request.host_id != actor_id:
            raise Forbidden('Only the host can resolve this request')
        return await self._transition(join_request, decision.target_status, resolved_by=actor_id)

    async def expire(self, request_id: int) -> JoinRequest:
        """Deny a pending request on behalf of the system."""
        join_request = await self.get(request_id)
        return await self._transition(join_request, JoinRequestStatus.DENIED, resolved_by=None)

    async def _transition(
        self,
        join_request: JoinRequest,
        target: JoinRequestStatus,
        resolved_by: int | None,
    ) -> JoinRequest:
        if join_request.status != JoinRequestStatus.PENDING.value:
            raise Conflict(f'Join request {join_request.id} is already {join_request.status}')

        now = datetime.utcnow()
        result = await self.db.execute(
            update(JoinRequest)
            .where(
                and_(
                    JoinRequest.id == join_request.id,
                    JoinRequest.status == JoinRequestStatus.PENDING.value,
                )
            )
            .values(
                status=target.value,
                updated_at=now,
                resolved_at=now,
                resolved_by=resolved_by,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.refresh(join_request)

        # Lost the race: someone else resolved it between our read and write
        if result.rowcount != 1:
            raise Conflict(f'Join request {join_request.id} is already {join_request.status}')
        return join_request

    async def list_pending_for_host(self, host_id: int) -> list[JoinRequest]:
        """Pending queue for a host, oldest first."""
        result = await self.db.execute(
            select(JoinRequest)
            .where(
                and_(
                    JoinRequest.host_id == host_id,
                    JoinRequest.status == JoinRequestStatus.PENDING.value,
                )
            )
            .order_by(JoinRequest.created_at, JoinRequest.id)
        )
        return list(result.scalars().all())

    async def list_for_requester(self, requester_id: int) -> list[JoinRequest]:
        """All requests a user has made, newest first."""
        result = await self.db.execute(
            select(JoinRequest)
            .where(JoinRequest.requester_id == requester_id)
            .order_by(desc(JoinRequest.created_at), desc(JoinRequest.id))
        )
        return list(result.scalars().all())

    async def list_stale_pending(self, older_than: datetime) -> list[int]:
        """Ids of pending requests created before `older_than`."""
        result = await self.db.execute(
            select(JoinRequest.id)
            .where(
                and_(
                    JoinRequest.status == JoinRequestStatus.PENDING.value,
                    JoinRequest.created_at < older_than,
                )
            )
            .order_by(JoinRequest.created_at)
        )
        return list(result.scalars().all())
