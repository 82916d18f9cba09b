"""Join request orchestration.

Every multi-entity write (create, approve, deny, expire) runs in a single
session and a single transaction spanning the request ledger, the
conversation store and the roster. Events are published only after commit,
so subscribers never see a request without its conversation or an approval
without its roster seat.
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from sqlalchemy.exc import DBAPIError, IntegrityError, TimeoutError as PoolTimeout
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.models.activity import Activity
from app.models.chat import Conversation, Decision, JoinRequest, Message, MessageKind
from app.models.user import User
from app.schemas.activity import ActivityResponse, AttendeeResponse
from app.schemas.chat import (
    ConversationResponse, JoinRequestCreatedResponse, JoinRequestResponse,
    MessageResponse, ResolutionResponse,
)
from app.services.conversation_store import ConversationStore
from app.services.errors import (
    JoinRequestError, AtCapacity, Conflict, Forbidden, NotFound, Transient, ValidationFailed,
)
from app.services.profiles import ProfileLookup
from app.services.realtime_bus import RealtimeBus, RealtimeEvent, conversation_topic, user_topic
from app.services.request_ledger import RequestLedger
from app.services.roster_service import RosterManager

logger = logging.getLogger(__name__)

APPROVAL_TEXT = 'Your join request has been approved! Welcome to the activity! 🎉'
REJECTION_TEXT = 'Your request was not approved at this time. Thank you for your interest!'
EXPIRED_TEXT = 'This request expired before the host responded.'


def request_event(join_request: JoinRequestResponse, user_id: int, type_: str = 'update') -> RealtimeEvent:
    return RealtimeEvent(
        event_id=f'join_requests:{join_request.id}:{join_request.status.value}',
        topic=user_topic(user_id),
        table='join_requests',
        type=type_,
        record=join_request.model_dump(mode='json'),
    )


def conversation_event(conversation: ConversationResponse, user_id: int, type_: str = 'update') -> RealtimeEvent:
    return RealtimeEvent(
        event_id=(
            f'conversations:{conversation.id}:{conversation.status.value}'
            f':{conversation.last_message_at.isoformat()}'
        ),
        topic=user_topic(user_id),
        table='conversations',
        type=type_,
        record=conversation.model_dump(mode='json'),
    )


def message_event(message: MessageResponse) -> RealtimeEvent:
    return RealtimeEvent(
        event_id=f'messages:{message.id}',
        topic=conversation_topic(message.conversation_id),
        table='messages',
        type='insert',
        record=message.model_dump(mode='json'),
    )


def attendee_event(attendee: AttendeeResponse, user_id: int) -> RealtimeEvent:
    return RealtimeEvent(
        event_id=f'activity_attendees:{attendee.activity_id}:{attendee.user_id}',
        topic=user_topic(user_id),
        table='activity_attendees',
        type='insert',
        record=attendee.model_dump(mode='json'),
    )


class JoinRequestService:
    """Creates and resolves join requests as atomic units and fans out the results."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], bus: RealtimeBus):
        self.session_factory = session_factory
        self.bus = bus

    @asynccontextmanager
    async def _unit(self):
        """One session, one transaction. Store failures surface as Transient."""
        try:
            async with self.session_factory() as db:
                async with db.begin():
                    yield db
        except JoinRequestError:
            raise
        except IntegrityError as e:
            raise Conflict('Write conflicts with existing data') from e
        except (DBAPIError, PoolTimeout, OSError) as e:
            logger.error(f'Store unavailable: {e}', exc_info=True)
            raise Transient('Store unavailable, try again') from e

    # ==================== ACTIVITIES ====================

    async def create_activity(
        self,
        host_id: int,
        title: str,
        capacity: int,
        description: str | None = None,
        seat_host: bool = True,
    ) -> ActivityResponse:
        """Create an activity, by default seating its host as the first attendee."""
        if capacity < 1:
            raise ValidationFailed('Capacity must be at least 1')
        async with self._unit() as db:
            if not await db.get(User, host_id):
                raise NotFound(f'User {host_id} not found')
            activity = Activity(
                host_id=host_id,
                title=title,
                description=description,
                capacity=capacity,
                attendee_count=0,
            )
            db.add(activity)
            await db.flush()
            if seat_host:
                await RosterManager(db).add_attendee(activity.id, host_id)
            return ActivityResponse.model_validate(activity)

    async def get_activity(self, activity_id: int) -> ActivityResponse:
        async with self._unit() as db:
            activity = await RosterManager(db).get_activity(activity_id)
            return ActivityResponse.model_validate(activity)

    async def get_roster(self, activity_id: int) -> list[AttendeeResponse]:
        async with self._unit() as db:
            attendees = await RosterManager(db).list_attendees(activity_id)
            return [AttendeeResponse.model_validate(a) for a in attendees]

    # ==================== CREATE ====================

    async def create_join_request(
        self,
        activity_id: int,
        requester_id: int,
        message: str | None = None,
    ) -> JoinRequestCreatedResponse:
        """Create a pending request together with its conversation and seed messages."""
        async with self._unit() as db:
            join_request = await RequestLedger(db).create(activity_id, requester_id, message)
            requester = await db.get(User, requester_id)
            activity = await db.get(Activity, activity_id)
            conversation, messages = await ConversationStore(db).create_with_seed_messages(
                join_request, requester.name, activity.title
            )
            profiles = ProfileLookup(db)
            result = JoinRequestCreatedResponse(
                join_request=await profiles.join_request(join_request),
                conversation=await profiles.conversation(conversation),
                messages=await profiles.messages(messages),
            )

        logger.info(
            f'Join request {result.join_request.id} created: user {requester_id} '
            f'-> activity {activity_id}'
        )
        events = []
        for user_id in (result.join_request.host_id, result.join_request.requester_id):
            events.append(request_event(result.join_request, user_id, 'insert'))
            events.append(conversation_event(result.conversation, user_id, 'insert'))
        events.extend(message_event(m) for m in result.messages)
        await self.bus.publish_many(events)
        return result

    # ==================== RESOLVE ====================

    async def approve(self, request_id: int, actor_id: int) -> ResolutionResponse:
        """Approve, seat the requester and announce it in the conversation.

        AtCapacity rolls the whole unit back, leaving the request pending.
        """
        try:
            async with self._unit() as db:
                join_request = await RequestLedger(db).resolve(request_id, actor_id, Decision.APPROVE)
                roster = RosterManager(db)
                await roster.add_attendee(join_request.activity_id, join_request.requester_id)
                store = ConversationStore(db)
                conversation = await store.get_for_request(request_id)
                message = await store.append(
                    conversation.id,
                    None,
                    APPROVAL_TEXT,
                    kind=MessageKind.APPROVAL,
                    metadata={'join_request_id': request_id, 'actor_id': actor_id},
                )
                activity = await roster.get_activity(join_request.activity_id)
                attendees = await roster.list_attendees(join_request.activity_id)
                result = await self._resolution(
                    db, join_request, conversation, message, activity.attendee_count
                )
                seat = next(
                    AttendeeResponse.model_validate(a)
                    for a in attendees if a.user_id == join_request.requester_id
                )
                audience = {a.user_id for a in attendees} | {join_request.host_id}
        except (Conflict, AtCapacity) as e:
            logger.info(f'Approve of join request {request_id} refused: {e.detail}')
            raise

        logger.info(
            f'Join request {request_id} approved by {actor_id} '
            f'({result.attendee_count}/{activity.capacity} seats taken)'
        )
        events = self._resolution_events(result)
        events.extend(attendee_event(seat, user_id) for user_id in sorted(audience))
        await self.bus.publish_many(events)
        return result

    async def deny(self, request_id: int, actor_id: int) -> ResolutionResponse:
        """Deny and make the conversation read-only."""
        try:
            async with self._unit() as db:
                join_request = await RequestLedger(db).resolve(request_id, actor_id, Decision.DENY)
                result = await self._close(
                    db, join_request, REJECTION_TEXT,
                    {'join_request_id': request_id, 'actor_id': actor_id},
                )
        except Conflict as e:
            logger.info(f'Deny of join request {request_id} refused: {e.detail}')
            raise

        logger.info(f'Join request {request_id} denied by {actor_id}')
        await self.bus.publish_many(self._resolution_events(result))
        return result

    async def expire(self, request_id: int) -> ResolutionResponse:
        """Deny a pending request on behalf of the system."""
        async with self._unit() as db:
            join_request = await RequestLedger(db).expire(request_id)
            result = await self._close(
                db, join_request, EXPIRED_TEXT,
                {'join_request_id': request_id, 'reason': 'expired'},
            )

        logger.info(f'Join request {request_id} expired')
        await self.bus.publish_many(self._resolution_events(result))
        return result

    async def expire_stale_requests(self, now: datetime | None = None) -> int:
        """Expire every pending request older than the configured TTL.

        Each request is expired in its own unit; one the host resolved in the
        meantime loses the compare-and-swap and is skipped. Any other failure
        is logged and the sweep moves on; the request is retried next run.
        """
        if settings.request_ttl_hours <= 0:
            return 0
        cutoff = (now or datetime.utcnow()) - timedelta(hours=settings.request_ttl_hours)
        async with self._unit() as db:
            stale_ids = await RequestLedger(db).list_stale_pending(cutoff)

        expired = 0
        for request_id in stale_ids:
            try:
                await self.expire(request_id)
                expired += 1
            except Conflict:
                logger.info(f'Join request {request_id} was resolved before it expired')
            except JoinRequestError as e:
                logger.warning(f'Could not expire join request {request_id}: {e.detail}')
        return expired

    async def _close(
        self,
        db: AsyncSession,
        join_request: JoinRequest,
        text: str,
        metadata: dict,
    ) -> ResolutionResponse:
        store = ConversationStore(db)
        conversation = await store.get_for_request(join_request.id)
        message = await store.append(
            conversation.id, None, text, kind=MessageKind.REJECTION, metadata=metadata
        )
        conversation = await store.set_read_only(conversation.id)
        return await self._resolution(db, join_request, conversation, message)

    @staticmethod
    async def _resolution(
        db: AsyncSession,
        join_request: JoinRequest,
        conversation: Conversation,
        message: Message,
        attendee_count: int | None = None,
    ) -> ResolutionResponse:
        profiles = ProfileLookup(db)
        return ResolutionResponse(
            join_request=await profiles.join_request(join_request),
            conversation=await profiles.conversation(conversation),
            message=await profiles.message(message),
            attendee_count=attendee_count,
        )

    @staticmethod
    def _resolution_events(result: ResolutionResponse) -> list[RealtimeEvent]:
        events = []
        for user_id in (result.join_request.host_id, result.join_request.requester_id):
            events.append(request_event(result.join_request, user_id))
            events.append(conversation_event(result.conversation, user_id))
        events.append(message_event(result.message))
        return events

    # ==================== MESSAGES ====================

    async def send_message(
        self,
        conversation_id: int,
        sender_id: int,
        text: str,
        client_msg_id: str | None = None,
    ) -> MessageResponse:
        """Append a text message from a participant."""
        async with self._unit() as db:
            store = ConversationStore(db)
            message = await store.append(
                conversation_id, sender_id, text, kind=MessageKind.TEXT, client_msg_id=client_msg_id
            )
            conversation = await store.get(conversation_id)
            profiles = ProfileLookup(db)
            result = await profiles.message(message)
            conversation_result = await profiles.conversation(conversation)

        events = [message_event(result)]
        events.extend(
            conversation_event(conversation_result, user_id)
            for user_id in (conversation_result.host_id, conversation_result.requester_id)
        )
        await self.bus.publish_many(events)
        return result

    # ==================== READS ====================

    async def get_join_request(self, request_id: int, viewer_id: int | None = None) -> JoinRequestResponse:
        async with self._unit() as db:
            join_request = await RequestLedger(db).get(request_id)
            if viewer_id is not None and viewer_id not in (join_request.host_id, join_request.requester_id):
                raise Forbidden('Not a party to this join request')
            return await ProfileLookup(db).join_request(join_request)

    async def list_pending_for_host(self, host_id: int) -> list[JoinRequestResponse]:
        async with self._unit() as db:
            requests = await RequestLedger(db).list_pending_for_host(host_id)
            return await ProfileLookup(db).join_requests(requests)

    async def list_for_requester(self, requester_id: int) -> list[JoinRequestResponse]:
        async with self._unit() as db:
            requests = await RequestLedger(db).list_for_requester(requester_id)
            return await ProfileLookup(db).join_requests(requests)

    async def list_messages(self, conversation_id: int, viewer_id: int | None = None) -> list[MessageResponse]:
        async with self._unit() as db:
            store = ConversationStore(db)
            if viewer_id is not None:
                conversation = await store.get(conversation_id)
                if viewer_id not in conversation.participant_ids:
                    raise Forbidden('Not a participant in this conversation')
            messages = await store.list_messages(conversation_id)
            return await ProfileLookup(db).messages(messages)

    async def list_conversations(self, user_id: int) -> list[ConversationResponse]:
        async with self._unit() as db:
            conversations = await ConversationStore(db).list_for_user(user_id)
            return await ProfileLookup(db).conversations(conversations)

    async def get_conversation(self, conversation_id: int, viewer_id: int | None = None) -> ConversationResponse:
        async with self._unit() as db:
            conversation = await ConversationStore(db).get(conversation_id)
            if viewer_id is not None and viewer_id not in conversation.participant_ids:
                raise Forbidden('Not a participant in this conversation')
            return await ProfileLookup(db).conversation(conversation)
