"""Per-client projection of join requests, conversations and rosters.

The cache keeps authoritative records (direct responses and realtime events)
apart from optimistic overlays (local writes not yet confirmed). Views merge
the two. Presentation code reads views and never mutates the records.

Optimistic writes are tagged with a correlation id. The first confirmation
that carries it, either the direct response or the realtime echo, replaces
the overlay; later copies are dropped by entity id.
"""
import logging
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from app.models.chat import ConversationStatus, Decision, JoinRequestStatus, MessageKind
from app.schemas.activity import AttendeeResponse
from app.schemas.chat import ConversationResponse, JoinRequestResponse, MessageResponse
from app.schemas.user import UserBrief
from app.services.errors import JoinRequestError
from app.services.realtime_bus import RealtimeEvent

logger = logging.getLogger(__name__)

# Event ids remembered for de-duplication, oldest dropped first
MAX_SEEN_EVENTS = 5000


def new_correlation_id() -> str:
    return uuid.uuid4().hex


@dataclass
class MessageEntry:
    """A message as displayed. `id` is None until the server confirms it."""
    conversation_id: int
    sender_id: int | None
    text: str
    kind: MessageKind
    created_at: datetime
    id: int | None = None
    correlation_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    sender: UserBrief | None = None

    @property
    def pending(self) -> bool:
        return self.id is None

    @classmethod
    def from_message(cls, message: MessageResponse) -> 'MessageEntry':
        return cls(
            conversation_id=message.conversation_id,
            sender_id=message.sender_id,
            text=message.text,
            kind=message.kind,
            created_at=message.created_at,
            id=message.id,
            correlation_id=message.client_msg_id,
            metadata=dict(message.metadata),
            sender=message.sender,
        )


@dataclass
class ConversationView:
    conversation_id: int
    record: ConversationResponse | None = None
    confirmed: dict[int, MessageEntry] = field(default_factory=dict)
    # correlation id -> entry, in send order
    optimistic: dict[str, MessageEntry] = field(default_factory=dict)


@dataclass
class PendingResolution:
    correlation_id: str
    request_id: int
    decision: Decision


class ClientStateCache:
    """State for one signed-in user."""

    def __init__(self, user_id: int):
        self.user_id = user_id
        self.last_error: JoinRequestError | None = None
        self._requests: dict[int, JoinRequestResponse] = {}
        self._conversations: dict[int, ConversationView] = {}
        self._rosters: dict[int, dict[int, AttendeeResponse]] = {}
        self._resolutions: dict[str, PendingResolution] = {}
        self._message_correlations: dict[str, int] = {}
        self._seen_events: OrderedDict[str, None] = OrderedDict()

    # ==================== REALTIME ====================

    def apply_event(self, event: RealtimeEvent | dict) -> bool:
        """Apply a pushed event. Returns False for an already-applied event."""
        if isinstance(event, dict):
            event = RealtimeEvent.model_validate(event)
        if event.event_id in self._seen_events:
            return False
        # a record that fails validation leaves the id unseen for redelivery
        applied = self._dispatch(event)
        self._seen_events[event.event_id] = None
        while len(self._seen_events) > MAX_SEEN_EVENTS:
            self._seen_events.popitem(last=False)
        return applied

    def _dispatch(self, event: RealtimeEvent) -> bool:
        if event.table == 'messages':
            return self.apply_message(MessageResponse.model_validate(event.record))
        if event.table == 'join_requests':
            return self.replace_request(JoinRequestResponse.model_validate(event.record))
        if event.table == 'conversations':
            return self.replace_conversation(ConversationResponse.model_validate(event.record))
        if event.table == 'activity_attendees':
            return self.add_attendee(AttendeeResponse.model_validate(event.record))
        return False

    # ==================== MESSAGES ====================

    def _view(self, conversation_id: int) -> ConversationView:
        view = self._conversations.get(conversation_id)
        if view is None:
            view = self._conversations[conversation_id] = ConversationView(conversation_id)
        return view

    def add_optimistic_message(self, conversation_id: int, sender_id: int, text: str) -> str:
        """Show a message immediately; returns its correlation id."""
        correlation_id = new_correlation_id()
        self._view(conversation_id).optimistic[correlation_id] = MessageEntry(
            conversation_id=conversation_id,
            sender_id=sender_id,
            text=text,
            kind=MessageKind.TEXT,
            created_at=datetime.utcnow(),
            correlation_id=correlation_id,
        )
        self._message_correlations[correlation_id] = conversation_id
        return correlation_id

    def confirm_message(self, correlation_id: str, message: MessageResponse) -> MessageEntry:
        """Replace the optimistic entry with the server's copy.

        If the realtime echo got here first the overlay is already gone and
        the confirmed id is present; nothing is added twice.
        """
        self._message_correlations.pop(correlation_id, None)
        view = self._view(message.conversation_id)
        view.optimistic.pop(correlation_id, None)
        self.apply_message(message)
        return view.confirmed[message.id]

    def rollback_message(self, correlation_id: str, error: JoinRequestError | None = None):
        conversation_id = self._message_correlations.pop(correlation_id, None)
        if conversation_id is not None:
            self._view(conversation_id).optimistic.pop(correlation_id, None)
        if error is not None:
            self.last_error = error

    def apply_message(self, message: MessageResponse) -> bool:
        view = self._view(message.conversation_id)
        if message.client_msg_id and message.client_msg_id in view.optimistic:
            del view.optimistic[message.client_msg_id]
            self._message_correlations.pop(message.client_msg_id, None)
        if message.id in view.confirmed:
            return False
        view.confirmed[message.id] = MessageEntry.from_message(message)
        if view.record and message.created_at > view.record.last_message_at:
            view.record = view.record.model_copy(update={'last_message_at': message.created_at})
        return True

    def load_messages(self, conversation_id: int, messages: list[MessageResponse]):
        for message in messages:
            if message.conversation_id == conversation_id:
                self.apply_message(message)

    def messages(self, conversation_id: int) -> list[MessageEntry]:
        """Confirmed messages by (created_at, id), then unconfirmed ones in send order."""
        view = self._conversations.get(conversation_id)
        if view is None:
            return []
        confirmed = sorted(view.confirmed.values(), key=lambda m: (m.created_at, m.id))
        return confirmed + list(view.optimistic.values())

    # ==================== CONVERSATIONS ====================

    def replace_conversation(self, record: ConversationResponse) -> bool:
        view = self._view(record.id)
        current = view.record
        if current is not None:
            # read-only is permanent and last_message_at only moves forward
            status = record.status
            if current.status == ConversationStatus.READ_ONLY:
                status = ConversationStatus.READ_ONLY
            record = record.model_copy(update={
                'status': status,
                'last_message_at': max(current.last_message_at, record.last_message_at),
            })
            if record == current:
                return False
        view.record = record
        return True

    def load_conversations(self, records: list[ConversationResponse]):
        for record in records:
            self.replace_conversation(record)

    def conversation(self, conversation_id: int) -> ConversationResponse | None:
        view = self._conversations.get(conversation_id)
        return view.record if view else None

    def is_writable(self, conversation_id: int) -> bool:
        record = self.conversation(conversation_id)
        return record is not None and record.status == ConversationStatus.ACTIVE

    def chat_list(self) -> list[ConversationResponse]:
        """Known conversations, most recent first."""
        records = [v.record for v in self._conversations.values() if v.record is not None]
        return sorted(records, key=lambda c: (c.last_message_at, c.id), reverse=True)

    # ==================== JOIN REQUESTS ====================

    def replace_request(self, record: JoinRequestResponse) -> bool:
        """Store an authoritative record unless a newer one is already known."""
        current = self._requests.get(record.id)
        if current is not None:
            if record.updated_at < current.updated_at:
                return False
            if current.status != JoinRequestStatus.PENDING and record.status == JoinRequestStatus.PENDING:
                return False
        changed = current != record
        self._requests[record.id] = record

        if record.status != JoinRequestStatus.PENDING:
            for correlation_id in [
                c for c, r in self._resolutions.items() if r.request_id == record.id
            ]:
                del self._resolutions[correlation_id]
        return changed

    def load_requests(self, records: list[JoinRequestResponse]):
        for record in records:
            self.replace_request(record)

    def begin_resolution(self, request_id: int, decision: Decision) -> str:
        """Show the host's decision before the server confirms it."""
        correlation_id = new_correlation_id()
        self._resolutions[correlation_id] = PendingResolution(correlation_id, request_id, decision)
        return correlation_id

    def confirm_resolution(self, correlation_id: str, record: JoinRequestResponse):
        self._resolutions.pop(correlation_id, None)
        self.replace_request(record)

    def rollback_resolution(self, correlation_id: str, error: JoinRequestError | None = None):
        """Drop the optimistic decision; the request shows its stored status again."""
        resolution = self._resolutions.pop(correlation_id, None)
        if resolution:
            logger.info(f'Rolled back {resolution.decision.value} of join request {resolution.request_id}')
        if error is not None:
            self.last_error = error

    def request(self, request_id: int) -> JoinRequestResponse | None:
        """Effective record: stored status overlaid with any in-flight decision."""
        record = self._requests.get(request_id)
        if record is None or record.status != JoinRequestStatus.PENDING:
            return record
        for resolution in reversed(list(self._resolutions.values())):
            if resolution.request_id == request_id:
                return record.model_copy(update={'status': resolution.decision.target_status})
        return record

    def pending_queue(self) -> list[JoinRequestResponse]:
        """Requests awaiting this user's decision as host, oldest first."""
        effective = [self.request(request_id) for request_id in self._requests]
        queue = [
            r for r in effective
            if r.host_id == self.user_id and r.status == JoinRequestStatus.PENDING
        ]
        return sorted(queue, key=lambda r: (r.created_at, r.id))

    def my_requests(self) -> list[JoinRequestResponse]:
        effective = [self.request(request_id) for request_id in self._requests]
        mine = [r for r in effective if r.requester_id == self.user_id]
        return sorted(mine, key=lambda r: (r.created_at, r.id), reverse=True)

    # ==================== ROSTERS ====================

    def add_attendee(self, attendee: AttendeeResponse) -> bool:
        roster = self._rosters.setdefault(attendee.activity_id, {})
        if attendee.user_id in roster:
            return False
        roster[attendee.user_id] = attendee
        return True

    def load_roster(self, activity_id: int, attendees: list[AttendeeResponse]):
        self._rosters[activity_id] = {a.user_id: a for a in attendees}

    def roster(self, activity_id: int) -> list[int]:
        """User ids in join order."""
        attendees = self._rosters.get(activity_id, {}).values()
        return [a.user_id for a in sorted(attendees, key=lambda a: (a.joined_at, a.user_id))]
