"""Conversation and message persistence for join-request chats."""
from sqlalchemy import select, update, and_, or_, desc
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.chat import (
    Conversation, ConversationStatus, JoinRequest, Message, MessageKind,
)
from app.services.errors import ValidationFailed, NotFound, Forbidden

# Kinds that announce a transition and may be written to a read-only conversation
ANNOUNCEMENT_KINDS = frozenset({
    MessageKind.SYSTEM,
    MessageKind.APPROVAL,
    MessageKind.REJECTION,
})


class ConversationStore:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, conversation_id: int) -> Conversation:
        conversation = await self.db.get(Conversation, conversation_id)
        if not conversation:
            raise NotFound(f'Conversation {conversation_id} not found')
        return conversation

    async def get_for_request(self, join_request_id: int) -> Conversation:
        result = await self.db.execute(
            select(Conversation).where(Conversation.join_request_id == join_request_id)
        )
        conversation = result.scalar_one_or_none()
        if not conversation:
            raise NotFound(f'No conversation for join request {join_request_id}')
        return conversation

    async def create_with_seed_messages(
        self,
        join_request: JoinRequest,
        requester_name: str,
        activity_title: str,
    ) -> tuple[Conversation, list[Message]]:
        """Open the conversation for a new request with its two seed messages.

        Runs inside the caller's transaction so the request and its
        conversation are committed (or discarded) together.
        """
        conversation = Conversation(
            join_request_id=join_request.id,
            activity_id=join_request.activity_id,
            requester_id=join_request.requester_id,
            host_id=join_request.host_id,
            status=ConversationStatus.ACTIVE.value,
        )
        self.db.add(conversation)
        await self.db.flush()

        seed_meta = {
            'join_request_id': join_request.id,
            'activity_id': join_request.activity_id,
            'requester_id': join_request.requester_id,
        }
        system_msg = await self.append(
            conversation.id,
            None,
            f'{requester_name} wants to join {activity_title}',
            kind=MessageKind.SYSTEM,
            metadata=seed_meta,
        )
        request_msg = await self.append(
            conversation.id,
            join_request.requester_id,
            join_request.message,
            kind=MessageKind.JOIN_REQUEST,
            metadata=seed_meta,
        )
        return conversation, [system_msg, request_msg]

    async def append(
        self,
        conversation_id: int,
        sender_id: int | None,
        text: str,
        kind: MessageKind = MessageKind.TEXT,
        metadata: dict | None = None,
        client_msg_id: str | None = None,
    ) -> Message:
        """Append a message and return it with its server id and timestamp.

        Plain text is refused once the conversation is read-only, and only
        participants may author it. Re-sending a known client_msg_id returns
        the stored message instead of writing a second copy.
        """
        conversation = await self.get(conversation_id)
        kind = MessageKind(kind)

        if (
            conversation.status == ConversationStatus.READ_ONLY.value
            and kind not in ANNOUNCEMENT_KINDS
        ):
            raise Forbidden('This conversation is read-only')

        if kind == MessageKind.TEXT:
            if sender_id not in conversation.participant_ids:
                raise Forbidden('Not a participant in this conversation')
            text = (text or '').strip()
            if not text:
                raise ValidationFailed('Message cannot be empty')
            if len(text) > settings.max_message_length:
                raise ValidationFailed(
                    f'Message exceeds {settings.max_message_length} characters'
                )

        if client_msg_id:
            existing = await self.db.execute(
                select(Message).where(
                    and_(
                        Message.conversation_id == conversation_id,
                        Message.client_msg_id == client_msg_id,
                    )
                )
            )
            duplicate = existing.scalar_one_or_none()
            if duplicate:
                return duplicate

        msg = Message(
            conversation_id=conversation_id,
            sender_id=sender_id,
            text=text,
            kind=kind.value,
            meta=metadata or {},
            client_msg_id=client_msg_id,
        )
        self.db.add(msg)
        await self.db.flush()
        await self.db.refresh(msg)

        conversation.last_message_at = msg.created_at
        await self.db.flush()
        return msg

    async def list_messages(self, conversation_id: int) -> list[Message]:
        """Messages ascending by (created_at, id)."""
        await self.get(conversation_id)
        result = await self.db.execute(
            select(Message)
            .where(Message.conversation_id == conversation_id)
            .order_by(Message.created_at, Message.id)
        )
        return list(result.scalars().all())

    async def set_read_only(self, conversation_id: int) -> Conversation:
        """Idempotent; there is no way back to active."""
        conversation = await self.get(conversation_id)
        if conversation.status != ConversationStatus.READ_ONLY.value:
            await self.db.execute(
                update(Conversation)
                .where(Conversation.id == conversation_id)
                .values(status=ConversationStatus.READ_ONLY.value)
                .execution_options(synchronize_session=False)
            )
            await self.db.refresh(conversation)
        return conversation

    async def list_for_user(self, user_id: int) -> list[Conversation]:
        """Chat list for a user (as host or requester), most recent first."""
        result = await self.db.execute(
            select(Conversation)
            .where(or_(Conversation.requester_id == user_id, Conversation.host_id == user_id))
            .order_by(desc(Conversation.last_message_at), desc(Conversation.id))
        )
        return list(result.scalars().all())
