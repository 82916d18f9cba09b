"""Display data for join requests, conversations and messages.

Rows only hold ids. Clients render names, handles and activity titles, so
every response leaving the service is enriched here with one batched query
per table rather than one lookup per row.
"""
from typing import Iterable
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.activity import Activity
from app.models.chat import Conversation, JoinRequest, Message
from app.models.user import User
from app.schemas.chat import ConversationResponse, JoinRequestResponse, MessageResponse
from app.schemas.user import UserBrief


class ProfileLookup:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def users(self, user_ids: Iterable[int | None]) -> dict[int, UserBrief]:
        ids = {i for i in user_ids if i is not None}
        if not ids:
            return {}
        result = await self.db.execute(select(User).where(User.id.in_(ids)))
        return {
            u.id: UserBrief(id=u.id, name=u.name, handle=u.handle, avatar=u.avatar)
            for u in result.scalars().all()
        }

    async def activity_titles(self, activity_ids: Iterable[int]) -> dict[int, str]:
        ids = set(activity_ids)
        if not ids:
            return {}
        result = await self.db.execute(
            select(Activity.id, Activity.title).where(Activity.id.in_(ids))
        )
        return {row.id: row.title for row in result.all()}

    async def _participants(self, rows) -> tuple[dict[int, UserBrief], dict[int, str]]:
        briefs = await self.users(
            user_id for r in rows for user_id in (r.requester_id, r.host_id)
        )
        titles = await self.activity_titles(r.activity_id for r in rows)
        return briefs, titles

    async def join_requests(self, requests: list[JoinRequest]) -> list[JoinRequestResponse]:
        briefs, titles = await self._participants(requests)
        return [
            JoinRequestResponse.model_validate(r).model_copy(update={
                'requester': briefs.get(r.requester_id),
                'host': briefs.get(r.host_id),
                'activity_title': titles.get(r.activity_id),
            })
            for r in requests
        ]

    async def conversations(self, conversations: list[Conversation]) -> list[ConversationResponse]:
        briefs, titles = await self._participants(conversations)
        return [
            ConversationResponse.model_validate(c).model_copy(update={
                'requester': briefs.get(c.requester_id),
                'host': briefs.get(c.host_id),
                'activity_title': titles.get(c.activity_id),
            })
            for c in conversations
        ]

    async def messages(self, messages: list[Message]) -> list[MessageResponse]:
        briefs = await self.users(m.sender_id for m in messages)
        return [
            MessageResponse.model_validate(m).model_copy(update={'sender': briefs.get(m.sender_id)})
            for m in messages
        ]

    async def join_request(self, join_request: JoinRequest) -> JoinRequestResponse:
        return (await self.join_requests([join_request]))[0]

    async def conversation(self, conversation: Conversation) -> ConversationResponse:
        return (await self.conversations([conversation]))[0]

    async def message(self, message: Message) -> MessageResponse:
        return (await self.messages([message]))[0]
