"""HTTP client for the join-request API with optimistic local state.

Commands go over `httpx`; pushed events come from a realtime subscription
and are fed to `handle_event`. Failures arrive as the same typed errors the
server raises, after the optimistic state has been rolled back.
"""
import logging
from contextlib import asynccontextmanager
from typing import Any

import httpx

from app.client.state_cache import ClientStateCache, MessageEntry
from app.models.chat import Decision
from app.schemas.activity import AttendeeResponse
from app.schemas.chat import (
    ConversationResponse, JoinRequestCreatedResponse, JoinRequestResponse,
    MessageResponse, ResolutionResponse,
)
from app.services.errors import Conflict, JoinRequestError, Transient, ValidationFailed, error_from_code
from app.services.realtime_bus import RealtimeBus, RealtimeEvent, conversation_topic, user_topic

logger = logging.getLogger(__name__)


def error_from_response(response: httpx.Response) -> JoinRequestError:
    """Map an error response back onto the typed error it was rendered from."""
    try:
        body = response.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}
    detail = body.get('detail') or response.reason_phrase
    code = body.get('code')
    if code is None and response.status_code == 422:
        # FastAPI request validation: detail is a list of field errors
        return ValidationFailed(str(detail))
    if code is None and response.status_code < 500:
        return error_from_code('not_found' if response.status_code == 404 else 'validation', str(detail))
    return error_from_code(code, str(detail))


class ClientSession:
    def __init__(self, http: httpx.AsyncClient, user_id: int, cache: ClientStateCache | None = None):
        self.http = http
        self.user_id = user_id
        self.cache = cache or ClientStateCache(user_id)

    async def _request(self, method: str, url: str, **kwargs) -> Any:
        params = {'user_id': self.user_id, **kwargs.pop('params', {})}
        try:
            response = await self.http.request(method, url, params=params, **kwargs)
        except httpx.TransportError as e:
            raise Transient(f'Network error: {e}') from e
        if response.is_error:
            raise error_from_response(response)
        return response.json()

    # ==================== COMMANDS ====================

    async def create_join_request(self, activity_id: int, message: str | None = None) -> JoinRequestCreatedResponse:
        data = await self._request(
            'POST', '/api/join-requests', json={'activity_id': activity_id, 'message': message}
        )
        result = JoinRequestCreatedResponse.model_validate(data)
        self.cache.replace_request(result.join_request)
        self.cache.replace_conversation(result.conversation)
        self.cache.load_messages(result.conversation.id, result.messages)
        return result

    async def send_message(self, conversation_id: int, text: str) -> MessageEntry:
        """Optimistic send: visible at once, confirmed or rolled back on response."""
        correlation_id = self.cache.add_optimistic_message(conversation_id, self.user_id, text)
        try:
            data = await self._request(
                'POST',
                f'/api/chat/conversations/{conversation_id}/messages',
                json={'text': text, 'client_msg_id': correlation_id},
            )
        except JoinRequestError as e:
            self.cache.rollback_message(correlation_id, e)
            raise
        return self.cache.confirm_message(correlation_id, MessageResponse.model_validate(data))

    async def approve(self, request_id: int) -> ResolutionResponse:
        return await self._resolve(request_id, Decision.APPROVE)

    async def deny(self, request_id: int) -> ResolutionResponse:
        return await self._resolve(request_id, Decision.DENY)

    async def _resolve(self, request_id: int, decision: Decision) -> ResolutionResponse:
        correlation_id = self.cache.begin_resolution(request_id, decision)
        try:
            data = await self._request('POST', f'/api/join-requests/{request_id}/{decision.value}')
        except Conflict as e:
            # Someone else resolved it: show the real outcome, not ours
            self.cache.rollback_resolution(correlation_id, e)
            try:
                await self.refresh_request(request_id)
            except JoinRequestError as refresh_error:
                logger.warning(f'Could not refresh join request {request_id}: {refresh_error.detail}')
            raise
        except JoinRequestError as e:
            self.cache.rollback_resolution(correlation_id, e)
            raise

        result = ResolutionResponse.model_validate(data)
        self.cache.confirm_resolution(correlation_id, result.join_request)
        self.cache.replace_conversation(result.conversation)
        self.cache.apply_message(result.message)
        return result

    # ==================== LOADS ====================

    async def refresh_request(self, request_id: int) -> JoinRequestResponse:
        data = await self._request('GET', f'/api/join-requests/{request_id}')
        record = JoinRequestResponse.model_validate(data)
        self.cache.replace_request(record)
        return record

    async def load_pending(self) -> list[JoinRequestResponse]:
        data = await self._request('GET', '/api/join-requests/pending')
        records = [JoinRequestResponse.model_validate(r) for r in data]
        self.cache.load_requests(records)
        return self.cache.pending_queue()

    async def load_my_requests(self) -> list[JoinRequestResponse]:
        data = await self._request('GET', '/api/join-requests/mine')
        self.cache.load_requests([JoinRequestResponse.model_validate(r) for r in data])
        return self.cache.my_requests()

    async def load_conversations(self) -> list[ConversationResponse]:
        data = await self._request('GET', '/api/chat/conversations')
        self.cache.load_conversations([ConversationResponse.model_validate(c) for c in data])
        return self.cache.chat_list()

    async def load_messages(self, conversation_id: int) -> list[MessageEntry]:
        data = await self._request('GET', f'/api/chat/conversations/{conversation_id}/messages')
        self.cache.load_messages(conversation_id, [MessageResponse.model_validate(m) for m in data])
        return self.cache.messages(conversation_id)

    async def load_roster(self, activity_id: int) -> list[int]:
        data = await self._request('GET', f'/api/activities/{activity_id}/attendees')
        self.cache.load_roster(activity_id, [AttendeeResponse.model_validate(a) for a in data])
        return self.cache.roster(activity_id)

    # ==================== REALTIME ====================

    def handle_event(self, event: RealtimeEvent | dict) -> bool:
        return self.cache.apply_event(event)

    @asynccontextmanager
    async def watch_user(self, bus: RealtimeBus):
        """Pending-queue, roster and chat-list events for this user while the block runs."""
        async with bus.subscription(user_topic(self.user_id), self.handle_event) as sub:
            yield sub

    @asynccontextmanager
    async def watch_conversation(self, bus: RealtimeBus, conversation_id: int):
        """Message and status events for one conversation while the block runs."""
        async with bus.subscription(conversation_topic(conversation_id), self.handle_event) as sub:
            yield sub
