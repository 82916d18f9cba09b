from fastapi import APIRouter, Depends, status, Query, WebSocket, WebSocketDisconnect

from app.deps import get_bus, get_join_request_service
from app.schemas.chat import ConversationResponse, MessageCreate, MessageResponse
from app.services.errors import JoinRequestError
from app.services.join_request_service import JoinRequestService
from app.services.realtime_bus import RealtimeBus, WebSocketSubscriber, conversation_topic

router = APIRouter()


@router.get('/conversations', response_model=list[ConversationResponse])
async def get_conversations(
    user_id: int = Query(...),
    service: JoinRequestService = Depends(get_join_request_service),
):
    """Chat list for a user, most recent activity first."""
    return await service.list_conversations(user_id)


@router.get('/conversations/{conversation_id}', response_model=ConversationResponse)
async def get_conversation(
    conversation_id: int,
    user_id: int = Query(...),
    service: JoinRequestService = Depends(get_join_request_service),
):
    return await service.get_conversation(conversation_id, viewer_id=user_id)


@router.get('/conversations/{conversation_id}/messages', response_model=list[MessageResponse])
async def get_messages(
    conversation_id: int,
    user_id: int = Query(...),
    service: JoinRequestService = Depends(get_join_request_service),
):
    """Full transcript, oldest first."""
    return await service.list_messages(conversation_id, viewer_id=user_id)


@router.post(
    '/conversations/{conversation_id}/messages',
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED,
)
async def send_message(
    conversation_id: int,
    message_data: MessageCreate,
    user_id: int = Query(...),
    service: JoinRequestService = Depends(get_join_request_service),
):
    """Send a text message. 403 once the conversation is read-only."""
    return await service.send_message(
        conversation_id, user_id, message_data.text, client_msg_id=message_data.client_msg_id
    )


@router.websocket('/ws/{user_id}')
async def websocket_endpoint(
    websocket: WebSocket,
    user_id: int,
    realtime: RealtimeBus = Depends(get_bus),
    service: JoinRequestService = Depends(get_join_request_service),
):
    """Realtime updates for a user.

    The connection follows `user:{user_id}` from the start. Clients add or
    drop conversations with `{"action": "subscribe" | "unsubscribe",
    "conversation_id": N}`.
    """
    async with WebSocketSubscriber(realtime, websocket, user_id) as subscriber:
        try:
            while True:
                try:
                    frame = await websocket.receive_json()
                except ValueError:
                    await websocket.send_json({'type': 'error', 'code': 'validation', 'detail': 'Invalid JSON'})
                    continue

                action = frame.get('action') if isinstance(frame, dict) else None
                conversation_id = frame.get('conversation_id') if isinstance(frame, dict) else None
                if action not in ('subscribe', 'unsubscribe') or not isinstance(conversation_id, int):
                    await websocket.send_json({'type': 'error', 'code': 'validation', 'detail': 'Unknown command'})
                    continue

                topic = conversation_topic(conversation_id)
                if action == 'unsubscribe':
                    subscriber.unfollow(topic)
                    await websocket.send_json({'type': 'unsubscribed', 'topic': topic})
                    continue

                try:
                    await service.get_conversation(conversation_id, viewer_id=user_id)
                except JoinRequestError as e:
                    await websocket.send_json({'type': 'error', 'code': e.code, 'detail': e.detail})
                    continue
                subscriber.follow(topic)
                await websocket.send_json({'type': 'subscribed', 'topic': topic})
        except WebSocketDisconnect:
            pass
