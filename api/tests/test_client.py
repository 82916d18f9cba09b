from datetime import datetime, timedelta

import httpx
import pytest
from pydantic import ValidationError

from app.client.session import ClientSession, error_from_response
from app.client.state_cache import MAX_SEEN_EVENTS, ClientStateCache
from app.models.chat import ConversationStatus, Decision, JoinRequestStatus, MessageKind
from app.schemas.chat import ConversationResponse, JoinRequestResponse, MessageResponse
from app.services.errors import AtCapacity, Conflict, Forbidden, Transient, ValidationFailed
from app.services.join_request_service import message_event

T0 = datetime(2026, 5, 1, 12, 0, 0)


def make_message(id_: int, text: str = 'hello', client_msg_id: str | None = None, at: datetime = T0):
    return MessageResponse(
        id=id_,
        conversation_id=1,
        sender_id=2,
        text=text,
        kind=MessageKind.TEXT,
        client_msg_id=client_msg_id,
        created_at=at,
    )


def make_request(status: JoinRequestStatus = JoinRequestStatus.PENDING, at: datetime = T0):
    return JoinRequestResponse(
        id=10,
        activity_id=3,
        requester_id=2,
        host_id=1,
        message='count me in',
        status=status,
        created_at=T0,
        updated_at=at,
    )


def make_conversation(status: ConversationStatus = ConversationStatus.ACTIVE, at: datetime = T0):
    return ConversationResponse(
        id=1,
        join_request_id=10,
        activity_id=3,
        requester_id=2,
        host_id=1,
        status=status,
        created_at=T0,
        last_message_at=at,
    )


# ==================== CACHE ====================


def test_same_event_twice_shows_one_message():
    cache = ClientStateCache(user_id=1)
    event = message_event(make_message(5))

    assert cache.apply_event(event) is True
    assert cache.apply_event(event) is False
    assert cache.apply_event(event.model_dump(mode='json')) is False

    assert [m.id for m in cache.messages(1)] == [5]


def test_malformed_event_can_be_redelivered():
    cache = ClientStateCache(user_id=1)
    event = message_event(make_message(5))
    broken = event.model_copy(update={'record': {'id': 5}})

    with pytest.raises(ValidationError):
        cache.apply_event(broken)

    assert cache.messages(1) == []
    assert cache.apply_event(event) is True
    assert [m.id for m in cache.messages(1)] == [5]


def test_seen_event_ids_are_bounded():
    cache = ClientStateCache(user_id=1)
    first = message_event(make_message(1))
    cache.apply_event(first)

    for n in range(2, MAX_SEEN_EVENTS + 2):
        cache.apply_event(message_event(make_message(n)))

    assert len(cache._seen_events) == MAX_SEEN_EVENTS
    assert first.event_id not in cache._seen_events
    # the message itself is still deduplicated by id
    assert cache.apply_event(first) is False
    assert len(cache.messages(1)) == MAX_SEEN_EVENTS + 1


def test_same_message_from_response_and_event_shows_once():
    cache = ClientStateCache(user_id=1)

    cache.load_messages(1, [make_message(5)])
    cache.apply_event(message_event(make_message(5)))

    assert len(cache.messages(1)) == 1


def test_optimistic_message_confirmed_by_response():
    cache = ClientStateCache(user_id=2)
    correlation_id = cache.add_optimistic_message(1, 2, 'on my way')

    pending = cache.messages(1)
    assert len(pending) == 1 and pending[0].pending

    entry = cache.confirm_message(correlation_id, make_message(8, 'on my way', correlation_id))

    assert entry.id == 8
    assert [(m.id, m.pending) for m in cache.messages(1)] == [(8, False)]


def test_echo_before_response_is_not_duplicated():
    cache = ClientStateCache(user_id=2)
    correlation_id = cache.add_optimistic_message(1, 2, 'on my way')
    confirmed = make_message(8, 'on my way', correlation_id)

    cache.apply_event(message_event(confirmed))
    assert [m.id for m in cache.messages(1)] == [8]

    cache.confirm_message(correlation_id, confirmed)
    assert [m.id for m in cache.messages(1)] == [8]


def test_rolled_back_message_disappears():
    cache = ClientStateCache(user_id=2)
    correlation_id = cache.add_optimistic_message(1, 2, 'anyone?')
    error = Forbidden('This conversation is read-only')

    cache.rollback_message(correlation_id, error)

    assert cache.messages(1) == []
    assert cache.last_error is error


def test_messages_sorted_with_pending_last():
    cache = ClientStateCache(user_id=2)
    cache.load_messages(1, [make_message(7, at=T0 + timedelta(seconds=5)), make_message(6, at=T0)])
    cache.add_optimistic_message(1, 2, 'draft')

    assert [m.id for m in cache.messages(1)] == [6, 7, None]


def test_read_only_is_permanent():
    cache = ClientStateCache(user_id=1)
    cache.replace_conversation(make_conversation(ConversationStatus.READ_ONLY))

    # A stale active copy arriving late does not reopen the thread
    cache.replace_conversation(make_conversation(ConversationStatus.ACTIVE, at=T0 + timedelta(minutes=1)))

    assert not cache.is_writable(1)
    assert cache.conversation(1).last_message_at == T0 + timedelta(minutes=1)


def test_message_advances_chat_list_timestamp():
    cache = ClientStateCache(user_id=1)
    cache.replace_conversation(make_conversation())

    cache.apply_message(make_message(9, at=T0 + timedelta(minutes=3)))

    assert cache.chat_list()[0].last_message_at == T0 + timedelta(minutes=3)


def test_stale_request_update_ignored():
    cache = ClientStateCache(user_id=1)
    cache.replace_request(make_request(JoinRequestStatus.APPROVED, at=T0 + timedelta(minutes=1)))

    assert cache.replace_request(make_request(JoinRequestStatus.PENDING)) is False
    assert cache.request(10).status == JoinRequestStatus.APPROVED


def test_resolution_overlay_and_rollback():
    cache = ClientStateCache(user_id=1)
    cache.replace_request(make_request())
    assert [r.id for r in cache.pending_queue()] == [10]

    correlation_id = cache.begin_resolution(10, Decision.APPROVE)
    assert cache.request(10).status == JoinRequestStatus.APPROVED
    assert cache.pending_queue() == []

    cache.rollback_resolution(correlation_id, AtCapacity('full'))
    assert cache.request(10).status == JoinRequestStatus.PENDING
    assert [r.id for r in cache.pending_queue()] == [10]
    assert isinstance(cache.last_error, AtCapacity)


def test_error_from_response_maps_codes():
    request = httpx.Request('POST', 'http://test/api/join-requests/1/approve')

    full = error_from_response(httpx.Response(409, json={'detail': 'full', 'code': 'at_capacity'}, request=request))
    conflict = error_from_response(httpx.Response(409, json={'detail': 'done', 'code': 'conflict'}, request=request))
    invalid = error_from_response(httpx.Response(422, json={'detail': [{'msg': 'bad'}]}, request=request))
    broken = error_from_response(httpx.Response(502, text='Bad Gateway', request=request))

    assert isinstance(full, AtCapacity) and full.detail == 'full'
    assert isinstance(conflict, Conflict)
    assert isinstance(invalid, ValidationFailed)
    assert isinstance(broken, Transient)


# ==================== SESSION ====================


@pytest.fixture
async def scene(client, service, make_user, make_activity):
    host = await make_user('hana')
    riley = await make_user('riley')
    activity = await make_activity(host, capacity=2)
    return {
        'host': host,
        'riley': riley,
        'activity': activity,
        'host_session': ClientSession(client, host),
        'riley_session': ClientSession(client, riley),
    }


async def test_send_message_echo_arrives_first(scene, realtime_bus):
    riley = scene['riley_session']
    created = await riley.create_join_request(scene['activity'].id, 'count me in')
    conversation_id = created.conversation.id
    echoes = []

    async with riley.watch_conversation(realtime_bus, conversation_id):
        realtime_bus.subscribe(f'conversation:{conversation_id}', echoes.append)
        entry = await riley.send_message(conversation_id, 'What should I bring?')

    assert len(echoes) == 1
    messages = riley.cache.messages(conversation_id)
    assert [m.kind for m in messages] == [MessageKind.SYSTEM, MessageKind.JOIN_REQUEST, MessageKind.TEXT]
    assert messages[-1].id == entry.id
    assert not any(m.pending for m in messages)


async def test_send_message_rolled_back_when_read_only(scene, service):
    riley = scene['riley_session']
    created = await riley.create_join_request(scene['activity'].id)
    await service.deny(created.join_request.id, scene['host'])

    with pytest.raises(Forbidden):
        await riley.send_message(created.conversation.id, 'Why not?')

    assert [m.text for m in riley.cache.messages(created.conversation.id) if m.pending] == []
    assert isinstance(riley.cache.last_error, Forbidden)


async def test_conflict_refreshes_real_status(scene, service):
    created = await scene['riley_session'].create_join_request(scene['activity'].id)
    host = scene['host_session']
    await host.load_pending()

    # Resolved from another device before this one's click lands
    await service.deny(created.join_request.id, scene['host'])

    with pytest.raises(Conflict):
        await host.approve(created.join_request.id)

    assert host.cache.request(created.join_request.id).status == JoinRequestStatus.DENIED
    assert host.cache.pending_queue() == []


async def test_at_capacity_resets_to_pending(scene, service, make_user):
    rowan = await make_user('rowan')
    first = await scene['riley_session'].create_join_request(scene['activity'].id)
    second = await ClientSession(scene['riley_session'].http, rowan).create_join_request(scene['activity'].id)
    host = scene['host_session']
    await host.load_pending()

    result = await host.approve(first.join_request.id)
    assert result.attendee_count == 2

    with pytest.raises(AtCapacity):
        await host.approve(second.join_request.id)

    assert host.cache.request(second.join_request.id).status == JoinRequestStatus.PENDING
    assert [r.id for r in host.cache.pending_queue()] == [second.join_request.id]
    assert isinstance(host.cache.last_error, AtCapacity)


async def test_host_watch_tracks_queue_and_roster(scene, realtime_bus):
    host = scene['host_session']
    await host.load_roster(scene['activity'].id)

    async with host.watch_user(realtime_bus):
        created = await scene['riley_session'].create_join_request(scene['activity'].id)
        assert [r.id for r in host.cache.pending_queue()] == [created.join_request.id]
        assert [c.id for c in host.cache.chat_list()] == [created.conversation.id]

        await host.approve(created.join_request.id)

    assert host.cache.pending_queue() == []
    assert host.cache.roster(scene['activity'].id) == [scene['host'], scene['riley']]
    assert realtime_bus.subscriber_count(f"user:{scene['host']}") == 0


async def test_network_failure_is_transient(scene):
    async def refuse(request):
        raise httpx.ConnectError('connection refused', request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(refuse), base_url='http://test') as http:
        session = ClientSession(http, scene['riley'])
        with pytest.raises(Transient):
            await session.send_message(1, 'hello?')
        assert session.cache.messages(1) == []
