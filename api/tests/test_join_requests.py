import asyncio

import pytest
from sqlalchemy import func, select

from app.models.chat import Conversation, ConversationStatus, JoinRequest, JoinRequestStatus, MessageKind
from app.services.errors import AtCapacity, Conflict, Forbidden, NotFound, ValidationFailed
from app.services.join_request_service import APPROVAL_TEXT, REJECTION_TEXT


@pytest.fixture
async def party(make_user, make_activity):
    """A host with a 3-seat activity and two would-be attendees."""
    host = await make_user('hana')
    riley = await make_user('riley')
    sam = await make_user('sam')
    activity = await make_activity(host, capacity=3)
    return {'host': host, 'riley': riley, 'sam': sam, 'activity': activity}


# ==================== CREATE ====================


async def test_create_opens_conversation_with_seed_messages(service, party):
    created = await service.create_join_request(party['activity'].id, party['riley'], 'count me in')

    request = await service.get_join_request(created.join_request.id)
    assert request.status == JoinRequestStatus.PENDING
    assert request.host_id == party['host']
    assert request.message == 'count me in'

    conversation = await service.get_conversation(created.conversation.id)
    assert conversation.join_request_id == request.id
    assert conversation.status == ConversationStatus.ACTIVE

    messages = await service.list_messages(conversation.id)
    assert [m.kind for m in messages] == [MessageKind.SYSTEM, MessageKind.JOIN_REQUEST]
    assert messages[0].text == 'Riley wants to join Sunset Hike'
    assert messages[0].sender_id is None
    assert messages[1].text == 'count me in'
    assert messages[1].sender_id == party['riley']
    assert messages[1].metadata['join_request_id'] == request.id


async def test_blank_message_uses_default(service, party):
    created = await service.create_join_request(party['activity'].id, party['riley'], '   ')
    assert created.join_request.message == "Hey! I'd love to join your activity."


async def test_duplicate_pending_request_conflicts(service, party):
    await service.create_join_request(party['activity'].id, party['riley'])

    with pytest.raises(Conflict):
        await service.create_join_request(party['activity'].id, party['riley'])


async def test_new_request_allowed_after_denial(service, party):
    first = await service.create_join_request(party['activity'].id, party['riley'])
    await service.deny(first.join_request.id, party['host'])

    second = await service.create_join_request(party['activity'].id, party['riley'])
    assert second.join_request.id != first.join_request.id
    assert second.conversation.id != first.conversation.id
    assert second.join_request.status == JoinRequestStatus.PENDING


async def test_attendee_cannot_request_again(service, party):
    first = await service.create_join_request(party['activity'].id, party['riley'])
    await service.approve(first.join_request.id, party['host'])

    with pytest.raises(Conflict):
        await service.create_join_request(party['activity'].id, party['riley'])


async def test_host_cannot_request_own_activity(service, party):
    with pytest.raises(ValidationFailed):
        await service.create_join_request(party['activity'].id, party['host'])


async def test_overlong_message_rejected(service, party):
    with pytest.raises(ValidationFailed):
        await service.create_join_request(party['activity'].id, party['riley'], 'x' * 2001)


async def test_unknown_activity_not_found(service, party):
    with pytest.raises(NotFound):
        await service.create_join_request(9999, party['riley'])


async def test_failed_create_writes_nothing(service, session_factory, party):
    await service.create_join_request(party['activity'].id, party['riley'])
    with pytest.raises(Conflict):
        await service.create_join_request(party['activity'].id, party['riley'])

    async with session_factory() as session:
        assert await session.scalar(select(func.count(JoinRequest.id))) == 1
        assert await session.scalar(select(func.count(Conversation.id))) == 1


# ==================== RESOLVE ====================


async def test_approve_seats_requester(service, party):
    created = await service.create_join_request(party['activity'].id, party['riley'])

    result = await service.approve(created.join_request.id, party['host'])

    assert result.join_request.status == JoinRequestStatus.APPROVED
    assert result.join_request.resolved_by == party['host']
    assert result.message.kind == MessageKind.APPROVAL
    assert result.message.text == APPROVAL_TEXT
    assert result.conversation.status == ConversationStatus.ACTIVE
    assert result.attendee_count == 2

    roster = await service.get_roster(party['activity'].id)
    assert [a.user_id for a in roster] == [party['host'], party['riley']]


async def test_only_host_can_resolve(service, party):
    created = await service.create_join_request(party['activity'].id, party['riley'])

    with pytest.raises(Forbidden):
        await service.approve(created.join_request.id, party['sam'])
    with pytest.raises(Forbidden):
        await service.deny(created.join_request.id, party['riley'])

    request = await service.get_join_request(created.join_request.id)
    assert request.status == JoinRequestStatus.PENDING


async def test_resolving_twice_conflicts(service, party):
    created = await service.create_join_request(party['activity'].id, party['riley'])
    await service.approve(created.join_request.id, party['host'])

    with pytest.raises(Conflict):
        await service.deny(created.join_request.id, party['host'])
    with pytest.raises(Conflict):
        await service.approve(created.join_request.id, party['host'])


async def test_concurrent_approve_and_deny_single_winner(service, party):
    created = await service.create_join_request(party['activity'].id, party['riley'])
    request_id = created.join_request.id

    approved, denied = await asyncio.gather(
        service.approve(request_id, party['host']),
        service.deny(request_id, party['host']),
        return_exceptions=True,
    )

    outcomes = [approved, denied]
    assert sum(isinstance(o, Conflict) for o in outcomes) == 1
    winner = next(o for o in outcomes if not isinstance(o, Exception))

    request = await service.get_join_request(request_id)
    assert request.status == winner.join_request.status

    roster = [a.user_id for a in await service.get_roster(party['activity'].id)]
    if request.status == JoinRequestStatus.APPROVED:
        assert party['riley'] in roster
    else:
        assert party['riley'] not in roster

    messages = await service.list_messages(created.conversation.id)
    resolution_kinds = [m.kind for m in messages if m.kind in (MessageKind.APPROVAL, MessageKind.REJECTION)]
    assert len(resolution_kinds) == 1


async def test_deny_makes_conversation_read_only(service, party):
    created = await service.create_join_request(party['activity'].id, party['riley'])

    result = await service.deny(created.join_request.id, party['host'])

    assert result.join_request.status == JoinRequestStatus.DENIED
    assert result.conversation.status == ConversationStatus.READ_ONLY
    assert result.message.text == REJECTION_TEXT

    messages = await service.list_messages(created.conversation.id)
    assert messages[-1].kind == MessageKind.REJECTION

    with pytest.raises(Forbidden):
        await service.send_message(created.conversation.id, party['riley'], 'please reconsider')
    with pytest.raises(Forbidden):
        await service.send_message(created.conversation.id, party['host'], 'sorry')


# ==================== CAPACITY ====================


async def test_capacity_guard(service, make_user, make_activity):
    host = await make_user('hana')
    riley = await make_user('riley')
    sam = await make_user('sam')
    activity = await make_activity(host, capacity=1, seat_host=False)

    first = await service.create_join_request(activity.id, riley)
    second = await service.create_join_request(activity.id, sam)

    await service.approve(first.join_request.id, host)
    assert len(await service.get_roster(activity.id)) == 1

    with pytest.raises(AtCapacity):
        await service.approve(second.join_request.id, host)

    request = await service.get_join_request(second.join_request.id)
    assert request.status == JoinRequestStatus.PENDING
    # Nothing from the failed approval was kept
    messages = await service.list_messages(second.conversation.id)
    assert [m.kind for m in messages] == [MessageKind.SYSTEM, MessageKind.JOIN_REQUEST]
    assert (await service.get_activity(activity.id)).attendee_count == 1


async def test_concurrent_approvals_never_overbook(service, make_user, make_activity):
    host = await make_user('hana')
    activity = await make_activity(host, capacity=2)
    requesters = [await make_user(f'guest{i}') for i in range(3)]
    created = [await service.create_join_request(activity.id, uid) for uid in requesters]

    outcomes = await asyncio.gather(
        *(service.approve(c.join_request.id, host) for c in created),
        return_exceptions=True,
    )

    assert sum(not isinstance(o, Exception) for o in outcomes) == 1
    assert sum(isinstance(o, AtCapacity) for o in outcomes) == 2
    roster = await service.get_roster(activity.id)
    assert len(roster) == 2
    assert (await service.get_activity(activity.id)).attendee_count == 2


async def test_invalid_capacity_rejected(service, make_user):
    host = await make_user('hana')
    with pytest.raises(ValidationFailed):
        await service.create_activity(host, 'Empty', 0)


# ==================== END TO END ====================


async def test_request_approve_then_full(service, make_user, make_activity):
    host = await make_user('hana')
    riley = await make_user('riley')
    rowan = await make_user('rowan')
    activity = await make_activity(host, capacity=2)
    assert activity.attendee_count == 1

    created = await service.create_join_request(activity.id, riley, 'count me in')
    assert created.join_request.status == JoinRequestStatus.PENDING
    assert len(created.messages) == 2

    pending = await service.list_pending_for_host(host)
    assert [r.id for r in pending] == [created.join_request.id]

    result = await service.approve(created.join_request.id, host)
    assert result.join_request.status == JoinRequestStatus.APPROVED
    assert result.attendee_count == 2
    messages = await service.list_messages(created.conversation.id)
    assert messages[-1].kind == MessageKind.APPROVAL

    late = await service.create_join_request(activity.id, rowan)
    with pytest.raises(AtCapacity):
        await service.approve(late.join_request.id, host)

    assert (await service.get_join_request(late.join_request.id)).status == JoinRequestStatus.PENDING
    assert [r.id for r in await service.list_pending_for_host(host)] == [late.join_request.id]


# ==================== MESSAGES ====================


async def test_send_message_updates_last_message_at(service, party):
    created = await service.create_join_request(party['activity'].id, party['riley'])

    message = await service.send_message(created.conversation.id, party['host'], 'Welcome!')

    conversation = await service.get_conversation(created.conversation.id)
    assert conversation.last_message_at == message.created_at
    messages = await service.list_messages(created.conversation.id)
    assert messages[-1].id == message.id


async def test_send_message_outsider_forbidden(service, party):
    created = await service.create_join_request(party['activity'].id, party['riley'])

    with pytest.raises(Forbidden):
        await service.send_message(created.conversation.id, party['sam'], 'hi')
    with pytest.raises(Forbidden):
        await service.list_messages(created.conversation.id, viewer_id=party['sam'])


async def test_send_message_empty_rejected(service, party):
    created = await service.create_join_request(party['activity'].id, party['riley'])

    with pytest.raises(ValidationFailed):
        await service.send_message(created.conversation.id, party['riley'], '   ')


async def test_resent_client_msg_id_is_stored_once(service, party):
    created = await service.create_join_request(party['activity'].id, party['riley'])

    first = await service.send_message(created.conversation.id, party['riley'], 'hi', client_msg_id='abc12345')
    again = await service.send_message(created.conversation.id, party['riley'], 'hi', client_msg_id='abc12345')

    assert first.id == again.id
    assert len(await service.list_messages(created.conversation.id)) == 3


async def test_chat_list_most_recent_first(service, party):
    older = await service.create_join_request(party['activity'].id, party['riley'])
    newer = await service.create_join_request(party['activity'].id, party['sam'])

    conversations = await service.list_conversations(party['host'])
    assert [c.id for c in conversations] == [newer.conversation.id, older.conversation.id]

    await service.send_message(older.conversation.id, party['riley'], 'bump')
    conversations = await service.list_conversations(party['host'])
    assert [c.id for c in conversations] == [older.conversation.id, newer.conversation.id]
