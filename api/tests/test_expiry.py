import asyncio
from datetime import datetime, timedelta

import pytest
from sqlalchemy import update

from app.config import settings
from app.models.chat import ConversationStatus, JoinRequest, JoinRequestStatus, MessageKind
from app.services.errors import Conflict, Transient
from app.services.realtime_bus import user_topic
from app.worker.expiry_worker import ExpiryWorker


@pytest.fixture
async def pending(service, make_user, make_activity):
    host = await make_user('hana')
    riley = await make_user('riley')
    activity = await make_activity(host, capacity=3)
    created = await service.create_join_request(activity.id, riley)
    return {'host': host, 'riley': riley, 'created': created}


async def backdate(session_factory, request_id: int, hours: int):
    async with session_factory() as session:
        await session.execute(
            update(JoinRequest)
            .where(JoinRequest.id == request_id)
            .values(created_at=datetime.utcnow() - timedelta(hours=hours))
        )
        await session.commit()


async def test_fresh_requests_are_kept(service, pending):
    assert await service.expire_stale_requests() == 0

    request = await service.get_join_request(pending['created'].join_request.id)
    assert request.status == JoinRequestStatus.PENDING


async def test_stale_request_is_denied(service, realtime_bus, pending):
    events = []
    realtime_bus.subscribe(user_topic(pending['riley']), events.append)
    later = datetime.utcnow() + timedelta(hours=settings.request_ttl_hours + 1)

    assert await service.expire_stale_requests(now=later) == 1

    created = pending['created']
    request = await service.get_join_request(created.join_request.id)
    assert request.status == JoinRequestStatus.DENIED
    assert request.resolved_by is None

    conversation = await service.get_conversation(created.conversation.id)
    assert conversation.status == ConversationStatus.READ_ONLY
    messages = await service.list_messages(created.conversation.id)
    assert messages[-1].kind == MessageKind.REJECTION
    assert messages[-1].metadata['reason'] == 'expired'

    assert [e.record['status'] for e in events if e.table == 'join_requests'] == ['denied']


async def test_resolved_requests_are_not_expired(service, pending):
    await service.approve(pending['created'].join_request.id, pending['host'])
    later = datetime.utcnow() + timedelta(hours=settings.request_ttl_hours + 1)

    assert await service.expire_stale_requests(now=later) == 0


async def test_sweep_continues_past_failed_request(service, make_user, pending, monkeypatch):
    rowan = await make_user('rowan')
    first_id = pending['created'].join_request.id
    second = await service.create_join_request(pending['created'].join_request.activity_id, rowan)
    expire = service.expire

    async def flaky_expire(request_id):
        if request_id == first_id:
            raise Transient('Store unavailable, try again')
        return await expire(request_id)

    monkeypatch.setattr(service, 'expire', flaky_expire)
    later = datetime.utcnow() + timedelta(hours=settings.request_ttl_hours + 1)

    assert await service.expire_stale_requests(now=later) == 1

    assert (await service.get_join_request(first_id)).status == JoinRequestStatus.PENDING
    assert (await service.get_join_request(second.join_request.id)).status == JoinRequestStatus.DENIED


async def test_expiry_disabled_with_zero_ttl(service, pending, monkeypatch):
    monkeypatch.setattr(settings, 'request_ttl_hours', 0)
    later = datetime.utcnow() + timedelta(days=365)

    assert await service.expire_stale_requests(now=later) == 0


async def test_expiry_racing_host_has_one_winner(service, pending):
    request_id = pending['created'].join_request.id

    outcomes = await asyncio.gather(
        service.expire(request_id),
        service.approve(request_id, pending['host']),
        return_exceptions=True,
    )

    assert sum(isinstance(o, Conflict) for o in outcomes) == 1
    winner = next(o for o in outcomes if not isinstance(o, Exception))
    request = await service.get_join_request(request_id)
    assert request.status == winner.join_request.status


async def test_worker_run_once(service, session_factory, pending):
    await backdate(session_factory, pending['created'].join_request.id, settings.request_ttl_hours + 2)
    worker = ExpiryWorker(service, interval_minutes=1)

    assert await worker.run_once() == 1
    assert await worker.run_once() == 0


async def test_worker_schedules_job(service):
    worker = ExpiryWorker(service, interval_minutes=5)
    worker.start()
    try:
        job = worker.scheduler.get_job('expire_join_requests')
        assert job is not None
        assert job.trigger.interval == timedelta(minutes=5)
    finally:
        worker.shutdown()
