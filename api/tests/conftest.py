import os
import tempfile

# Configure before the app (and its settings) are imported
_TEST_DIR = tempfile.mkdtemp(prefix='friender-test-')
os.environ['DATABASE_URL'] = f'sqlite+aiosqlite:///{_TEST_DIR}/app.db'
os.environ['RUN_EXPIRY_WORKER'] = 'false'

import pytest
from httpx import AsyncClient, ASGITransport

from app.main import app
from app.db.database import build_engine, build_session_factory, get_db, init_db
from app.deps import get_bus, get_join_request_service
from app.models.user import User
from app.services.join_request_service import JoinRequestService
from app.services.realtime_bus import RealtimeBus


@pytest.fixture
async def engine(tmp_path):
    """Fresh SQLite database file per test."""
    test_engine = build_engine(f'sqlite+aiosqlite:///{tmp_path}/test.db')
    await init_db(test_engine)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def realtime_bus():
    return RealtimeBus()


@pytest.fixture
def service(session_factory, realtime_bus):
    return JoinRequestService(session_factory, realtime_bus)


@pytest.fixture
async def client(session_factory, service, realtime_bus):
    """Async HTTP client for testing."""

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_join_request_service] = lambda: service
    app.dependency_overrides[get_bus] = lambda: realtime_bus

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url='http://test') as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def make_user(session_factory):
    """Factory: await make_user('alice') -> user id."""

    async def _make_user(handle: str, name: str | None = None) -> int:
        async with session_factory() as session:
            user = User(name=name or handle.title(), handle=handle)
            session.add(user)
            await session.commit()
            return user.id

    return _make_user


@pytest.fixture
def make_activity(service):
    """Factory: await make_activity(host_id, capacity) -> ActivityResponse."""

    async def _make_activity(host_id: int, capacity: int, title: str = 'Sunset Hike', seat_host: bool = True):
        return await service.create_activity(host_id, title, capacity, seat_host=seat_host)

    return _make_activity
