"""Seed script: wipe all data and create demo accounts ready for testing.

Usage (from inside the api container):
    python seed.py

Usage (from host, via docker):
    docker compose exec api python seed.py
"""
import asyncio

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.database import engine, async_session, init_db
from app.deps import get_join_request_service
from app.models.user import User


# Test accounts to create
TEST_USERS = [
    {'name': 'Alice', 'handle': 'alice', 'bio': 'Test user, hosts the hike'},
    {'name': 'Bob', 'handle': 'bob', 'bio': 'Test user, has a pending request'},
    {'name': 'Eve', 'handle': 'eve', 'bio': 'Test user, free to request'},
]

DEMO_ACTIVITY = {
    'title': 'Saturday Sunrise Hike',
    'description': 'Easy 6 km loop, coffee after.',
    'capacity': 3,
}


async def wipe_all(db: AsyncSession):
    """Truncate all tables in dependency-safe order."""
    tables = [
        'messages',
        'conversations',
        'join_requests',
        'activity_attendees',
        'activities',
        'users',
    ]
    for table in tables:
        await db.execute(text(f'TRUNCATE TABLE {table} RESTART IDENTITY CASCADE'))
    await db.commit()
    print('✓ All tables wiped')


async def create_users(db: AsyncSession) -> dict[str, int]:
    """Create test users. Returns handle -> id."""
    ids = {}
    for u in TEST_USERS:
        user = User(name=u['name'], handle=u['handle'], bio=u['bio'])
        db.add(user)
        await db.flush()
        await db.refresh(user)
        ids[u['handle']] = user.id
        print(f'  ✓ {u["name"]} (@{u["handle"]}), id={user.id}')

    await db.commit()
    return ids


async def create_activity(users: dict[str, int]):
    """Alice hosts the demo activity; Bob has asked to join."""
    service = get_join_request_service()
    activity = await service.create_activity(host_id=users['alice'], **DEMO_ACTIVITY)
    print(f'  ✓ {activity.title}: {activity.attendee_count}/{activity.capacity} seats, id={activity.id}')

    created = await service.create_join_request(activity.id, users['bob'], 'Count me in!')
    print(
        f'  ✓ Join request {created.join_request.id} from @bob '
        f'(conversation {created.conversation.id})'
    )
    return activity


async def main():
    print()
    print('=' * 50)
    print('  Friender Seed Script')
    print('=' * 50)
    print()

    await init_db()
    async with async_session() as db:
        print('[1/3] Wiping all data...')
        await wipe_all(db)

        print('[2/3] Creating test users...')
        users = await create_users(db)

    print('[3/3] Creating demo activity...')
    activity = await create_activity(users)

    await engine.dispose()

    print()
    print('Done! Ready for testing.')
    print()
    print('  Users:')
    for u in TEST_USERS:
        print(f'    @{u["handle"]}  id={users[u["handle"]]}')
    print(f'  Activity: {activity.title} (id={activity.id})')
    print()


if __name__ == '__main__':
    asyncio.run(main())
