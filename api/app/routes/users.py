from fastapi import APIRouter, Depends, status, Query
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.database import get_db
from app.models.activity import Activity, ActivityAttendee
from app.models.user import User
from app.schemas.activity import ActivityResponse
from app.schemas.user import UserCreate, UserResponse, UserBrief
from app.services.errors import Conflict, NotFound

router = APIRouter()


async def _get_user(db: AsyncSession, user_id: int) -> User:
    user = await db.get(User, user_id)
    if not user:
        raise NotFound(f'User {user_id} not found')
    return user


@router.get('', response_model=list[UserBrief])
async def list_users(
    limit: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
):
    """Users for the dev account picker, oldest first."""
    result = await db.execute(select(User).order_by(User.id).limit(limit))
    return result.scalars().all()


@router.get('/search', response_model=list[UserBrief])
async def search_users(
    q: str = Query(..., min_length=1, max_length=50),
    limit: int = Query(10, ge=1, le=50),
    db: AsyncSession = Depends(get_db),
):
    """Prefix match on handle, with or without a leading @."""
    prefix = q.lstrip('@').lower()
    result = await db.execute(
        select(User)
        .where(func.lower(User.handle).startswith(prefix, autoescape=True))
        .order_by(User.handle)
        .limit(limit)
    )
    return result.scalars().all()


@router.post('', response_model=UserResponse, status_code=status.HTTP_201_CREATED)
async def create_user(user_data: UserCreate, db: AsyncSession = Depends(get_db)):
    taken = await db.scalar(select(User.id).where(User.handle == user_data.handle))
    if taken:
        raise Conflict(f'@{user_data.handle} is already taken')

    user = User(**user_data.model_dump())
    db.add(user)
    await db.flush()
    await db.refresh(user)
    return user


@router.get('/{user_id}', response_model=UserResponse)
async def get_user(user_id: int, db: AsyncSession = Depends(get_db)):
    return await _get_user(db, user_id)


@router.get('/{user_id}/activities', response_model=list[ActivityResponse])
async def get_user_activities(
    user_id: int,
    hosting: bool = Query(False, description='Only activities this user hosts'),
    db: AsyncSession = Depends(get_db),
):
    """Activities the user is seated in (or hosts), newest first."""
    await _get_user(db, user_id)
    if hosting:
        query = select(Activity).where(Activity.host_id == user_id)
    else:
        query = (
            select(Activity)
            .join(ActivityAttendee, ActivityAttendee.activity_id == Activity.id)
            .where(ActivityAttendee.user_id == user_id)
        )
    result = await db.execute(query.order_by(Activity.created_at.desc(), Activity.id.desc()))
    return result.scalars().all()
