from fastapi import APIRouter, Depends, status, Query

from app.deps import get_join_request_service
from app.schemas.activity import ActivityCreate, ActivityResponse, AttendeeResponse
from app.services.join_request_service import JoinRequestService

router = APIRouter()


@router.post('', response_model=ActivityResponse, status_code=status.HTTP_201_CREATED)
async def create_activity(
    activity_data: ActivityCreate,
    user_id: int = Query(...),
    service: JoinRequestService = Depends(get_join_request_service),
):
    """Create an activity hosted by user_id. The host takes the first seat."""
    return await service.create_activity(
        host_id=user_id,
        title=activity_data.title,
        capacity=activity_data.capacity,
        description=activity_data.description,
        seat_host=activity_data.host_attends,
    )


@router.get('/{activity_id}', response_model=ActivityResponse)
async def get_activity(
    activity_id: int,
    service: JoinRequestService = Depends(get_join_request_service),
):
    return await service.get_activity(activity_id)


@router.get('/{activity_id}/attendees', response_model=list[AttendeeResponse])
async def get_attendees(
    activity_id: int,
    service: JoinRequestService = Depends(get_join_request_service),
):
    """Roster for an activity, in join order."""
    return await service.get_roster(activity_id)
