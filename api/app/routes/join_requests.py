from fastapi import APIRouter, Depends, status, Query

from app.deps import get_join_request_service
from app.schemas.chat import (
    JoinRequestCreate, JoinRequestCreatedResponse, JoinRequestResponse, ResolutionResponse,
)
from app.services.join_request_service import JoinRequestService

router = APIRouter()


@router.post('', response_model=JoinRequestCreatedResponse, status_code=status.HTTP_201_CREATED)
async def create_join_request(
    request_data: JoinRequestCreate,
    user_id: int = Query(...),
    service: JoinRequestService = Depends(get_join_request_service),
):
    """Request to join an activity. Opens the conversation with the host."""
    return await service.create_join_request(
        request_data.activity_id, user_id, request_data.message
    )


@router.get('/pending', response_model=list[JoinRequestResponse])
async def get_pending_requests(
    user_id: int = Query(...),
    service: JoinRequestService = Depends(get_join_request_service),
):
    """Pending requests across all activities hosted by user_id."""
    return await service.list_pending_for_host(user_id)


@router.get('/mine', response_model=list[JoinRequestResponse])
async def get_my_requests(
    user_id: int = Query(...),
    service: JoinRequestService = Depends(get_join_request_service),
):
    """Requests made by user_id, newest first."""
    return await service.list_for_requester(user_id)


@router.get('/{request_id}', response_model=JoinRequestResponse)
async def get_join_request(
    request_id: int,
    user_id: int = Query(...),
    service: JoinRequestService = Depends(get_join_request_service),
):
    return await service.get_join_request(request_id, viewer_id=user_id)


@router.post('/{request_id}/approve', response_model=ResolutionResponse)
async def approve_join_request(
    request_id: int,
    user_id: int = Query(...),
    service: JoinRequestService = Depends(get_join_request_service),
):
    """Approve a pending request (host only). 409 at_capacity leaves it pending."""
    return await service.approve(request_id, user_id)


@router.post('/{request_id}/deny', response_model=ResolutionResponse)
async def deny_join_request(
    request_id: int,
    user_id: int = Query(...),
    service: JoinRequestService = Depends(get_join_request_service),
):
    """Deny a pending request (host only). The conversation becomes read-only."""
    return await service.deny(request_id, user_id)
