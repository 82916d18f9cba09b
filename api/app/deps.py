from app.db.database import async_session
from app.services.join_request_service import JoinRequestService
from app.services.realtime_bus import RealtimeBus, bus


def get_bus() -> RealtimeBus:
    return bus


def get_join_request_service() -> JoinRequestService:
    return JoinRequestService(async_session, bus)
