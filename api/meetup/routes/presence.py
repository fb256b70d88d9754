from typing import Any

from fastapi import APIRouter, Depends, Query

from ..auth.deps import get_current_user, require_verified_user
from ..config import RL_PRESENCE_LIMIT, RL_WINDOW_SECONDS
from ..schemas import PresenceStartRequest
from ..services import availability
from ..services import presence as presence_service
from ..services.rate_limit import rate_limit_dependency

router = APIRouter()

RL_PRESENCE = rate_limit_dependency("presence", RL_PRESENCE_LIMIT, RL_WINDOW_SECONDS)


@router.post("/presence/start")
def start_presence(
    payload: PresenceStartRequest,
    current_user: dict[str, Any] = Depends(require_verified_user),
    _: None = RL_PRESENCE,
) -> dict[str, Any]:
    return presence_service.start_presence(
        current_user["id"],
        activity=payload.activity,
        duration_minutes=payload.duration_minutes,
        lat=payload.lat,
        lng=payload.lng,
        request_id=payload.request_id,
    )


@router.post("/presence/end")
def end_presence(current_user: dict[str, Any] = Depends(require_verified_user), _: None = RL_PRESENCE) -> dict[str, Any]:
    return presence_service.end_presence(current_user["id"])


@router.get("/presence/me")
def get_my_presence(current_user: dict[str, Any] = Depends(get_current_user)) -> dict[str, Any]:
    return presence_service.get_my_presence(current_user["id"])


@router.get("/availability")
def check_availability(
    activity: str | None = Query(default=None),
    current_user: dict[str, Any] = Depends(get_current_user),
) -> dict[str, Any]:
    return availability.check_availability(current_user["id"], activity=activity)
