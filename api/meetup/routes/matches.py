from typing import Any

from fastapi import APIRouter, Depends, Query

from ..auth.deps import get_current_user, require_verified_user
from ..config import RL_MATCH_ACTION_LIMIT, RL_WINDOW_SECONDS
from ..schemas import (
    ConfirmMeetingRequest,
    CustomPlaceRequest,
    MatchCancelRequest,
    MatchStatusRequest,
    PlaceChoiceRequest,
    SendMessageRequest,
)
from ..services import matches as match_service
from ..services import chat, meeting_confirmation, place_negotiation
from ..services.rate_limit import rate_limit_dependency

router = APIRouter()

RL_MATCH_ACTION = rate_limit_dependency("match_action", RL_MATCH_ACTION_LIMIT, RL_WINDOW_SECONDS)


@router.get("/matches/{match_id}")
def get_match(match_id: str, current_user: dict[str, Any] = Depends(get_current_user)) -> dict[str, Any]:
    return match_service.get_match(current_user["id"], match_id)


@router.post("/matches/{match_id}/places/fetch")
def fetch_places(
    match_id: str,
    current_user: dict[str, Any] = Depends(require_verified_user),
    _: None = RL_MATCH_ACTION,
) -> dict[str, Any]:
    return place_negotiation.fetch_places(current_user["id"], match_id)


@router.post("/matches/{match_id}/places/choice")
def set_place_choice(
    match_id: str,
    payload: PlaceChoiceRequest,
    current_user: dict[str, Any] = Depends(require_verified_user),
    _: None = RL_MATCH_ACTION,
) -> dict[str, Any]:
    return place_negotiation.set_place_choice(current_user["id"], match_id, payload.place_id, action=payload.action)


@router.post("/matches/{match_id}/places/resolve")
def resolve_place(
    match_id: str,
    current_user: dict[str, Any] = Depends(require_verified_user),
    _: None = RL_MATCH_ACTION,
) -> dict[str, Any]:
    return place_negotiation.resolve_place(current_user["id"], match_id)


@router.post("/matches/{match_id}/places/custom")
def add_custom_place(
    match_id: str,
    payload: CustomPlaceRequest,
    current_user: dict[str, Any] = Depends(require_verified_user),
    _: None = RL_MATCH_ACTION,
) -> dict[str, Any]:
    return place_negotiation.add_custom_place(
        current_user["id"],
        match_id,
        name=payload.name,
        address=payload.address,
        lat=payload.lat,
        lng=payload.lng,
        place_id=payload.place_id,
    )


@router.post("/matches/{match_id}/cancel")
def cancel_match(
    match_id: str,
    payload: MatchCancelRequest | None = None,
    current_user: dict[str, Any] = Depends(require_verified_user),
    _: None = RL_MATCH_ACTION,
) -> dict[str, Any]:
    reason = payload.reason if payload else None
    return match_service.cancel_match(current_user["id"], match_id, reason=reason)


@router.post("/matches/{match_id}/status")
def update_status(
    match_id: str,
    payload: MatchStatusRequest,
    current_user: dict[str, Any] = Depends(require_verified_user),
    _: None = RL_MATCH_ACTION,
) -> dict[str, Any]:
    return match_service.update_match_status(current_user["id"], match_id, payload.status)


@router.post("/matches/{match_id}/confirm-meeting")
def confirm_meeting(
    match_id: str,
    payload: ConfirmMeetingRequest,
    current_user: dict[str, Any] = Depends(require_verified_user),
    _: None = RL_MATCH_ACTION,
) -> dict[str, Any]:
    return meeting_confirmation.confirm_meeting(current_user["id"], match_id, payload.response)


@router.post("/matches/{match_id}/messages")
def send_message(
    match_id: str,
    payload: SendMessageRequest,
    current_user: dict[str, Any] = Depends(require_verified_user),
    _: None = RL_MATCH_ACTION,
) -> dict[str, Any]:
    return chat.send_message(current_user["id"], match_id, payload.content)


@router.get("/matches/{match_id}/messages")
def list_messages(
    match_id: str,
    limit: int = Query(default=50, ge=1, le=400),
    current_user: dict[str, Any] = Depends(get_current_user),
) -> dict[str, Any]:
    return chat.list_messages(current_user["id"], match_id, limit=limit)
