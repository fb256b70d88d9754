from typing import Any

from fastapi import APIRouter, Depends

from ..auth.deps import get_current_user, require_verified_user
from ..config import RL_OFFER_CREATE_LIMIT, RL_OFFER_RESPOND_LIMIT, RL_WINDOW_SECONDS
from ..schemas import OfferCreateRequest, OfferRespondRequest
from ..services import offers as offers_service
from ..services.rate_limit import rate_limit_dependency

router = APIRouter()

RL_OFFER_CREATE = rate_limit_dependency("offer_create", RL_OFFER_CREATE_LIMIT, RL_WINDOW_SECONDS)
RL_OFFER_RESPOND = rate_limit_dependency("offer_respond", RL_OFFER_RESPOND_LIMIT, RL_WINDOW_SECONDS)


@router.post("/offers")
def create_offer(
    payload: OfferCreateRequest,
    current_user: dict[str, Any] = Depends(require_verified_user),
    _: None = RL_OFFER_CREATE,
) -> dict[str, Any]:
    return offers_service.create_offer(current_user["id"], payload.to_uid, request_id=payload.request_id)


@router.post("/offers/{offer_id}/respond")
def respond_to_offer(
    offer_id: str,
    payload: OfferRespondRequest,
    current_user: dict[str, Any] = Depends(require_verified_user),
    _: None = RL_OFFER_RESPOND,
) -> dict[str, Any]:
    return offers_service.respond_to_offer(
        current_user["id"], offer_id, payload.action, request_id=payload.request_id
    )


@router.post("/offers/{offer_id}/cancel")
def cancel_offer(
    offer_id: str,
    current_user: dict[str, Any] = Depends(require_verified_user),
    _: None = RL_OFFER_RESPOND,
) -> dict[str, Any]:
    return offers_service.cancel_offer(current_user["id"], offer_id)


@router.get("/offers/inbox")
def get_inbox(current_user: dict[str, Any] = Depends(get_current_user)) -> dict[str, Any]:
    return offers_service.get_inbox(current_user["id"])


@router.get("/offers/outgoing")
def get_outgoing(current_user: dict[str, Any] = Depends(get_current_user)) -> dict[str, Any]:
    return offers_service.get_outgoing(current_user["id"])
