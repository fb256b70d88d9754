from typing import Any, Literal

from fastapi import APIRouter, Depends

from ..auth.deps import require_verified_user
from ..schemas import SuggestionRespondRequest
from ..services import discovery

router = APIRouter()


@router.get("/suggestions/next")
def next_suggestion(
    action: Literal["next", "refresh"] = "next",
    current_user: dict[str, Any] = Depends(require_verified_user),
) -> dict[str, Any]:
    return discovery.get_next_suggestion(current_user["id"], action=action)


@router.post("/suggestions/{target_uid}/pass")
def pass_suggestion(target_uid: str, current_user: dict[str, Any] = Depends(require_verified_user)) -> dict[str, Any]:
    return discovery.pass_suggestion(current_user["id"], target_uid)


@router.post("/suggestions/{target_uid}/respond")
def respond_suggestion(
    target_uid: str,
    payload: SuggestionRespondRequest,
    current_user: dict[str, Any] = Depends(require_verified_user),
) -> dict[str, Any]:
    return discovery.respond_suggestion(current_user["id"], target_uid, payload.action)
