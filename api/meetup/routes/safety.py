from typing import Any

from fastapi import APIRouter, Depends

from ..auth.deps import require_verified_user
from ..services import safety as safety_service

router = APIRouter()


@router.post("/users/{user_id}/block")
def block_user(user_id: str, current_user: dict[str, Any] = Depends(require_verified_user)) -> dict[str, Any]:
    return safety_service.block_user(current_user["id"], user_id)
