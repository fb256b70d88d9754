import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from .. import database, repo
from ..auth.deps import SESSION_COOKIE_NAME, get_current_user
from ..auth.security import create_access_token, verify_password
from ..config import ACCESS_TOKEN_TTL_MINUTES, RL_AUTH_LOGIN_LIMIT, RL_WINDOW_SECONDS
from ..schemas import LoginRequest
from ..services.events import log_product_event
from ..services.rate_limit import rate_limit_dependency

logger = logging.getLogger(__name__)

router = APIRouter()

RL_AUTH_LOGIN = rate_limit_dependency("auth_login", RL_AUTH_LOGIN_LIMIT, RL_WINDOW_SECONDS)


def _is_bearer_mode(request: Request) -> bool:
    """Mobile clients ask for the token in the body instead of a cookie."""
    return str(request.headers.get("X-Auth-Mode") or "").strip().lower() == "bearer"


def _set_session_cookie(response: Response, access_token: str) -> None:
    response.set_cookie(
        key=SESSION_COOKIE_NAME,
        value=access_token,
        httponly=True,
        secure=False,
        samesite="lax",
        path="/",
        max_age=ACCESS_TOKEN_TTL_MINUTES * 60,
    )


@router.post("/login")
def auth_login(payload: LoginRequest, request: Request, response: Response, _: None = RL_AUTH_LOGIN) -> dict[str, Any]:
    email = payload.email.strip().lower()
    if not email:
        raise HTTPException(status_code=400, detail="email required")

    user = repo.get_user_by_email(email)
    if not user or not user.get("password_hash") or not verify_password(payload.password, str(user["password_hash"])):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    if user.get("disabled_at"):
        raise HTTPException(status_code=403, detail="Account disabled")

    repo.update_last_login(str(user["id"]))
    with database.SessionLocal() as db:
        log_product_event(db, "auth_logged_in", user_id=str(user["id"]))
        db.commit()

    access_token = create_access_token(
        user_id=str(user["id"]),
        email=str(user["email"]),
        is_email_verified=bool(user["is_email_verified"]),
    )
    _set_session_cookie(response, access_token)
    logger.info(f"[auth] login user_id={user['id']}")

    if _is_bearer_mode(request):
        return {"access_token": access_token, "token_type": "bearer", "expires_in": ACCESS_TOKEN_TTL_MINUTES * 60}
    return {
        "id": str(user["id"]),
        "email": str(user["email"]),
        "display_name": user.get("display_name"),
        "is_email_verified": bool(user["is_email_verified"]),
    }


@router.get("/me")
def auth_me(current_user: dict[str, Any] = Depends(get_current_user)) -> dict[str, Any]:
    return {
        "id": str(current_user["id"]),
        "email": str(current_user["email"]),
        "display_name": current_user.get("display_name"),
        "is_email_verified": bool(current_user["is_email_verified"]),
    }
