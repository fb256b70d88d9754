"""
Authentication dependencies for FastAPI.

Two ways to present the access token:
1. Cookie session (web): httpOnly cookie set by /auth/login
2. Bearer token (mobile/API): Authorization header
"""

import logging
import uuid
from typing import Any

from fastapi import Cookie, Depends, Header, HTTPException
from pydantic import BaseModel

from meetup import repo
from meetup.auth.security import decode_access_token
from meetup.config import DEV_MODE

logger = logging.getLogger(__name__)

SESSION_COOKIE_NAME = "meetup_session"


class AuthErrorDetail(BaseModel):
    message: str = "unauthorized"
    reason: str
    trace_id: str


class AuthError(Exception):
    """Raised when authentication fails with a specific reason."""

    def __init__(self, reason: str, detail: str = "unauthorized"):
        self.reason = reason
        self.detail = detail
        self.trace_id = str(uuid.uuid4())
        super().__init__(detail)


def _error_body(message: str, reason: str, trace_id: str) -> dict[str, Any]:
    if DEV_MODE:
        return AuthErrorDetail(message=message, reason=reason, trace_id=trace_id).model_dump()
    return {"message": message, "trace_id": trace_id}


def _log_auth_failure(
    reason: str,
    trace_id: str,
    token_prefix: str | None = None,
    auth_source: str | None = None,
    payload: dict[str, Any] | None = None,
    user_id: str | None = None,
) -> None:
    log_data = {
        "trace_id": trace_id,
        "reason": reason,
        "auth_source": auth_source,
        "token_prefix": token_prefix,
        "token_user_id": payload.get("sub") if payload else None,
        "resolved_user_id": user_id,
    }
    logger.warning(f"[AUTH_FAILURE] {log_data}")


def _extract_bearer(authorization: str | None) -> str:
    if not authorization:
        raise AuthError(reason="missing_token", detail="Missing Authorization header")
    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1].strip():
        raise AuthError(reason="malformed_token", detail="Invalid Authorization header")
    return parts[1].strip()


def _validate_token_and_get_user(token: str, trace_id: str, auth_source: str) -> dict[str, Any]:
    token_prefix = token[:8] + "..." if len(token) > 8 else token

    try:
        payload = decode_access_token(token)
    except HTTPException as e:
        reason = "token_expired" if "expired" in str(e.detail).lower() else "signature_invalid"
        _log_auth_failure(reason, trace_id, token_prefix, auth_source)
        raise HTTPException(status_code=401, detail=_error_body("unauthorized", reason, trace_id))

    user_id = str(payload.get("sub", ""))
    if not user_id:
        _log_auth_failure("token_missing_subject", trace_id, token_prefix, auth_source, payload)
        raise HTTPException(status_code=401, detail=_error_body("unauthorized", "token_missing_subject", trace_id))

    user = repo.get_user_by_id(user_id)
    if not user:
        _log_auth_failure("token_user_not_found", trace_id, token_prefix, auth_source, payload, user_id)
        raise HTTPException(status_code=401, detail=_error_body("unauthorized", "token_user_not_found", trace_id))

    if user.get("disabled_at"):
        _log_auth_failure("account_disabled", trace_id, token_prefix, auth_source, payload, user_id)
        raise HTTPException(status_code=403, detail=_error_body("Account disabled", "account_disabled", trace_id))

    logger.debug(f"[auth] ok user_id={user_id} source={auth_source}")
    return {
        "id": str(user["id"]),
        "email": user["email"],
        "display_name": user.get("display_name"),
        "is_email_verified": bool(user["is_email_verified"]),
    }


def get_current_user(
    session_token: str | None = Cookie(default=None, alias=SESSION_COOKIE_NAME),
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> dict[str, Any]:
    """Resolve the caller from the session cookie, falling back to a bearer token."""
    trace_id = str(uuid.uuid4())

    if session_token:
        return _validate_token_and_get_user(session_token, trace_id, "cookie")

    if authorization:
        try:
            token = _extract_bearer(authorization)
            return _validate_token_and_get_user(token, trace_id, "bearer")
        except AuthError as e:
            _log_auth_failure(e.reason, e.trace_id, auth_source="bearer")
            raise HTTPException(status_code=401, detail=_error_body(e.detail, e.reason, e.trace_id))

    _log_auth_failure("missing_token", trace_id, auth_source="none")
    raise HTTPException(status_code=401, detail=_error_body("Authentication required", "missing_token", trace_id))


def require_verified_user(current_user: dict[str, Any] = Depends(get_current_user)) -> dict[str, Any]:
    """Gate for mutating meetup operations."""
    if not current_user.get("is_email_verified"):
        logger.info(f"[auth] unverified user {current_user.get('id')} blocked")
        raise HTTPException(
            status_code=403,
            detail={"message": "Please verify your email first", "code": "EMAIL_NOT_VERIFIED"},
        )
    return current_user
