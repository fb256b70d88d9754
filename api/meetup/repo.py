import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from . import database
from .models import UserAccount


def _user_dict(user: UserAccount) -> dict[str, Any]:
    return {
        "id": user.id,
        "email": user.email,
        "password_hash": user.password_hash,
        "display_name": user.display_name,
        "photo_url": user.photo_url,
        "interests": list(user.interests or []),
        "is_email_verified": bool(user.is_email_verified),
        "disabled_at": user.disabled_at,
        "last_login_at": user.last_login_at,
    }


def create_user(
    email: str,
    password_hash: str | None,
    display_name: str | None = None,
    is_email_verified: bool = True,
    interests: list[str] | None = None,
    user_id: str | None = None,
) -> dict[str, Any] | None:
    user = UserAccount(
        id=user_id or str(uuid.uuid4()),
        email=email,
        password_hash=password_hash,
        display_name=display_name,
        interests=list(interests or []),
        is_email_verified=is_email_verified,
    )
    try:
        with database.SessionLocal() as db:
            db.add(user)
            db.commit()
            return _user_dict(user)
    except IntegrityError:
        return None


def get_user_by_email(email: str) -> dict[str, Any] | None:
    with database.SessionLocal() as db:
        user = db.execute(select(UserAccount).where(UserAccount.email == email)).scalars().first()
        return _user_dict(user) if user else None


def get_user_by_id(user_id: str) -> dict[str, Any] | None:
    with database.SessionLocal() as db:
        user = db.get(UserAccount, user_id)
        return _user_dict(user) if user else None


def update_last_login(user_id: str) -> None:
    with database.SessionLocal() as db:
        user = db.get(UserAccount, user_id)
        if user is not None:
            user.last_login_at = datetime.now(timezone.utc)
            db.commit()
