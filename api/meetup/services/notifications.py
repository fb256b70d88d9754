"""Push notification seam.

Delivery belongs to an external dispatcher; this module only builds the
messages and hands them over. Failures are logged and never propagate, so a
committed state change is never undone by a notification problem.
"""

import logging
from typing import Any, Protocol

from .. import database
from ..models import UserAccount

logger = logging.getLogger(__name__)


class PushDispatcher(Protocol):
    def send(self, user_id: str, push_token: str | None, title: str, body: str, data: dict[str, Any]) -> None:
        ...


class LoggingDispatcher:
    def send(self, user_id: str, push_token: str | None, title: str, body: str, data: dict[str, Any]) -> None:
        logger.info(f"[push] to={user_id} has_token={bool(push_token)} title={title!r} data={data}")


_dispatcher: PushDispatcher = LoggingDispatcher()


def _profile(user_id: str) -> dict[str, Any]:
    with database.SessionLocal() as db:
        user = db.get(UserAccount, user_id)
        if user is None:
            return {"display_name": None, "push_token": None}
        return {"display_name": user.display_name, "push_token": user.push_token}


def _deliver(user_id: str, title: str, body: str, data: dict[str, Any]) -> None:
    try:
        profile = _profile(user_id)
        _dispatcher.send(user_id, profile["push_token"], title, body, data)
    except Exception:
        logger.exception(f"[push] failed to notify {user_id} ({data.get('type')})")


def send_offer_received(to_uid: str, from_uid: str, activity: str, offer_id: str) -> None:
    try:
        sender_name = _profile(from_uid)["display_name"] or "Someone nearby"
    except Exception:
        logger.exception(f"[push] could not load sender profile {from_uid}")
        sender_name = "Someone nearby"
    _deliver(
        to_uid,
        title="New meetup offer",
        body=f"{sender_name} wants to meet up for {activity}",
        data={"type": "offer_received", "offer_id": offer_id, "from_uid": from_uid},
    )


def send_match_created(user1_uid: str, user2_uid: str, match_id: str) -> None:
    for uid in (user1_uid, user2_uid):
        _deliver(
            uid,
            title="It's a match!",
            body="Pick a place to meet in the next two minutes.",
            data={"type": "match_created", "match_id": match_id},
        )


def send_match_cancelled(user_id: str, match_id: str, reason: str | None) -> None:
    _deliver(
        user_id,
        title="Meetup cancelled",
        body="Your meetup was cancelled.",
        data={"type": "match_cancelled", "match_id": match_id, "reason": reason},
    )
