import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .. import database
from ..config import CHAT_MAX_CHARS, CHAT_MAX_MESSAGES, CHAT_MAX_WORDS, CHAT_PAGE_SIZE
from ..models import MatchMessage
from .errors import FailedPrecondition, InvalidArgument, ResourceExhausted
from .matches import load_match_for_participant
from .state_machine import ACTIVE_MATCH_STATUSES

logger = logging.getLogger(__name__)


def validate_content(content: str | None) -> str:
    if not content or not isinstance(content, str):
        raise InvalidArgument("Message content is required")
    trimmed = content.strip()
    if not trimmed:
        raise InvalidArgument("Message cannot be empty")
    if len(trimmed) > CHAT_MAX_CHARS:
        raise InvalidArgument(f"Message exceeds {CHAT_MAX_CHARS} character limit ({len(trimmed)} chars)")
    word_count = len(trimmed.split())
    if word_count > CHAT_MAX_WORDS:
        raise InvalidArgument(f"Message exceeds {CHAT_MAX_WORDS} word limit ({word_count} words)")
    return trimmed


def serialize_message(message: MatchMessage) -> dict[str, Any]:
    return {
        "id": message.id,
        "sender_uid": message.sender_uid,
        "content": message.content,
        "created_at": message.created_at.isoformat(),
    }


def send_message(uid: str, match_id: str, content: str | None, now: datetime | None = None) -> dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    trimmed = validate_content(content)

    def _txn(db: Session) -> dict[str, Any]:
        match = load_match_for_participant(db, uid, match_id)
        if match.status not in ACTIVE_MATCH_STATUSES:
            raise FailedPrecondition("Cannot send messages in a finished match")

        total = db.scalar(select(func.count()).select_from(MatchMessage).where(MatchMessage.match_id == match.id))
        if total >= CHAT_MAX_MESSAGES:
            raise ResourceExhausted(f"Chat has reached the {CHAT_MAX_MESSAGES} message limit", code="CHAT_FULL")

        message = MatchMessage(match_id=match.id, sender_uid=uid, content=trimmed, created_at=now)
        db.add(message)
        # Touching the match bumps its version, so concurrent senders conflict and retry.
        match.last_message_at = now
        match.last_sender_uid = uid
        match.updated_at = now
        db.flush()
        return {"success": True, "message_id": message.id}

    result = database.run_in_transaction(_txn)
    logger.info(f"[chat] message {result['message_id']} sent by {uid} in match {match_id}")
    return result


def list_messages(uid: str, match_id: str, limit: int = CHAT_PAGE_SIZE) -> dict[str, Any]:
    """Most recent ``limit`` messages, oldest first."""
    limit = max(1, min(limit, CHAT_MAX_MESSAGES))
    with database.SessionLocal() as db:
        load_match_for_participant(db, uid, match_id)
        rows = db.scalars(
            select(MatchMessage)
            .where(MatchMessage.match_id == match_id)
            .order_by(MatchMessage.created_at.desc(), MatchMessage.id.desc())
            .limit(limit)
        ).all()
        return {"messages": [serialize_message(m) for m in reversed(rows)]}
