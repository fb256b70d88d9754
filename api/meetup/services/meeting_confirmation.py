import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy.orm import Session

from .. import database
from ..config import CONFIRMATION_WINDOW_HOURS
from ..models import Match, PresenceSession
from .errors import InvalidArgument
from .events import log_match_event
from .matches import after_match_closed, cancel_accepted_offers, load_match_for_participant
from .reliability import record_met, record_unconfirmed
from .state_machine import PENDING_CONFIRMATION, resolve_confirmation_outcome

logger = logging.getLogger(__name__)

RESPONSES = ("met", "not_met", "dismissed")


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def effective_response(match: Match, uid: str) -> str:
    """Explicit answer first, then an implicit ``met`` for a completed sub-status."""
    explicit = (match.meeting_confirmation or {}).get(uid)
    if explicit:
        return explicit
    if (match.status_by_user or {}).get(uid) == "completed":
        return "met"
    return "dismissed"


def _resolve(db: Session, match: Match, now: datetime, unconfirmed_uids: tuple[str, ...] = ()) -> tuple[str, str]:
    pair = (match.user1_uid, match.user2_uid)
    responses = [effective_response(match, uid) for uid in pair]
    status, outcome = resolve_confirmation_outcome(responses)

    match.status = status
    match.outcome = outcome
    match.pending_confirmation_uids = []
    match.resolved_at = now
    match.updated_at = now
    if status == "completed":
        match.completed_at = now
        for uid in pair:
            record_met(db, uid, now)
    else:
        match.cancelled_at = now
    for uid in unconfirmed_uids:
        record_unconfirmed(db, uid, now)

    log_match_event(
        db,
        "meeting_confirmation_resolved",
        match_id=match.id,
        payload={"responses": dict(zip(pair, responses)), "status": status, "outcome": outcome},
    )
    logger.info(f"[confirm] match {match.id} resolved {responses} -> {status}/{outcome}")
    return status, outcome


def expire_to_pending_confirmation(db: Session, match: Match, now: datetime) -> bool:
    """Hand a lapsed in-progress match over to "did you meet?".

    Runs in the caller's transaction. Returns True when nobody had anything left
    to confirm and the match was resolved on the spot.
    """
    by_user = match.status_by_user or {}
    pending = [uid for uid in (match.user1_uid, match.user2_uid) if by_user.get(uid) != "completed"]

    match.status = PENDING_CONFIRMATION
    match.pending_confirmation_uids = pending
    match.meeting_confirmation = {}
    match.confirmation_requested_at = now
    match.updated_at = now

    cancel_accepted_offers(db, match.id, now, status="expired")
    for uid in (match.user1_uid, match.user2_uid):
        presence = db.get(PresenceSession, uid)
        if presence is not None and presence.match_id == match.id:
            db.delete(presence)

    log_match_event(db, "meeting_confirmation_requested", match_id=match.id, payload={"pending": pending})
    if not pending:
        _resolve(db, match, now)
        return True
    return False


def confirm_meeting(uid: str, match_id: str, response: str, now: datetime | None = None) -> dict[str, Any]:
    if response not in RESPONSES:
        raise InvalidArgument("Response must be met, not_met, or dismissed")
    now = now or _now_utc()

    def _txn(db: Session) -> tuple[dict[str, Any], tuple[str, str]]:
        match = load_match_for_participant(db, uid, match_id)
        pair = (match.user1_uid, match.user2_uid)
        if match.status != PENDING_CONFIRMATION:
            return {"success": True, "resolved": True, "status": match.status, "outcome": match.outcome}, pair

        answers = dict(match.meeting_confirmation or {})
        if answers.get(uid):
            return {"success": True, "resolved": False}, pair

        answers[uid] = response
        match.meeting_confirmation = answers
        remaining = [u for u in (match.pending_confirmation_uids or []) if u != uid]
        match.pending_confirmation_uids = remaining
        match.updated_at = now
        log_match_event(db, "meeting_confirmation_answered", match_id=match.id, user_id=uid, payload={"response": response})

        if remaining:
            return {"success": True, "resolved": False}, pair
        status, outcome = _resolve(db, match, now)
        return {"success": True, "resolved": True, "status": status, "outcome": outcome, "closed": True}, pair

    result, pair = database.run_in_transaction(_txn)
    if result.pop("closed", False):
        after_match_closed(match_id, *pair)
    return result


def auto_dismiss_confirmation(match_id: str, now: datetime | None = None) -> str | None:
    """Close a confirmation left open past the window. Returns the outcome."""
    now = now or _now_utc()
    cutoff = now - timedelta(hours=CONFIRMATION_WINDOW_HOURS)

    def _txn(db: Session) -> tuple[str | None, tuple[str, str] | None]:
        match = db.get(Match, match_id)
        if match is None or match.status != PENDING_CONFIRMATION:
            return None, None
        if match.confirmation_requested_at and match.confirmation_requested_at > cutoff:
            return None, None
        answers = dict(match.meeting_confirmation or {})
        silent = tuple(uid for uid in (match.pending_confirmation_uids or []) if not answers.get(uid))
        for uid in silent:
            answers[uid] = "dismissed"
        match.meeting_confirmation = answers
        _, outcome = _resolve(db, match, now, unconfirmed_uids=silent)
        return outcome, (match.user1_uid, match.user2_uid)

    outcome, pair = database.run_in_transaction(_txn)
    if pair is not None:
        after_match_closed(match_id, *pair)
    return outcome
