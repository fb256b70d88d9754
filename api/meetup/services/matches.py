import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from .. import database
from ..config import CANCEL_BASE_PENALTY, CANCEL_GRACE_SECONDS
from ..models import Match, Offer, PresenceSession, UserAccount
from . import notifications
from .errors import FailedPrecondition, InvalidArgument, NotFound, PermissionDenied
from .events import log_match_event
from .match_guard import release_match_guard
from .reliability import record_cancellation, record_met
from .state_machine import (
    ACTIVE_MATCH_STATUSES,
    CONFIRMABLE_STATUSES,
    USER_CANCEL_REASONS,
    USER_SETTABLE_STATUSES,
    USER_STATUS_ORDER,
    can_cancel,
    cancellation_penalty,
    is_severe_cancel,
    promote_status,
)

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def other_participant(match: Match, uid: str) -> str:
    return match.user2_uid if match.user1_uid == uid else match.user1_uid


def load_match_for_participant(db: Session, uid: str, match_id: str) -> Match:
    if not match_id:
        raise InvalidArgument("Match ID is required")
    match = db.get(Match, match_id)
    if match is None:
        raise NotFound("Match not found")
    if uid not in (match.user1_uid, match.user2_uid):
        raise PermissionDenied("You are not part of this match")
    return match


def serialize_match(match: Match) -> dict[str, Any]:
    confirmed_place = None
    if match.confirmed_place_id:
        confirmed_place = {
            "place_id": match.confirmed_place_id,
            "name": match.confirmed_place_name,
            "address": match.confirmed_place_address,
            "lat": match.confirmed_place_lat,
            "lng": match.confirmed_place_lng,
        }
    return {
        "id": match.id,
        "user1_uid": match.user1_uid,
        "user2_uid": match.user2_uid,
        "status": match.status,
        "status_by_user": dict(match.status_by_user or {}),
        "activity": match.activity,
        "matched_at": match.matched_at.isoformat() if match.matched_at else None,
        "place_candidates": list(match.place_candidates or []),
        "location_decision_expires_at": (
            match.location_decision_expires_at.isoformat() if match.location_decision_expires_at else None
        ),
        "place_choice_by_user": dict(match.place_choice_by_user or {}),
        "confirmed_place": confirmed_place,
        "place_resolution_reason": match.place_resolution_reason,
        "cancelled_by": match.cancelled_by,
        "cancellation_reason": match.cancellation_reason,
        "pending_confirmation_uids": list(match.pending_confirmation_uids or []),
        "meeting_confirmation": dict(match.meeting_confirmation or {}),
        "outcome": match.outcome,
    }


def get_match(uid: str, match_id: str) -> dict[str, Any]:
    def _read(db: Session) -> dict[str, Any]:
        match = load_match_for_participant(db, uid, match_id)
        payload = serialize_match(match)
        partner = db.get(UserAccount, other_participant(match, uid))
        payload["partner"] = {
            "uid": other_participant(match, uid),
            "display_name": partner.display_name if partner else None,
            "photo_url": partner.photo_url if partner else None,
        }
        return payload

    return database.run_in_transaction(_read)


def restore_presences_after_match(db: Session, match: Match, now: datetime) -> None:
    """Hand both presences back to ``available`` with their pre-match expiry.

    A presence whose saved expiry has already passed is deleted instead, so an
    ended session is never resurrected.
    """
    for uid in (match.user1_uid, match.user2_uid):
        presence = db.get(PresenceSession, uid)
        if presence is None or presence.match_id != match.id:
            continue
        restore_to = presence.original_expires_at or presence.expires_at
        if restore_to <= now:
            db.delete(presence)
            continue
        presence.status = "available"
        presence.match_id = None
        presence.expires_at = restore_to
        presence.original_expires_at = None
        presence.updated_at = now


def cancel_accepted_offers(db: Session, match_id: str, now: datetime, status: str = "cancelled") -> int:
    offers = db.execute(
        select(Offer).where(Offer.match_id == match_id, Offer.status == "accepted")
    ).scalars().all()
    for offer in offers:
        offer.status = status
        offer.updated_at = now
    return len(offers)


def cancel_match_in_txn(
    db: Session,
    match: Match,
    cancelled_by: str,
    reason: str | None,
    now: datetime,
) -> dict[str, Any]:
    if match.status == "completed":
        raise FailedPrecondition("Cannot cancel a completed match")
    if not can_cancel(match.status):
        raise FailedPrecondition("Match is already cancelled")

    severe = False
    if cancelled_by != SYSTEM_ACTOR:
        other_uid = other_participant(match, cancelled_by)
        severe = is_severe_cancel((match.status_by_user or {}).get(other_uid))
    seconds_since_match = (now - match.matched_at).total_seconds() if match.matched_at else 0.0
    penalty = cancellation_penalty(
        reason,
        cancelled_by,
        seconds_since_match,
        severe,
        grace_seconds=CANCEL_GRACE_SECONDS,
        base_penalty=CANCEL_BASE_PENALTY,
    )

    previous_status = match.status
    match.status = "cancelled"
    match.cancelled_by = cancelled_by
    match.cancellation_reason = reason
    match.cancellation_severe = severe
    match.cancellation_penalty = penalty
    match.cancelled_at = now
    match.updated_at = now

    if cancelled_by != SYSTEM_ACTOR:
        record_cancellation(db, cancelled_by, severe=severe, penalty=penalty, now=now)

    cancel_accepted_offers(db, match.id, now)
    restore_presences_after_match(db, match, now)
    log_match_event(
        db,
        event_type="match_cancelled",
        match_id=match.id,
        user_id=None if cancelled_by == SYSTEM_ACTOR else cancelled_by,
        payload={"reason": reason, "severe": severe, "penalty": penalty, "from_status": previous_status},
    )
    logger.info(f"[matches] cancelled {match.id} by={cancelled_by} reason={reason} severe={severe}")
    return {"success": True, "was_severe_cancel": severe, "penalty": penalty}


def after_match_closed(match_id: str, user1_uid: str, user2_uid: str) -> None:
    release_match_guard(match_id, user1_uid, user2_uid)


def cancel_match(uid: str, match_id: str, reason: str | None = None, now: datetime | None = None) -> dict[str, Any]:
    if reason is not None and reason not in USER_CANCEL_REASONS:
        raise InvalidArgument(f"Reason must be one of {', '.join(USER_CANCEL_REASONS)}")
    now = now or _now_utc()

    def _txn(db: Session) -> tuple[dict[str, Any], tuple[str, str]]:
        match = load_match_for_participant(db, uid, match_id)
        result = cancel_match_in_txn(db, match, uid, reason, now)
        return result, (match.user1_uid, match.user2_uid)

    result, (user1_uid, user2_uid) = database.run_in_transaction(_txn)
    after_match_closed(match_id, user1_uid, user2_uid)
    other_uid = user2_uid if user1_uid == uid else user1_uid
    notifications.send_match_cancelled(other_uid, match_id, reason)
    return result


def cancel_match_as_system(match_id: str, reason: str, now: datetime | None = None) -> bool:
    """Cancel on behalf of the system. Returns False if the match was already closed."""
    now = now or _now_utc()

    def _txn(db: Session) -> tuple[bool, tuple[str, str] | None]:
        match = db.get(Match, match_id)
        if match is None:
            return False, None
        if not can_cancel(match.status):
            return False, (match.user1_uid, match.user2_uid)
        cancel_match_in_txn(db, match, SYSTEM_ACTOR, reason, now)
        return True, (match.user1_uid, match.user2_uid)

    cancelled, pair = database.run_in_transaction(_txn)
    if pair is not None:
        after_match_closed(match_id, *pair)
    return cancelled


def update_match_status(uid: str, match_id: str, status: str, now: datetime | None = None) -> dict[str, Any]:
    if status not in USER_SETTABLE_STATUSES:
        raise InvalidArgument("Invalid status")
    now = now or _now_utc()

    def _txn(db: Session) -> tuple[dict[str, Any], tuple[str, str]]:
        match = load_match_for_participant(db, uid, match_id)
        pair = (match.user1_uid, match.user2_uid)
        if match.status not in CONFIRMABLE_STATUSES:
            raise FailedPrecondition("Match is not in progress", code="MATCH_NOT_IN_PROGRESS")

        by_user = dict(match.status_by_user or {})
        current = by_user.get(uid, "pending")
        if USER_STATUS_ORDER[status] < USER_STATUS_ORDER.get(current, 0):
            raise FailedPrecondition("Status cannot move backwards", code="STATUS_REGRESSION")
        if status == current:
            return {"success": True, "status": match.status, "status_by_user": by_user, "changed": False}, pair

        by_user[uid] = status
        match.status_by_user = by_user
        match.status = promote_status(match.status, by_user.get(match.user1_uid), by_user.get(match.user2_uid))
        match.updated_at = now

        if match.status == "completed":
            match.completed_at = now
            match.resolved_at = now
            match.outcome = "both_completed"
            for participant in pair:
                record_met(db, participant, now)
            restore_presences_after_match(db, match, now)

        log_match_event(db, "match_status_updated", match_id=match.id, user_id=uid, payload={"user_status": status, "status": match.status})
        return {"success": True, "status": match.status, "status_by_user": by_user, "changed": True}, pair

    result, pair = database.run_in_transaction(_txn)
    if result["status"] == "completed" and result["changed"]:
        after_match_closed(match_id, *pair)
    return result


def find_active_match_for_user(db: Session, uid: str) -> Match | None:
    return db.execute(
        select(Match)
        .where(
            (Match.user1_uid == uid) | (Match.user2_uid == uid),
            Match.status.in_(ACTIVE_MATCH_STATUSES),
        )
        .limit(1)
    ).scalars().first()
