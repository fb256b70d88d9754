"""Single entry point for turning a pairing trigger into a Match.

The pair guard row (one per unordered pair) and the two presence rows are read
and written in the caller's transaction, so duplicate triggers racing each
other either see the committed match or lose the commit and retry into it.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from .. import database
from ..config import MATCHED_PRESENCE_EXTENSION_HOURS, PAIR_GUARD_TTL_HOURS
from ..models import Match, PairGuard, PresenceSession
from .state_machine import is_active

logger = logging.getLogger(__name__)


@dataclass
class MatchCreation:
    match_id: str
    is_new: bool


def canonical_pair(user_a: str, user_b: str) -> tuple[str, str]:
    return tuple(sorted((user_a, user_b)))


def pair_key(user_a: str, user_b: str) -> str:
    first, second = canonical_pair(user_a, user_b)
    return f"{first}_{second}"


def create_match_atomic(
    db: Session,
    uid_a: str,
    uid_b: str,
    activity: str | None,
    now: datetime,
    triggering_offer_id: str | None = None,
) -> MatchCreation:
    user1_uid, user2_uid = canonical_pair(uid_a, uid_b)
    key = pair_key(uid_a, uid_b)

    guard = db.get(PairGuard, key)
    if guard is not None:
        guarded = db.get(Match, guard.match_id)
        if guarded is not None and is_active(guarded.status):
            logger.info(f"[match_guard] pair {key} already has active match {guarded.id}")
            return MatchCreation(match_id=guarded.id, is_new=False)

    presences: dict[str, PresenceSession | None] = {
        uid: db.get(PresenceSession, uid) for uid in (user1_uid, user2_uid)
    }
    for uid, presence in presences.items():
        if presence is None or presence.status != "matched" or not presence.match_id:
            continue
        linked = db.get(Match, presence.match_id)
        if linked is not None and is_active(linked.status):
            logger.info(f"[match_guard] {uid} already in active match {linked.id}, returning it")
            return MatchCreation(match_id=linked.id, is_new=False)
        logger.warning(f"[match_guard] ignoring stale matched claim on {uid} -> {presence.match_id}")

    match = Match(
        id=str(uuid.uuid4()),
        user1_uid=user1_uid,
        user2_uid=user2_uid,
        status="pending",
        status_by_user={user1_uid: "pending", user2_uid: "pending"},
        activity=activity,
        triggering_offer_id=triggering_offer_id,
        matched_at=now,
        place_candidates=[],
        place_choice_by_user={},
        meeting_confirmation={},
        pending_confirmation_uids=[],
        telemetry={},
        updated_at=now,
    )
    db.add(match)

    guard_expires_at = now + timedelta(hours=PAIR_GUARD_TTL_HOURS)
    if guard is not None:
        guard.match_id = match.id
        guard.expires_at = guard_expires_at
        guard.created_at = now
    else:
        db.add(
            PairGuard(
                pair_key=key,
                user1_uid=user1_uid,
                user2_uid=user2_uid,
                match_id=match.id,
                expires_at=guard_expires_at,
                created_at=now,
            )
        )

    extended = now + timedelta(hours=MATCHED_PRESENCE_EXTENSION_HOURS)
    for uid, presence in presences.items():
        if presence is None:
            logger.warning(f"[match_guard] no presence for {uid} while creating match {match.id}")
            continue
        if presence.status != "matched" or presence.original_expires_at is None:
            presence.original_expires_at = presence.expires_at
        presence.status = "matched"
        presence.match_id = match.id
        presence.expires_at = max(presence.expires_at, extended)
        presence.updated_at = now

    logger.info(f"[match_guard] created match {match.id} for pair {key}")
    return MatchCreation(match_id=match.id, is_new=True)


def release_match_guard(match_id: str, uid_a: str, uid_b: str) -> bool:
    """Delete the pair guard only if it still points at ``match_id``."""
    key = pair_key(uid_a, uid_b)

    def _release(db: Session) -> bool:
        guard = db.get(PairGuard, key)
        if guard is None:
            return False
        if guard.match_id != match_id:
            logger.info(f"[match_guard] guard {key} now references {guard.match_id}, leaving it")
            return False
        db.delete(guard)
        return True

    try:
        released = database.run_in_transaction(_release)
    except Exception:
        logger.exception(f"[match_guard] failed to release guard {key} for match {match_id}")
        return False
    if released:
        logger.info(f"[match_guard] released guard {key} for match {match_id}")
    return released
