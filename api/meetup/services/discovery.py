"""One-at-a-time browsing of nearby available people.

Ranking is recomputed on every call from live presences. The caller's presence
keeps the cycle state: ``seen_uids`` for this pass through the pool and
``last_viewed_uid`` so the person just passed is not shown again right away.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from .. import database
from ..config import (
    DISCOVERY_MAX_ATTEMPTS,
    DISCOVERY_MAX_DURATION_DIFF_MINUTES,
    DISCOVERY_RADIUS_KM,
    REJECTION_COOLDOWN_HOURS,
)
from ..models import Match, Offer, PresenceSession, Suggestion, UserAccount, UserBlock, UserReliability
from . import notifications
from .errors import FailedPrecondition, InvalidArgument
from .geo import geohash_query_prefixes, haversine
from .match_guard import create_match_atomic
from .offers import cleanup_after_match
from .reliability import meet_and_cancel_rates
from .state_machine import ACTIVE_MATCH_STATUSES

logger = logging.getLogger(__name__)

WEIGHTS = {
    "distance": 0.40,
    "interests": 0.15,
    "duration": 0.20,
    "reliability": 0.10,
    "fairness": 0.10,
    "urgency": 0.05,
}
RECENTLY_EXPIRED_PENALTY = 0.5


@dataclass
class Candidate:
    uid: str
    distance: int
    activity: str
    duration_minutes: int
    interests: list[str] = field(default_factory=list)
    score: float = 0.0


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def distance_score(distance_m: float) -> float:
    if distance_m <= 200:
        return 1.0
    if distance_m <= 500:
        return 0.8
    if distance_m <= 800:
        return 0.5
    if distance_m <= 1000:
        return 0.2
    return max(0.0, 1 - distance_m / 5000)


def interest_score(mine: list[str], theirs: list[str]) -> float:
    shared = len(set(mine) & set(theirs))
    return min(1.0, shared / 3)


def duration_score(mine: int, theirs: int) -> float:
    diff = abs(mine - theirs)
    if diff == 0:
        return 1.0
    if diff <= 30:
        return 0.7
    if diff <= 60:
        return 0.3
    return 0.0


def reliability_score(meet_rate: float = 0.5, cancel_rate: float = 0.0) -> float:
    return max(0.0, min(1.0, 0.5 + 0.5 * meet_rate - 0.3 * cancel_rate))


def fairness_score(exposure: int = 0) -> float:
    return max(0.2, 1 - exposure * 0.1)


def urgency_score(expires_at: datetime | None, now: datetime) -> float:
    if expires_at is None:
        return 0.5
    remaining_min = (expires_at - now).total_seconds() / 60
    if remaining_min <= 15:
        return 1.0
    if remaining_min <= 30:
        return 0.8
    if remaining_min <= 60:
        return 0.5
    return 0.3


def explain(candidate: Candidate, shared: list[str]) -> str:
    if candidate.distance <= 200:
        return "~2-3 min walk away"
    if candidate.distance <= 500:
        return "~5-7 min walk away"
    if candidate.distance <= 800:
        return "~8-10 min walk away"
    if shared:
        return f"You both like {' and '.join(shared[:2])}"
    return f"Available for {candidate.activity}"


def _interests(db: Session, uid: str) -> list[str]:
    user = db.get(UserAccount, uid)
    return list(user.interests or []) if user else []


def _excluded_uids(db: Session, uid: str, now: datetime) -> set[str]:
    excluded = {uid}
    for blocker, blocked in db.execute(
        select(UserBlock.blocker_uid, UserBlock.blocked_uid).where(
            or_(UserBlock.blocker_uid == uid, UserBlock.blocked_uid == uid)
        )
    ):
        excluded.add(blocked if blocker == uid else blocker)

    cooldown_start = now - timedelta(hours=REJECTION_COOLDOWN_HOURS)
    for from_uid, to_uid in db.execute(
        select(Suggestion.from_uid, Suggestion.to_uid).where(
            Suggestion.action == "reject",
            Suggestion.created_at > cooldown_start,
            or_(Suggestion.from_uid == uid, Suggestion.to_uid == uid),
        )
    ):
        excluded.add(to_uid if from_uid == uid else from_uid)

    for u1, u2 in db.execute(
        select(Match.user1_uid, Match.user2_uid).where(
            Match.status.in_(ACTIVE_MATCH_STATUSES),
            or_(Match.user1_uid == uid, Match.user2_uid == uid),
        )
    ):
        excluded.add(u2 if u1 == uid else u1)

    excluded.update(
        db.execute(
            select(Offer.to_uid).where(Offer.from_uid == uid, Offer.status == "pending", Offer.expires_at > now)
        ).scalars()
    )
    return excluded


def rank_candidates(db: Session, me: PresenceSession, now: datetime) -> list[Candidate]:
    """Score every eligible nearby presence, best first, ties by uid."""
    radius_m = DISCOVERY_RADIUS_KM * 1000
    excluded = _excluded_uids(db, me.user_id, now)
    recently_expired = set(me.recently_expired_offer_uids or [])
    my_interests = _interests(db, me.user_id)

    cells = [
        and_(PresenceSession.geohash >= p, PresenceSession.geohash < p + "~")
        for p in geohash_query_prefixes(me.lat, me.lng, radius_m)
    ]
    rows = db.execute(
        select(PresenceSession).where(
            PresenceSession.status == "available",
            PresenceSession.expires_at > now,
            PresenceSession.activity == me.activity,
            or_(*cells),
        )
    ).scalars()

    ranked: list[Candidate] = []
    for other in rows:
        if other.user_id in excluded:
            continue
        if abs(other.duration_minutes - me.duration_minutes) > DISCOVERY_MAX_DURATION_DIFF_MINUTES:
            continue
        distance_m = haversine(me.lat, me.lng, other.lat, other.lng)
        if distance_m > radius_m:
            continue

        theirs = _interests(db, other.user_id)
        meet_rate, cancel_rate = meet_and_cancel_rates(db.get(UserReliability, other.user_id))
        score = (
            WEIGHTS["distance"] * distance_score(distance_m)
            + WEIGHTS["interests"] * interest_score(my_interests, theirs)
            + WEIGHTS["duration"] * duration_score(me.duration_minutes, other.duration_minutes)
            + WEIGHTS["reliability"] * reliability_score(meet_rate, cancel_rate)
            + WEIGHTS["fairness"] * fairness_score(other.exposure_score or 0)
            + WEIGHTS["urgency"] * urgency_score(other.expires_at, now)
        )
        if other.user_id in recently_expired:
            score -= RECENTLY_EXPIRED_PENALTY
        ranked.append(
            Candidate(
                uid=other.user_id,
                distance=round(distance_m),
                activity=other.activity,
                duration_minutes=other.duration_minutes,
                interests=theirs,
                score=score,
            )
        )

    ranked.sort(key=lambda c: (-c.score, c.uid))
    return ranked


def _require_browsing_presence(db: Session, uid: str, now: datetime) -> PresenceSession:
    presence = db.get(PresenceSession, uid)
    if presence is None or presence.expires_at <= now:
        raise FailedPrecondition("You must set your availability first", code="PRESENCE_REQUIRED")
    if presence.status == "matched":
        raise FailedPrecondition("You are already in an active match", code="ALREADY_MATCHED")
    if presence.lat is None or presence.lng is None:
        raise FailedPrecondition("Your location is unknown", code="LOCATION_UNKNOWN")
    return presence


def get_next_suggestion(uid: str, action: str = "next", now: datetime | None = None) -> dict[str, Any]:
    if action not in ("next", "refresh"):
        raise InvalidArgument('Action must be "next" or "refresh"')
    now = now or _now_utc()

    def _txn(db: Session) -> dict[str, Any]:
        me = _require_browsing_presence(db, uid, now)
        my_interests = _interests(db, uid)
        seen = [] if action == "refresh" else list(me.seen_uids or [])

        for attempt in range(DISCOVERY_MAX_ATTEMPTS):
            candidates = rank_candidates(db, me, now)
            fresh = [c for c in candidates if c.uid not in seen]
            is_new_cycle = False
            if not fresh and candidates:
                logger.info(f"[discovery] cycle exhausted for {uid}, resetting")
                seen = []
                fresh = candidates
                is_new_cycle = True
            if seen != list(me.seen_uids or []):
                me.seen_uids = list(seen)

            if not fresh:
                return {
                    "suggestion": None,
                    "cycle_info": {"total": 0, "current": 0, "is_new_cycle": is_new_cycle},
                    "message": "No one nearby right now. Try again later.",
                }

            if me.last_viewed_uid:
                viewed = next((c for c in fresh if c.uid == me.last_viewed_uid), None)
                if viewed is not None:
                    fresh = [c for c in fresh if c.uid != viewed.uid] + [viewed]

            best = fresh[0]
            profile = db.get(UserAccount, best.uid)
            if profile is None:
                logger.info(f"[discovery] candidate {best.uid} vanished, retrying ({attempt + 1})")
                seen = [*seen, best.uid]
                continue

            shared = [i for i in my_interests if i in best.interests]
            return {
                "suggestion": {
                    "uid": best.uid,
                    "display_name": profile.display_name,
                    "photo_url": profile.photo_url,
                    "interests": best.interests,
                    "activity": best.activity,
                    "distance": best.distance,
                    "duration_minutes": best.duration_minutes,
                    "explanation": explain(best, shared),
                },
                "cycle_info": {"total": len(candidates), "current": len(seen) + 1, "is_new_cycle": is_new_cycle},
            }

        return {
            "suggestion": None,
            "cycle_info": {"total": 0, "current": 0, "is_new_cycle": False},
            "message": "Nearby users just went offline. Please refresh.",
        }

    return database.run_in_transaction(_txn)


def pass_suggestion(uid: str, target_uid: str, now: datetime | None = None) -> dict[str, Any]:
    if not target_uid:
        raise InvalidArgument("Target user ID is required")
    now = now or _now_utc()

    def _txn(db: Session) -> dict[str, Any]:
        presence = db.get(PresenceSession, uid)
        if presence is None:
            raise FailedPrecondition("You must set your availability first", code="PRESENCE_REQUIRED")
        seen = list(presence.seen_uids or [])
        if target_uid not in seen:
            seen.append(target_uid)
        presence.seen_uids = seen
        presence.last_viewed_uid = target_uid
        presence.updated_at = now
        return {"success": True, "seen_count": len(seen)}

    return database.run_in_transaction(_txn)


def respond_suggestion(uid: str, target_uid: str, action: str, now: datetime | None = None) -> dict[str, Any]:
    if not target_uid:
        raise InvalidArgument("Target user ID is required")
    if action not in ("pass", "accept"):
        raise InvalidArgument('Action must be "pass" or "accept"')
    if target_uid == uid:
        raise InvalidArgument("Cannot respond to yourself")
    now = now or _now_utc()

    def _txn(db: Session) -> dict[str, Any]:
        if db.execute(
            select(UserBlock.blocker_uid).where(
                or_(
                    and_(UserBlock.blocker_uid == uid, UserBlock.blocked_uid == target_uid),
                    and_(UserBlock.blocker_uid == target_uid, UserBlock.blocked_uid == uid),
                )
            )
        ).first():
            raise FailedPrecondition("You cannot respond to this user", code="BLOCKED")

        reverse = db.get(Suggestion, f"{target_uid}_{uid}")
        if action == "pass" or reverse is None or reverse.action != "accept":
            db.merge(
                Suggestion(id=f"{uid}_{target_uid}", from_uid=uid, to_uid=target_uid, action=action, created_at=now)
            )
            return {"match_created": False}

        # Mutual accept: both rows are consumed by the match.
        mine = db.get(Suggestion, f"{uid}_{target_uid}")
        if mine is not None:
            db.delete(mine)

        activity = None
        presence = db.get(PresenceSession, uid)
        if presence is not None:
            activity = presence.activity
        creation = create_match_atomic(db, uid, target_uid, activity, now)
        db.delete(reverse)
        return {"match_created": True, "match_id": creation.match_id, "is_new": creation.is_new}

    result = database.run_in_transaction(_txn)
    if result.get("match_created"):
        cleanup_after_match((uid, target_uid), (), now)
        if result.pop("is_new", False):
            notifications.send_match_created(*sorted((uid, target_uid)), result["match_id"])
    return result
