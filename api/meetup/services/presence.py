import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy.orm import Session

from .. import database
from ..config import (
    ACTIVITY_CATEGORIES,
    PRESENCE_GRACE_MINUTES,
    PRESENCE_MAX_DURATION_MINUTES,
    PRESENCE_MIN_DURATION_MINUTES,
    PRESENCE_STARTS_PER_HOUR,
    REGION_MAX_LAT,
    REGION_MAX_LNG,
    REGION_MIN_LAT,
    REGION_MIN_LNG,
)
from ..models import PresenceSession
from .errors import FailedPrecondition, InvalidArgument
from .events import log_product_event
from .geo import encode_geohash
from .idempotency import MinimalResult, with_idempotency_lock
from .matches import find_active_match_for_user
from .offers import cleanup_pending_offers
from .rate_limit import enforce_user_rate

logger = logging.getLogger(__name__)

OP_START = "presenceStart"


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def validate_start(activity: str, duration_minutes: int, lat: float, lng: float) -> None:
    if not activity or activity not in ACTIVITY_CATEGORIES:
        raise InvalidArgument(f"Activity must be one of {', '.join(ACTIVITY_CATEGORIES)}")
    if not isinstance(duration_minutes, int) or isinstance(duration_minutes, bool):
        raise InvalidArgument("Duration must be a whole number of minutes")
    if not PRESENCE_MIN_DURATION_MINUTES <= duration_minutes <= PRESENCE_MAX_DURATION_MINUTES:
        raise InvalidArgument(
            f"Duration must be between {PRESENCE_MIN_DURATION_MINUTES} and {PRESENCE_MAX_DURATION_MINUTES} minutes"
        )
    if lat is None or lng is None:
        raise InvalidArgument("Location is required")
    if not (REGION_MIN_LAT <= lat <= REGION_MAX_LAT and REGION_MIN_LNG <= lng <= REGION_MAX_LNG):
        raise InvalidArgument("Location is outside the service area", code="OUTSIDE_SERVICE_AREA")


def serialize_presence(presence: PresenceSession, now: datetime) -> dict[str, Any]:
    return {
        "user_id": presence.user_id,
        "session_id": presence.session_id,
        "activity": presence.activity,
        "duration_minutes": presence.duration_minutes,
        "lat": presence.lat,
        "lng": presence.lng,
        "status": presence.status,
        "match_id": presence.match_id,
        "expires_at": presence.expires_at.isoformat(),
        "expires_in_seconds": max(0, int((presence.expires_at - now).total_seconds())),
        "outgoing_offer_ids": list(presence.outgoing_offer_ids or []),
    }


def start_presence(
    uid: str,
    activity: str,
    duration_minutes: int,
    lat: float,
    lng: float,
    request_id: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    validate_start(activity, duration_minutes, lat, lng)
    enforce_user_rate("presence_start", uid, PRESENCE_STARTS_PER_HOUR, 3600)
    now = now or _now_utc()

    def _txn(db: Session) -> MinimalResult:
        existing = db.get(PresenceSession, uid)
        if existing is not None and existing.expires_at > now:
            if existing.activity != activity:
                raise FailedPrecondition(
                    "You already have an active session for a different activity",
                    code="ACTIVE_PRESENCE_EXISTS",
                )
            return MinimalResult(
                primary_id=existing.session_id,
                flags={"already_active": True, "expires_at": existing.expires_at.isoformat()},
            )

        if find_active_match_for_user(db, uid) is not None:
            raise FailedPrecondition("You are already in an active match", code="ALREADY_MATCHED")
        if existing is not None:
            db.delete(existing)
            db.flush()

        expires_at = now + timedelta(minutes=duration_minutes + PRESENCE_GRACE_MINUTES)
        presence = PresenceSession(
            user_id=uid,
            activity=activity,
            duration_minutes=duration_minutes,
            lat=lat,
            lng=lng,
            geohash=encode_geohash(lat, lng),
            status="available",
            session_id=str(uuid.uuid4()),
            expires_at=expires_at,
            offer_cooldown_until=None,
            exposure_score=0,
            outgoing_offer_ids=[],
            seen_uids=[],
            recently_expired_offer_uids=[],
            created_at=now,
            updated_at=now,
        )
        db.add(presence)
        log_product_event(db, "presence_started", user_id=uid, properties={"activity": activity, "duration": duration_minutes})
        logger.info(f"[presence] {uid} available for {activity} until {expires_at.isoformat()}")
        return MinimalResult(
            primary_id=presence.session_id,
            flags={"already_active": False, "expires_at": expires_at.isoformat()},
        )

    def _execute() -> MinimalResult:
        return database.run_in_transaction(_txn)

    result, cached = with_idempotency_lock(uid, OP_START, request_id, _execute, now=now)
    return {
        "success": True,
        "session_id": result.primary_id,
        "expires_at": result.flags.get("expires_at"),
        "already_active": bool(result.flags.get("already_active")),
        "cached": cached,
    }


def end_presence(uid: str, now: datetime | None = None) -> dict[str, Any]:
    now = now or _now_utc()

    def _txn(db: Session) -> dict[str, Any]:
        presence = db.get(PresenceSession, uid)
        if presence is None:
            return {"success": True, "ended": False, "offers_cancelled": 0}
        if find_active_match_for_user(db, uid) is not None:
            raise FailedPrecondition("Finish or cancel your current match first", code="MATCH_IN_PROGRESS")
        cancelled = cleanup_pending_offers(db, uid, now, reason="presence_ended")
        db.delete(presence)
        log_product_event(db, "presence_ended", user_id=uid, properties={"offers_cancelled": cancelled})
        return {"success": True, "ended": True, "offers_cancelled": cancelled}

    result = database.run_in_transaction(_txn)
    if result["ended"]:
        logger.info(f"[presence] {uid} ended session, cancelled {result['offers_cancelled']} offers")
    return result


def get_my_presence(uid: str, now: datetime | None = None) -> dict[str, Any]:
    now = now or _now_utc()
    with database.SessionLocal() as db:
        presence = db.get(PresenceSession, uid)
        if presence is None or (presence.expires_at <= now and presence.status != "matched"):
            return {"active": False, "presence": None}
        return {"active": True, "presence": serialize_presence(presence, now)}
