"""Venue choice for a fresh match.

Candidates are fetched once around the pair's midpoint, both users pick (or
tick the other's pick) within the decision window, and the pure ``choose_place``
rule settles the outcome either as soon as both agree or when the window lapses.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy.orm import Session

from .. import database
from ..config import DEFAULT_LOCATION, LOCATION_DECISION_SECONDS
from ..models import Match, Place, PresenceSession
from . import notifications
from .errors import FailedPrecondition, InvalidArgument
from .events import log_match_event, log_product_event
from .geo import encode_geohash, haversine, midpoint
from .matches import SYSTEM_ACTOR, after_match_closed, cancel_match_in_txn, load_match_for_participant
from .places import get_place_candidates

logger = logging.getLogger(__name__)

CHOICE_ACTIONS = ("choose", "tick", "find_others")
NO_PLACES_REASON = "no_places_available"


@dataclass
class PlaceDecision:
    place: dict[str, Any]
    reason: str


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _find(candidates: list[dict[str, Any]], place_id: str | None) -> dict[str, Any] | None:
    if place_id is None:
        return None
    return next((c for c in candidates if c.get("place_id") == place_id), None)


def choose_place(
    candidates: list[dict[str, Any]],
    choice1: dict[str, Any] | None,
    choice2: dict[str, Any] | None,
) -> PlaceDecision | None:
    """Deterministic venue pick from two optional choices.

    Neither chose: rank 1. One chose: that place. Same place: that place, as
    ``tick_sync`` if either side got there by ticking. Different places: the
    lower rank wins, equal ranks fall to the smaller place id.
    """
    if not candidates:
        return None
    first = min(candidates, key=lambda c: (c.get("rank", 0), c["place_id"]))
    place1 = _find(candidates, (choice1 or {}).get("place_id"))
    place2 = _find(candidates, (choice2 or {}).get("place_id"))

    if place1 is None and place2 is None:
        if choice1 or choice2:
            return PlaceDecision(first, "rank_tiebreak" if choice1 and choice2 else "one_chose")
        return PlaceDecision(first, "none_chose")
    if place1 is None or place2 is None:
        if choice1 and choice2:
            return PlaceDecision(place1 or place2, "rank_tiebreak")
        return PlaceDecision(place1 or place2, "one_chose")
    if place1["place_id"] == place2["place_id"]:
        ticked = "tick" in (choice1.get("source"), choice2.get("source"))
        return PlaceDecision(place1, "tick_sync" if ticked else "both_same")
    winner = min((place1, place2), key=lambda c: (c.get("rank", 0), c["place_id"]))
    return PlaceDecision(winner, "rank_tiebreak")


def _center_for(db: Session, match: Match) -> tuple[float, float]:
    points = []
    for uid in (match.user1_uid, match.user2_uid):
        presence = db.get(PresenceSession, uid)
        if presence is not None and presence.lat is not None and presence.lng is not None:
            points.append((presence.lat, presence.lng))
    if len(points) == 2:
        return midpoint(points[0], points[1])
    if points:
        return points[0]
    logger.warning(f"[places] no presence location for match {match.id}, using default center")
    return DEFAULT_LOCATION


def _confirmed_payload(match: Match) -> dict[str, Any]:
    return {
        "place_id": match.confirmed_place_id,
        "name": match.confirmed_place_name,
        "address": match.confirmed_place_address,
        "lat": match.confirmed_place_lat,
        "lng": match.confirmed_place_lng,
    }


def _cancel_for_no_places(db: Session, match: Match, now: datetime) -> None:
    cancel_match_in_txn(db, match, SYSTEM_ACTOR, NO_PLACES_REASON, now)
    match.location_decision_resolved_at = now
    match.place_resolution_reason = NO_PLACES_REASON


def _apply_decision(db: Session, match: Match, decision: PlaceDecision, now: datetime) -> None:
    place = decision.place
    match.confirmed_place_id = place["place_id"]
    match.confirmed_place_name = place.get("name")
    match.confirmed_place_address = place.get("address")
    match.confirmed_place_lat = place.get("lat")
    match.confirmed_place_lng = place.get("lng")
    match.place_confirmed_at = now
    match.location_decision_resolved_at = now
    match.place_resolution_reason = decision.reason
    match.status = "place_confirmed"
    match.updated_at = now

    catalog = db.get(Place, place["place_id"])
    if catalog is not None:
        catalog.times_selected = (catalog.times_selected or 0) + 1
        catalog.updated_at = now

    log_match_event(
        db,
        "place_confirmed",
        match_id=match.id,
        payload={"place_id": place["place_id"], "reason": decision.reason},
    )
    logger.info(f"[places] match {match.id} confirmed {place['place_id']} ({decision.reason})")


def _resolve_in_txn(db: Session, match: Match, now: datetime) -> dict[str, Any]:
    candidates = list(match.place_candidates or [])
    choices = match.place_choice_by_user or {}
    decision = choose_place(candidates, choices.get(match.user1_uid), choices.get(match.user2_uid))
    if decision is None:
        _cancel_for_no_places(db, match, now)
        return {"success": False, "cancelled": True, "cancellation_reason": NO_PLACES_REASON}
    _apply_decision(db, match, decision, now)
    return {
        "success": True,
        "already_confirmed": False,
        "confirmed_place": _confirmed_payload(match),
        "resolution_reason": decision.reason,
    }


def _notify_no_places(match_id: str, pair: tuple[str, str]) -> None:
    after_match_closed(match_id, *pair)
    for uid in pair:
        notifications.send_match_cancelled(uid, match_id, NO_PLACES_REASON)


def fetch_places(uid: str, match_id: str, now: datetime | None = None) -> dict[str, Any]:
    now = now or _now_utc()

    def _txn(db: Session) -> tuple[dict[str, Any], tuple[str, str], bool]:
        match = load_match_for_participant(db, uid, match_id)
        pair = (match.user1_uid, match.user2_uid)
        if match.status == "cancelled":
            return {
                "candidates": [],
                "expires_at": None,
                "cancelled": True,
                "cancellation_reason": match.cancellation_reason,
            }, pair, False
        if match.place_candidates:
            expires_at = match.location_decision_expires_at
            return {
                "candidates": list(match.place_candidates),
                "expires_at": expires_at.isoformat() if expires_at else None,
                "already_fetched": True,
            }, pair, False
        if match.status != "pending":
            raise FailedPrecondition("Places can only be fetched for a new match", code="MATCH_NOT_PENDING")

        center = _center_for(db, match)
        candidates = [c.to_dict() for c in get_place_candidates(db, center, match.activity, now)]
        deadline = match.matched_at + timedelta(seconds=LOCATION_DECISION_SECONDS)
        if not candidates:
            logger.info(f"[places] no candidates for match {match.id}, cancelling")
            match.location_decision_expires_at = deadline
            _cancel_for_no_places(db, match, now)
            return {
                "candidates": [],
                "expires_at": None,
                "cancelled": True,
                "cancellation_reason": NO_PLACES_REASON,
            }, pair, True

        match.place_candidates = candidates
        match.location_decision_expires_at = deadline
        match.status = "location_deciding"
        match.updated_at = now
        log_match_event(db, "places_fetched", match_id=match.id, user_id=uid, payload={"count": len(candidates)})
        return {"candidates": candidates, "expires_at": deadline.isoformat()}, pair, False

    result, pair, cancelled_now = database.run_in_transaction(_txn)
    if cancelled_now:
        _notify_no_places(match_id, pair)
    return result


def set_place_choice(
    uid: str,
    match_id: str,
    place_id: str | None,
    action: str = "choose",
    now: datetime | None = None,
) -> dict[str, Any]:
    if action not in CHOICE_ACTIONS:
        raise InvalidArgument(f"Action must be one of {', '.join(CHOICE_ACTIONS)}")
    now = now or _now_utc()

    def _txn(db: Session) -> dict[str, Any]:
        match = load_match_for_participant(db, uid, match_id)
        if match.status != "location_deciding":
            raise FailedPrecondition("Location decision has already ended", code="DECISION_CLOSED")

        telemetry = dict(match.telemetry or {})

        def _bump(counter: str) -> None:
            per_user = dict(telemetry.get(counter) or {})
            per_user[uid] = per_user.get(uid, 0) + 1
            telemetry[counter] = per_user

        if action == "find_others":
            _bump("find_others_clicks_by_user")
            match.telemetry = telemetry
            match.updated_at = now
            log_product_event(db, "place_find_others", user_id=uid, properties={"match_id": match.id})
            return {"success": True, "action": "find_others"}

        if not place_id:
            raise InvalidArgument("place_id is required")
        candidate = _find(list(match.place_candidates or []), place_id)
        if candidate is None:
            raise InvalidArgument("Invalid place selection", code="PLACE_NOT_CANDIDATE")

        choices = dict(match.place_choice_by_user or {})
        current = choices.get(uid)
        if current and current.get("place_id") == place_id:
            return {"success": True, "action": "noChange", "chosen_place_id": place_id}

        if action == "tick":
            tick_used = dict(telemetry.get("tick_used_by_user") or {})
            tick_used[uid] = True
            telemetry["tick_used_by_user"] = tick_used
        if current:
            _bump("choice_changed_count_by_user")

        choices[uid] = {
            "place_id": place_id,
            "rank": candidate.get("rank"),
            "chosen_at": now.isoformat(),
            "source": action,
        }
        match.place_choice_by_user = choices
        match.telemetry = telemetry
        match.updated_at = now

        other = choices.get(match.user2_uid if uid == match.user1_uid else match.user1_uid)
        both_same = bool(other and other.get("place_id") == place_id)
        result: dict[str, Any] = {
            "success": True,
            "action": "changed" if current else "chosen",
            "chosen_place_id": place_id,
            "both_chose_same": both_same,
        }
        if both_same:
            result["resolution"] = _resolve_in_txn(db, match, now)
        return result

    return database.run_in_transaction(_txn)


def resolve_place(uid: str, match_id: str, now: datetime | None = None) -> dict[str, Any]:
    now = now or _now_utc()

    def _txn(db: Session) -> tuple[dict[str, Any], tuple[str, str]]:
        match = load_match_for_participant(db, uid, match_id)
        pair = (match.user1_uid, match.user2_uid)
        if match.confirmed_place_id:
            return {
                "success": True,
                "already_confirmed": True,
                "confirmed_place": _confirmed_payload(match),
                "resolution_reason": match.place_resolution_reason,
            }, pair
        if match.status != "location_deciding":
            raise FailedPrecondition("Match is not deciding on a place", code="DECISION_CLOSED")
        return _resolve_in_txn(db, match, now), pair

    result, pair = database.run_in_transaction(_txn)
    if result.get("cancelled"):
        _notify_no_places(match_id, pair)
    return result


def resolve_expired_decision(match_id: str, now: datetime | None = None) -> str | None:
    """Resolve a lapsed decision window. Returns the resolution reason, if any."""
    now = now or _now_utc()

    def _txn(db: Session) -> tuple[dict[str, Any] | None, tuple[str, str] | None]:
        match = db.get(Match, match_id)
        if match is None or match.confirmed_place_id or match.status != "location_deciding":
            return None, None
        return _resolve_in_txn(db, match, now), (match.user1_uid, match.user2_uid)

    result, pair = database.run_in_transaction(_txn)
    if result is None:
        return None
    if result.get("cancelled"):
        _notify_no_places(match_id, pair)
        return NO_PLACES_REASON
    return result["resolution_reason"]


def add_custom_place(
    uid: str,
    match_id: str,
    name: str,
    address: str,
    lat: float,
    lng: float,
    place_id: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    if not name or not name.strip():
        raise InvalidArgument("Valid custom place data is required")
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0):
        raise InvalidArgument("Invalid coordinates")
    now = now or _now_utc()

    def _txn(db: Session) -> dict[str, Any]:
        match = load_match_for_participant(db, uid, match_id)
        if match.status != "location_deciding":
            raise FailedPrecondition("Location decision has already ended", code="DECISION_CLOSED")

        final_id = place_id or f"custom_{uuid.uuid4().hex}"
        place = db.get(Place, final_id)
        if place is None:
            place = Place(
                id=final_id,
                name=name.strip(),
                address=address or "",
                category="custom",
                lat=lat,
                lng=lng,
                geohash=encode_geohash(lat, lng),
                is_active=True,
                allowed_activities=[match.activity] if match.activity else [],
                source="user_custom",
                created_by=uid,
                times_selected=0,
                created_at=now,
                updated_at=now,
            )
            db.add(place)
        else:
            place.updated_at = now

        candidates = list(match.place_candidates or [])
        candidate = _find(candidates, final_id)
        if candidate is None:
            center = _center_for(db, match)
            candidate = {
                "place_id": final_id,
                "name": place.name,
                "address": place.address,
                "lat": place.lat,
                "lng": place.lng,
                "distance": round(haversine(center[0], center[1], place.lat, place.lng)),
                "rank": max((c.get("rank", 0) for c in candidates), default=0) + 1,
                "tags": list(place.tags or []),
                "price_level": place.price_level,
                "photo_url": place.photo_url,
            }
            candidates.append(candidate)
            match.place_candidates = candidates

        choices = dict(match.place_choice_by_user or {})
        choices[uid] = {
            "place_id": final_id,
            "rank": candidate["rank"],
            "chosen_at": now.isoformat(),
            "source": "custom",
        }
        match.place_choice_by_user = choices
        match.updated_at = now
        log_product_event(db, "place_custom_added", user_id=uid, properties={"match_id": match.id, "place_id": final_id})
        return {"success": True, "place_id": final_id, "candidate": candidate, "candidates": candidates}

    return database.run_in_transaction(_txn)
