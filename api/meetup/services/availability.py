import logging
from datetime import datetime, timezone
from typing import Any

from .. import database
from ..config import PLACES_SEARCH_RADII_KM
from ..models import PresenceSession
from .places import get_place_candidates

logger = logging.getLogger(__name__)


def _unavailable(code: str, message: str, activity: str | None, radii: list[float], actions: list[str]) -> dict[str, Any]:
    return {
        "available": False,
        "candidate_count": 0,
        "code": code,
        "message": message,
        "details": {"activity": activity, "radius_tried_km": radii, "suggested_actions": actions},
    }


def check_availability(uid: str, activity: str | None = None, now: datetime | None = None) -> dict[str, Any]:
    """Whether any open place sits near the caller's current presence location.

    Read-only; lets the client steer the user away from a search that cannot
    end in a meetup.
    """
    now = now or datetime.now(timezone.utc)
    with database.SessionLocal() as db:
        presence = db.get(PresenceSession, uid)
        if presence is None or presence.lat is None or presence.lng is None:
            return _unavailable(
                "LOCATION_MISSING",
                "Unable to determine your location. Please enable location services.",
                activity,
                [],
                ["enable_location"],
            )
        if presence.expires_at <= now and presence.status != "matched":
            return _unavailable(
                "LOCATION_STALE",
                "Your location is outdated. Please refresh the app.",
                activity,
                [],
                ["refresh_location"],
            )
        activity = activity or presence.activity
        candidates = get_place_candidates(db, (presence.lat, presence.lng), activity, now)

    if not candidates:
        radii = list(PLACES_SEARCH_RADII_KM)
        logger.info(f"[availability] no places for {uid} ({activity}) within {radii[-1] if radii else 0}km")
        return _unavailable(
            "NO_PLACES_AVAILABLE",
            f"No meetup spots found nearby for {activity}.",
            activity,
            radii,
            ["switch_activity", "expand_radius"],
        )
    return {"available": True, "candidate_count": len(candidates), "code": "OK"}
