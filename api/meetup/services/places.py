from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Iterable
from zoneinfo import ZoneInfo

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from ..config import PLACES_HARD_CAP, PLACES_SEARCH_RADII_KM, PLACES_SOFT_MIN, PLACES_TIMEZONE
from ..models import Place
from .geo import geohash_query_prefixes, haversine

logger = logging.getLogger(__name__)

WEEKDAY_KEYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")


@dataclass
class PlaceCandidate:
    place_id: str
    name: str
    address: str
    lat: float
    lng: float
    distance: int
    rank: int = 0
    tags: list[str] = field(default_factory=list)
    price_level: int | None = None
    photo_url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _minutes(hhmm: str) -> int:
    hours, minutes = hhmm.split(":", 1)
    return int(hours) * 60 + int(minutes)


def is_open_at(opening_hours: dict[str, Any] | None, now: datetime, tz: str = PLACES_TIMEZONE) -> bool:
    """Opening hours map weekday keys to ``[["08:00", "22:00"], ...]`` ranges.

    A place without opening-hours data is treated as always open. A range whose
    close time is not after its open time runs past midnight.
    """
    if not opening_hours:
        return True
    local = now.astimezone(ZoneInfo(tz))
    minute_of_day = local.hour * 60 + local.minute
    today = WEEKDAY_KEYS[local.weekday()]
    yesterday = WEEKDAY_KEYS[(local.weekday() - 1) % 7]

    for open_s, close_s in opening_hours.get(today) or []:
        start, end = _minutes(open_s), _minutes(close_s)
        if end <= start:
            if minute_of_day >= start:
                return True
        elif start <= minute_of_day < end:
            return True

    for open_s, close_s in opening_hours.get(yesterday) or []:
        start, end = _minutes(open_s), _minutes(close_s)
        if end <= start and minute_of_day < end:
            return True
    return False


def _fetch_within_radius(
    db: Session,
    center: tuple[float, float],
    radius_km: float,
    activity: str | None,
    now: datetime,
) -> list[PlaceCandidate]:
    radius_m = radius_km * 1000
    prefixes = geohash_query_prefixes(center[0], center[1], radius_m)
    cell_filters = [and_(Place.geohash >= p, Place.geohash < p + "~") for p in prefixes]
    rows: Iterable[Place] = db.execute(
        select(Place).where(Place.is_active.is_(True), or_(*cell_filters))
    ).scalars()

    out: list[PlaceCandidate] = []
    seen: set[str] = set()
    for place in rows:
        if place.id in seen:
            continue
        seen.add(place.id)

        distance_m = haversine(center[0], center[1], place.lat, place.lng)
        if distance_m > radius_m:
            continue
        allowed = place.allowed_activities or []
        if activity and allowed and activity not in allowed:
            continue
        if not is_open_at(place.opening_hours, now):
            continue

        out.append(
            PlaceCandidate(
                place_id=place.id,
                name=place.name,
                address=place.address or "",
                lat=place.lat,
                lng=place.lng,
                distance=round(distance_m),
                tags=list(place.tags or []),
                price_level=place.price_level,
                photo_url=place.photo_url,
            )
        )

    out.sort(key=lambda c: (c.distance, c.place_id))
    return out


def get_place_candidates(
    db: Session,
    center: tuple[float, float],
    activity: str | None,
    now: datetime,
    hard_cap: int = PLACES_HARD_CAP,
    soft_min: int = PLACES_SOFT_MIN,
    radii_km: Iterable[float] = PLACES_SEARCH_RADII_KM,
) -> list[PlaceCandidate]:
    """Nearest open places for an activity, widening the radius until soft_min is met."""
    found: list[PlaceCandidate] = []
    for radius_km in radii_km:
        found = _fetch_within_radius(db, center, radius_km, activity, now)
        if len(found) >= soft_min:
            logger.debug(f"[places] {len(found)} candidates at {radius_km}km")
            break
        logger.debug(f"[places] only {len(found)} candidates at {radius_km}km, expanding")

    ranked = found[:hard_cap]
    for idx, candidate in enumerate(ranked):
        candidate.rank = idx + 1
    return ranked


def has_any_place(db: Session, center: tuple[float, float], activity: str | None, now: datetime) -> bool:
    return bool(get_place_candidates(db, center, activity, now, hard_cap=1, soft_min=1))
