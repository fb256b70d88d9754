import math
import random
import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from meetup.auth.security import hash_password
from meetup.config import ACTIVITY_CATEGORIES, DEFAULT_LOCATION
from meetup.models import Place, UserAccount
from meetup.services.geo import encode_geohash

PLACE_KINDS = {
    "cafe": {"activities": ["coffee", "study"], "names": ["Bean", "Roast", "Brew", "Grind", "Espresso"]},
    "restaurant": {"activities": ["food"], "names": ["Kitchen", "Diner", "Noodle Bar", "Taqueria", "Bistro"]},
    "library": {"activities": ["study"], "names": ["Library", "Reading Room", "Study Hall"]},
    "park": {"activities": ["explore", "sports", "other"], "names": ["Park", "Square", "Pier", "Green"]},
    "venue": {"activities": ["event", "other"], "names": ["Hall", "Loft", "Gallery", "Stage"]},
}
INTERESTS = ["music", "art", "tech", "books", "film", "hiking", "food", "games", "running", "design"]
DEFAULT_HOURS = {day: [["08:00", "22:00"]] for day in ("mon", "tue", "wed", "thu", "fri", "sat", "sun")}


def _offset(center: tuple[float, float], rng: random.Random, max_km: float) -> tuple[float, float]:
    distance_km = max_km * math.sqrt(rng.random())
    bearing = rng.uniform(0, 2 * math.pi)
    dlat = (distance_km / 111.32) * math.cos(bearing)
    dlng = (distance_km / (111.32 * math.cos(math.radians(center[0])))) * math.sin(bearing)
    return round(center[0] + dlat, 6), round(center[1] + dlng, 6)


def seed_places(
    db: Session,
    n_places: int = 60,
    seed: int = 42,
    reset: bool = False,
    center: tuple[float, float] = DEFAULT_LOCATION,
    max_km: float = 4.0,
) -> dict[str, Any]:
    rng = random.Random(seed)
    if reset:
        db.execute(delete(Place).where(Place.source == "seed"))

    now = datetime.now(timezone.utc)
    created = 0
    kinds = list(PLACE_KINDS)
    for idx in range(n_places):
        kind = kinds[idx % len(kinds)]
        profile = PLACE_KINDS[kind]
        place_id = f"seed_{seed}_{idx:04d}"
        if db.get(Place, place_id) is not None:
            continue
        lat, lng = _offset(center, rng, max_km)
        db.add(
            Place(
                id=place_id,
                name=f"{rng.choice(profile['names'])} #{idx + 1}",
                address=f"{rng.randint(1, 400)} {rng.choice(['Broadway', 'Bleecker St', 'W 4th St', 'Houston St'])}",
                category=kind,
                lat=lat,
                lng=lng,
                geohash=encode_geohash(lat, lng),
                is_active=True,
                allowed_activities=list(profile["activities"]),
                opening_hours=None if kind == "park" else DEFAULT_HOURS,
                tags=[kind],
                price_level=rng.randint(1, 3) if kind in ("cafe", "restaurant") else None,
                source="seed",
                created_at=now,
                updated_at=now,
            )
        )
        created += 1
    db.commit()
    return {"places_created": created, "activities": ",".join(ACTIVITY_CATEGORIES)}


def seed_demo_users(db: Session, n_users: int = 10, seed: int = 42, password: str = "meetup123") -> dict[str, Any]:
    rng = random.Random(seed)
    password_hash = hash_password(password)
    created = 0
    for idx in range(n_users):
        email = f"demo{idx + 1}@example.com"
        exists = db.execute(select(UserAccount.id).where(UserAccount.email == email)).first()
        if exists:
            continue
        db.add(
            UserAccount(
                id=str(uuid.uuid4()),
                email=email,
                password_hash=password_hash,
                display_name=f"Demo {idx + 1}",
                interests=rng.sample(INTERESTS, k=3),
                is_email_verified=True,
            )
        )
        created += 1
    db.commit()
    return {"users_created": created, "password": password}
