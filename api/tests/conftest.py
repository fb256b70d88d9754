import math
import os
from datetime import datetime, timezone

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET", "test-secret-key")

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from meetup import database
from meetup.config import DEFAULT_LOCATION
from meetup.models import Place, UserAccount
from meetup.services import notifications
from meetup.services import place_negotiation
from meetup.services import presence as presence_service
from meetup.services.geo import encode_geohash
from meetup.services.match_guard import create_match_atomic
from meetup.services.rate_limit import limiter

# Tuesday noon in New York.
NOW = datetime(2026, 3, 10, 16, 0, tzinfo=timezone.utc)
KM_PER_DEG_LAT = 111.32


def offset(north_km: float = 0.0, east_km: float = 0.0) -> tuple[float, float]:
    lat0, lng0 = DEFAULT_LOCATION
    lat = lat0 + north_km / KM_PER_DEG_LAT
    lng = lng0 + east_km / (KM_PER_DEG_LAT * math.cos(math.radians(lat0)))
    return lat, lng


class RecordingDispatcher:
    def __init__(self):
        self.sent = []

    def send(self, user_id, push_token, title, body, data):
        self.sent.append({"user_id": user_id, "title": title, "body": body, "data": data})

    def types_for(self, user_id):
        return [m["data"]["type"] for m in self.sent if m["user_id"] == user_id]


@pytest.fixture(autouse=True)
def sqlite_db(monkeypatch):
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    database.Base.metadata.create_all(bind=engine)
    monkeypatch.setattr(database, "SessionLocal", factory)
    limiter.reset()
    yield factory
    database.Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(autouse=True)
def pushes(monkeypatch):
    dispatcher = RecordingDispatcher()
    monkeypatch.setattr(notifications, "_dispatcher", dispatcher)
    return dispatcher


@pytest.fixture
def get_row():
    def _get(model, pk):
        with database.SessionLocal() as db:
            return db.get(model, pk)

    return _get


@pytest.fixture
def all_rows():
    def _all(model):
        with database.SessionLocal() as db:
            return list(db.execute(select(model)).scalars())

    return _all


@pytest.fixture
def update_row():
    def _update(model, pk, **values):
        with database.SessionLocal() as db:
            row = db.get(model, pk)
            for key, value in values.items():
                setattr(row, key, value)
            db.commit()

    return _update


@pytest.fixture
def make_user():
    def _make(uid, interests=(), verified=True, display_name=None):
        with database.SessionLocal() as db:
            db.add(
                UserAccount(
                    id=uid,
                    email=f"{uid}@example.com",
                    display_name=display_name or uid.title(),
                    interests=list(interests),
                    is_email_verified=verified,
                )
            )
            db.commit()
        return uid

    return _make


@pytest.fixture
def make_place():
    def _make(place_id, north_km=0.0, east_km=0.0, activities=(), opening_hours=None, active=True):
        lat, lng = offset(north_km, east_km)
        with database.SessionLocal() as db:
            db.add(
                Place(
                    id=place_id,
                    name=place_id.replace("_", " ").title(),
                    address=f"{place_id} street",
                    category="cafe",
                    lat=lat,
                    lng=lng,
                    geohash=encode_geohash(lat, lng),
                    is_active=active,
                    allowed_activities=list(activities),
                    opening_hours=opening_hours,
                    tags=[],
                    source="seed",
                )
            )
            db.commit()
        return place_id

    return _make


@pytest.fixture
def start():
    def _start(uid, activity="coffee", duration=60, north_km=0.0, east_km=0.0, at=NOW):
        lat, lng = offset(north_km, east_km)
        return presence_service.start_presence(uid, activity, duration, lat, lng, now=at)

    return _start


@pytest.fixture
def make_match():
    def _make(uid_a, uid_b, activity="coffee", at=NOW):
        creation = database.run_in_transaction(lambda db: create_match_atomic(db, uid_a, uid_b, activity, at))
        return creation.match_id

    return _make


@pytest.fixture
def pair(make_user, start):
    """alice and bob, both available for coffee a couple of blocks apart."""
    make_user("alice", interests=["music", "art", "tech"])
    make_user("bob", interests=["music", "art"])
    start("alice")
    start("bob", north_km=0.2)
    return "alice", "bob"


@pytest.fixture
def place_confirmed_match(pair, make_place, make_match):
    make_place("cafe_one", north_km=0.1)
    make_place("cafe_two", north_km=0.6)
    match_id = make_match("alice", "bob")
    place_negotiation.fetch_places("alice", match_id, now=NOW)
    place_negotiation.set_place_choice("alice", match_id, "cafe_one", now=NOW)
    place_negotiation.set_place_choice("bob", match_id, "cafe_one", now=NOW)
    return match_id
