from datetime import datetime, timezone

from meetup import database
from meetup.config import DEFAULT_LOCATION
from meetup.services.places import get_place_candidates, has_any_place, is_open_at

from conftest import NOW


def test_opening_hours_windows():
    assert is_open_at(None, NOW)
    assert is_open_at({"tue": [["08:00", "22:00"]]}, NOW)
    assert not is_open_at({"tue": [["13:00", "22:00"]]}, NOW)
    assert not is_open_at({"wed": [["00:00", "23:59"]]}, NOW)


def test_opening_hours_past_midnight():
    # 01:00 Tuesday in New York
    late = datetime(2026, 3, 10, 5, 0, tzinfo=timezone.utc)
    assert is_open_at({"mon": [["20:00", "02:00"]]}, late)
    assert not is_open_at({"mon": [["20:00", "00:30"]]}, late)


def test_candidates_expand_radius_until_soft_minimum(make_place):
    for i, km in enumerate((0.5, 1.0, 1.5)):
        make_place(f"near_{i}", north_km=km)
    for i, km in enumerate((2.3, 2.4, 2.5, 2.6, 2.7)):
        make_place(f"mid_{i}", north_km=-km)
    make_place("far_0", east_km=4.5)

    with database.SessionLocal() as db:
        found = get_place_candidates(db, DEFAULT_LOCATION, "coffee", NOW)

    ids = [c.place_id for c in found]
    assert len(found) == 8
    assert "far_0" not in ids
    assert ids[:3] == ["near_0", "near_1", "near_2"]
    assert [c.rank for c in found] == list(range(1, 9))
    assert all(a.distance <= b.distance for a, b in zip(found, found[1:]))


def test_candidates_respect_cap_activity_and_hours(make_place):
    for i in range(12):
        make_place(f"cafe_{i:02d}", north_km=0.1 * (i + 1))
    make_place("diner", north_km=0.05, activities=["food"])
    make_place("closed", north_km=0.05, opening_hours={"tue": [["18:00", "23:00"]]})
    make_place("inactive", north_km=0.05, active=False)

    with database.SessionLocal() as db:
        found = get_place_candidates(db, DEFAULT_LOCATION, "coffee", NOW)
        food = get_place_candidates(db, DEFAULT_LOCATION, "food", NOW)

    ids = [c.place_id for c in found]
    assert len(found) == 9
    assert ids[0] == "cafe_00"
    assert not {"diner", "closed", "inactive"} & set(ids)
    assert food[0].place_id == "diner"


def test_has_any_place(make_place):
    with database.SessionLocal() as db:
        assert not has_any_place(db, DEFAULT_LOCATION, "coffee", NOW)
    make_place("cafe", east_km=4.0)
    with database.SessionLocal() as db:
        assert has_any_place(db, DEFAULT_LOCATION, "coffee", NOW)
