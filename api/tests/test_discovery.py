from datetime import timedelta

import pytest

from meetup import database
from meetup.models import Match, PresenceSession, Suggestion
from meetup.services import discovery, offers
from meetup.services.errors import FailedPrecondition
from meetup.services.safety import block_user

from conftest import NOW


def test_score_components():
    assert discovery.distance_score(150) == 1.0
    assert discovery.distance_score(600) == 0.5
    assert discovery.distance_score(4000) == pytest.approx(0.2)
    assert discovery.distance_score(6000) == 0.0
    assert discovery.interest_score(["a", "b", "c", "d"], ["a", "b", "c"]) == 1.0
    assert discovery.interest_score(["a"], ["b"]) == 0.0
    assert discovery.duration_score(60, 60) == 1.0
    assert discovery.duration_score(60, 90) == 0.7
    assert discovery.duration_score(60, 180) == 0.0
    assert discovery.fairness_score(20) == 0.2
    assert discovery.urgency_score(NOW + timedelta(minutes=10), NOW) == 1.0
    assert discovery.urgency_score(None, NOW) == 0.5


@pytest.fixture
def neighbourhood(make_user, start):
    make_user("alice", interests=["music", "art", "tech"])
    make_user("bob", interests=["music", "art"])
    make_user("carol")
    make_user("dave")
    start("alice")
    start("bob", north_km=0.1)
    start("carol", east_km=3.0)
    start("dave", activity="food", north_km=0.05)


def test_closest_compatible_person_comes_first(neighbourhood):
    res = discovery.get_next_suggestion("alice", now=NOW)
    suggestion = res["suggestion"]
    assert suggestion["uid"] == "bob"
    assert suggestion["explanation"] == "~2-3 min walk away"
    assert suggestion["interests"] == ["music", "art"]
    assert res["cycle_info"] == {"total": 2, "current": 1, "is_new_cycle": False}


def test_passing_walks_through_the_pool_then_restarts(neighbourhood, get_row):
    discovery.pass_suggestion("alice", "bob", now=NOW)
    second = discovery.get_next_suggestion("alice", now=NOW)
    assert second["suggestion"]["uid"] == "carol"
    assert second["cycle_info"]["current"] == 2

    discovery.pass_suggestion("alice", "carol", now=NOW)
    third = discovery.get_next_suggestion("alice", now=NOW)
    assert third["cycle_info"]["is_new_cycle"] is True
    # The person just passed goes to the back of the new cycle.
    assert third["suggestion"]["uid"] == "bob"
    assert get_row(PresenceSession, "alice").seen_uids == []


def test_refresh_starts_over(neighbourhood):
    discovery.pass_suggestion("alice", "bob", now=NOW)
    res = discovery.get_next_suggestion("alice", action="refresh", now=NOW)
    assert res["cycle_info"]["current"] == 1


def _ranked(uid, at):
    with database.SessionLocal() as db:
        me = db.get(PresenceSession, uid)
        return [c.uid for c in discovery.rank_candidates(db, me, at)]


def _reject(from_uid, to_uid, at):
    with database.SessionLocal() as db:
        db.add(Suggestion(id=f"{from_uid}_{to_uid}", from_uid=from_uid, to_uid=to_uid, action="reject", created_at=at))
        db.commit()


def test_blocked_and_rejected_people_are_hidden(neighbourhood):
    block_user("carol", "alice", now=NOW)
    assert discovery.get_next_suggestion("alice", now=NOW)["cycle_info"]["total"] == 1

    _reject("bob", "alice", NOW)
    res = discovery.get_next_suggestion("alice", now=NOW + timedelta(minutes=1))
    assert res["suggestion"] is None
    assert res["message"]


def test_pending_offer_target_is_hidden(neighbourhood, make_place):
    make_place("cafe", north_km=0.1)
    offers.create_offer("alice", "bob", now=NOW)
    assert _ranked("alice", NOW) == ["carol"]


def test_reject_cooldown_wears_off(neighbourhood):
    _reject("bob", "alice", NOW)
    assert "bob" not in _ranked("alice", NOW + timedelta(minutes=30))
    assert "bob" in _ranked("alice", NOW + timedelta(hours=6, minutes=1))


def test_recently_expired_offer_target_is_pushed_down(neighbourhood, update_row):
    assert _ranked("alice", NOW) == ["bob", "carol"]
    update_row(PresenceSession, "alice", recently_expired_offer_uids=["bob"])
    assert _ranked("alice", NOW) == ["carol", "bob"]


def test_browsing_requires_presence(make_user):
    make_user("alice")
    with pytest.raises(FailedPrecondition) as exc:
        discovery.get_next_suggestion("alice", now=NOW)
    assert exc.value.code == "PRESENCE_REQUIRED"


def test_mutual_accept_creates_a_match(neighbourhood, get_row, all_rows, pushes):
    assert discovery.respond_suggestion("alice", "bob", "accept", now=NOW) == {"match_created": False}
    res = discovery.respond_suggestion("bob", "alice", "accept", now=NOW + timedelta(seconds=5))

    assert res["match_created"] is True
    match = get_row(Match, res["match_id"])
    assert match.activity == "coffee"
    assert all_rows(Suggestion) == []
    assert pushes.types_for("alice") == ["match_created"]

    with pytest.raises(FailedPrecondition) as exc:
        discovery.get_next_suggestion("alice", now=NOW + timedelta(seconds=6))
    assert exc.value.code == "ALREADY_MATCHED"


def test_pass_does_not_match(neighbourhood, get_row):
    discovery.respond_suggestion("alice", "bob", "accept", now=NOW)
    res = discovery.respond_suggestion("bob", "alice", "pass", now=NOW)
    assert res == {"match_created": False}
    assert get_row(Suggestion, "bob_alice").action == "pass"


def test_respond_to_blocked_user(neighbourhood):
    block_user("bob", "alice", now=NOW)
    with pytest.raises(FailedPrecondition) as exc:
        discovery.respond_suggestion("alice", "bob", "accept", now=NOW)
    assert exc.value.code == "BLOCKED"
