from datetime import timedelta

from meetup import database
from meetup.models import Match, PairGuard, PresenceSession
from meetup.services.match_guard import canonical_pair, create_match_atomic, pair_key, release_match_guard

from conftest import NOW


def _create(uid_a, uid_b, at=NOW):
    return database.run_in_transaction(lambda db: create_match_atomic(db, uid_a, uid_b, "coffee", at))


def test_pair_key_is_order_independent():
    assert canonical_pair("bob", "alice") == ("alice", "bob")
    assert pair_key("bob", "alice") == pair_key("alice", "bob") == "alice_bob"


def test_create_claims_both_presences(pair, get_row):
    creation = _create("bob", "alice")

    assert creation.is_new
    match = get_row(Match, creation.match_id)
    assert (match.user1_uid, match.user2_uid) == ("alice", "bob")
    assert match.status == "pending"
    assert match.status_by_user == {"alice": "pending", "bob": "pending"}
    guard = get_row(PairGuard, "alice_bob")
    assert guard.match_id == match.id
    assert guard.expires_at == NOW + timedelta(hours=2)
    for uid in pair:
        presence = get_row(PresenceSession, uid)
        assert presence.status == "matched"
        assert presence.match_id == match.id
        assert presence.original_expires_at == NOW + timedelta(minutes=65)
        assert presence.expires_at == NOW + timedelta(hours=2)


def test_duplicate_trigger_returns_existing_match(pair, all_rows):
    first = _create("alice", "bob")
    second = _create("bob", "alice", at=NOW + timedelta(seconds=1))
    assert second.match_id == first.match_id
    assert second.is_new is False
    assert len(all_rows(Match)) == 1


def test_user_already_in_another_match_gets_that_match(pair, make_user, start):
    make_user("carol")
    start("carol")
    first = _create("alice", "bob")
    other = _create("alice", "carol")
    assert other.match_id == first.match_id
    assert other.is_new is False


def test_stale_guard_is_overwritten(pair, update_row, get_row):
    first = _create("alice", "bob")
    update_row(Match, first.match_id, status="cancelled")

    second = _create("alice", "bob", at=NOW + timedelta(minutes=5))

    assert second.is_new
    assert second.match_id != first.match_id
    assert get_row(PairGuard, "alice_bob").match_id == second.match_id
    assert get_row(PresenceSession, "alice").match_id == second.match_id


def test_release_only_when_guard_points_at_match(pair, get_row):
    creation = _create("alice", "bob")
    assert release_match_guard("someone-else", "alice", "bob") is False
    assert get_row(PairGuard, "alice_bob") is not None
    assert release_match_guard(creation.match_id, "bob", "alice") is True
    assert get_row(PairGuard, "alice_bob") is None
    assert release_match_guard(creation.match_id, "alice", "bob") is False
