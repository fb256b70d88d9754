from datetime import timedelta

import pytest

from meetup.models import Match, Offer, PairGuard, UserBlock, UserReliability
from meetup.services import offers
from meetup.services.errors import InvalidArgument, NotFound
from meetup.services.safety import block_user

from conftest import NOW


def test_block_cancels_shared_match(pair, make_match, get_row):
    match_id = make_match("alice", "bob")

    res = block_user("alice", "bob", now=NOW + timedelta(minutes=5))

    assert res == {"success": True, "matches_cancelled": 1, "offers_cancelled": 0}
    assert get_row(UserBlock, ("alice", "bob")) is not None
    match = get_row(Match, match_id)
    assert match.status == "cancelled"
    assert match.cancelled_by == "system"
    assert match.cancellation_reason == "blocked"
    assert match.cancellation_penalty == 0.0
    assert get_row(UserReliability, "alice") is None
    assert get_row(PairGuard, "alice_bob") is None


def test_block_cancels_pending_offers_between_the_two(pair, make_place, get_row):
    make_place("cafe", north_km=0.1)
    sent = offers.create_offer("alice", "bob", now=NOW)

    res = block_user("bob", "alice", now=NOW + timedelta(seconds=30))

    assert res["offers_cancelled"] == 1
    offer = get_row(Offer, sent["offer_id"])
    assert offer.status == "cancelled"
    assert offer.close_reason == "blocked"


def test_block_is_idempotent(pair):
    block_user("alice", "bob", now=NOW)
    again = block_user("alice", "bob", now=NOW)
    assert again["matches_cancelled"] == 0


def test_block_validation(pair):
    with pytest.raises(InvalidArgument):
        block_user("alice", "alice", now=NOW)
    with pytest.raises(InvalidArgument):
        block_user("alice", "", now=NOW)
    with pytest.raises(NotFound):
        block_user("alice", "ghost", now=NOW)
