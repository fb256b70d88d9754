from datetime import timedelta

import pytest

from meetup import jobs
from meetup.models import Match, PairGuard, PresenceSession, UserReliability
from meetup.services import matches
from meetup.services.errors import InvalidArgument
from meetup.services.meeting_confirmation import confirm_meeting

from conftest import NOW

LAPSE = NOW + timedelta(hours=3)


@pytest.fixture
def lapsed_match(place_confirmed_match):
    """Both arrived, then the presences ran out before anyone tapped completed."""
    for uid in ("alice", "bob"):
        matches.update_match_status(uid, place_confirmed_match, "arrived", now=NOW + timedelta(minutes=20))
    assert jobs.cleanup_expired_presence(now=LAPSE) == 1
    return place_confirmed_match


def test_presence_lapse_asks_for_confirmation(lapsed_match, get_row):
    match = get_row(Match, lapsed_match)
    assert match.status == "expired_pending_confirmation"
    assert sorted(match.pending_confirmation_uids) == ["alice", "bob"]
    assert match.confirmation_requested_at == LAPSE
    assert get_row(PresenceSession, "alice") is None
    assert get_row(PresenceSession, "bob") is None


def test_both_met_completes_the_match(lapsed_match, get_row):
    first = confirm_meeting("alice", lapsed_match, "met", now=LAPSE + timedelta(minutes=5))
    assert first == {"success": True, "resolved": False}

    second = confirm_meeting("bob", lapsed_match, "met", now=LAPSE + timedelta(minutes=6))
    assert second["resolved"] is True
    assert second["status"] == "completed"
    assert second["outcome"] == "both_confirmed"
    assert get_row(UserReliability, "alice").met_confirmed == 1
    assert get_row(PairGuard, "alice_bob") is None


def test_conflicting_answers_are_disputed(lapsed_match, get_row):
    confirm_meeting("alice", lapsed_match, "met", now=LAPSE)
    res = confirm_meeting("bob", lapsed_match, "not_met", now=LAPSE)
    assert (res["status"], res["outcome"]) == ("cancelled", "disputed")
    assert get_row(Match, lapsed_match).cancelled_at == LAPSE


def test_first_answer_sticks(lapsed_match, get_row):
    confirm_meeting("alice", lapsed_match, "met", now=LAPSE)
    assert confirm_meeting("alice", lapsed_match, "not_met", now=LAPSE) == {"success": True, "resolved": False}
    assert get_row(Match, lapsed_match).meeting_confirmation == {"alice": "met"}


def test_silence_is_dismissed_after_the_window(lapsed_match, get_row):
    confirm_meeting("alice", lapsed_match, "met", now=LAPSE)

    assert jobs.cleanup_expired_confirmations(now=LAPSE + timedelta(hours=47)) == 0
    assert jobs.cleanup_expired_confirmations(now=LAPSE + timedelta(hours=49)) == 1

    match = get_row(Match, lapsed_match)
    assert match.status == "cancelled"
    assert match.outcome == "unconfirmed"
    assert match.meeting_confirmation == {"alice": "met", "bob": "dismissed"}
    assert get_row(UserReliability, "bob").expired == 1
    assert get_row(UserReliability, "alice") is None
    assert get_row(PairGuard, "alice_bob") is None


def test_completed_sub_status_counts_as_met(place_confirmed_match, get_row):
    mid = place_confirmed_match
    matches.update_match_status("alice", mid, "completed", now=NOW + timedelta(minutes=20))
    jobs.cleanup_expired_presence(now=LAPSE)

    match = get_row(Match, mid)
    assert match.status == "expired_pending_confirmation"
    assert match.pending_confirmation_uids == ["bob"]

    res = confirm_meeting("bob", mid, "met", now=LAPSE)
    assert res["outcome"] == "both_confirmed"


def test_answer_after_resolution_reports_outcome(lapsed_match):
    confirm_meeting("alice", lapsed_match, "not_met", now=LAPSE)
    confirm_meeting("bob", lapsed_match, "not_met", now=LAPSE)
    late = confirm_meeting("bob", lapsed_match, "met", now=LAPSE)
    assert late == {"success": True, "resolved": True, "status": "cancelled", "outcome": "both_not_met"}


def test_invalid_response(lapsed_match):
    with pytest.raises(InvalidArgument):
        confirm_meeting("alice", lapsed_match, "maybe", now=LAPSE)
