import logging
from datetime import timedelta

import pytest

from meetup import database, jobs
from meetup.models import Match, Offer, PairGuard, PresenceSession
from meetup.services import offers, place_negotiation
from meetup.services.idempotency import MinimalResult, mark_idempotency_complete_in_txn

from conftest import NOW


@pytest.fixture
def trio(make_user, make_place, start):
    make_place("cafe", north_km=0.1)
    for uid in ("alice", "bob", "carol"):
        make_user(uid)
    start("alice", duration=15)
    start("bob")
    start("carol", east_km=0.3)


def test_expire_stale_offers(trio, get_row):
    sent = offers.create_offer("alice", "bob", now=NOW)
    assert jobs.expire_stale_offers(now=NOW + timedelta(minutes=5)) == 0
    assert jobs.expire_stale_offers(now=NOW + timedelta(minutes=10)) == 1
    assert get_row(Offer, sent["offer_id"]).status == "expired"


def test_one_bad_offer_does_not_stop_the_batch(trio, monkeypatch, get_row):
    first = offers.create_offer("alice", "bob", now=NOW)
    second = offers.create_offer("carol", "bob", now=NOW + timedelta(seconds=1))
    real = jobs.expire_offer_if_stale

    def flaky(offer_id, now):
        if offer_id == first["offer_id"]:
            raise RuntimeError("boom")
        return real(offer_id, now)

    monkeypatch.setattr(jobs, "expire_offer_if_stale", flaky)

    assert jobs.expire_stale_offers(now=NOW + timedelta(minutes=11)) == 1
    assert get_row(Offer, first["offer_id"]).status == "pending"
    assert get_row(Offer, second["offer_id"]).status == "expired"


def test_lapsed_available_presence_is_removed(trio, get_row):
    sent = offers.create_offer("alice", "bob", now=NOW)

    assert jobs.cleanup_expired_presence(now=NOW + timedelta(minutes=21)) == 1

    assert get_row(PresenceSession, "alice") is None
    assert get_row(PresenceSession, "bob") is not None
    offer = get_row(Offer, sent["offer_id"])
    assert offer.status == "cancelled"
    assert offer.close_reason == "presence_expired"


def test_lapsed_presence_cancels_undecided_match(pair, make_place, make_match, get_row):
    make_place("cafe", north_km=0.1)
    match_id = make_match("alice", "bob")
    place_negotiation.fetch_places("alice", match_id, now=NOW)

    assert jobs.cleanup_expired_presence(now=NOW + timedelta(hours=2, minutes=1)) == 1

    match = get_row(Match, match_id)
    assert match.status == "cancelled"
    assert match.cancelled_by == "system"
    assert match.cancellation_reason == "system_presence_expired"
    assert get_row(PairGuard, "alice_bob") is None
    # Pre-match expiry already passed, so nothing is handed back.
    assert get_row(PresenceSession, "alice") is None
    assert get_row(PresenceSession, "bob") is None


def test_stale_pending_matches_time_out(pair, make_match, get_row):
    match_id = make_match("alice", "bob")
    assert jobs.cleanup_stale_pending_matches(now=NOW + timedelta(minutes=14)) == 0
    assert jobs.cleanup_stale_pending_matches(now=NOW + timedelta(minutes=16)) == 1

    match = get_row(Match, match_id)
    assert match.status == "cancelled"
    assert match.cancellation_reason == "timeout_pending"
    assert get_row(PresenceSession, "alice").status == "available"


def _seed_records(n, created):
    result = MinimalResult(primary_id="x")
    database.run_in_transaction(
        lambda db: [
            mark_idempotency_complete_in_txn(db, "u1", "offerCreate", f"req-{i}", result, created) for i in range(n)
        ]
    )


def test_idempotency_purge_warns_on_backlog(caplog):
    _seed_records(3, NOW - timedelta(hours=3))
    with caplog.at_level(logging.WARNING, logger="meetup.jobs"):
        assert jobs.cleanup_idempotency_records(now=NOW, batch_size=2) == 2
    assert "backlog" in caplog.text
    assert jobs.cleanup_idempotency_records(now=NOW, batch_size=2) == 1


def test_run_all_jobs_reports_every_sweep():
    report = jobs.run_all_jobs(now=NOW)
    assert report == {
        "offers_expired": 0,
        "presence_cleaned": 0,
        "stale_pending_cancelled": 0,
        "location_decisions_resolved": 0,
        "confirmations_dismissed": 0,
        "idempotency_purged": 0,
    }
