from datetime import timedelta

import pytest

from meetup import database
from meetup.models import IdempotencyRecord
from meetup.services.errors import AlreadyExists, FailedPrecondition
from meetup.services.idempotency import (
    MinimalResult,
    check_idempotency_in_txn,
    idempotency_key,
    mark_idempotency_complete_in_txn,
    purge_expired_records,
    with_idempotency_lock,
)

from conftest import NOW


def _counting(result_id="r-1"):
    calls = []

    def fn():
        calls.append(1)
        return MinimalResult(primary_id=result_id, secondary_ids=["m-1"], flags={"matched": True})

    return fn, calls


def test_duplicate_request_returns_cached_result_without_rerunning(get_row):
    fn, calls = _counting()
    first, cached_first = with_idempotency_lock("u1", "offerRespond", "req-1", fn, now=NOW)
    second, cached_second = with_idempotency_lock("u1", "offerRespond", "req-1", fn, now=NOW + timedelta(seconds=5))

    assert len(calls) == 1
    assert not cached_first and cached_second
    assert second.primary_id == first.primary_id == "r-1"
    assert second.secondary_ids == ["m-1"]
    assert second.flags == {"matched": True}
    record = get_row(IdempotencyRecord, idempotency_key("u1", "offerRespond", "req-1"))
    assert record.status == "completed"
    assert record.expires_at == NOW + timedelta(hours=2)


def test_without_request_id_every_call_runs():
    fn, calls = _counting()
    with_idempotency_lock("u1", "offerRespond", None, fn, now=NOW)
    with_idempotency_lock("u1", "offerRespond", None, fn, now=NOW)
    assert len(calls) == 2


def test_keys_are_scoped_per_user_and_operation():
    fn, calls = _counting()
    with_idempotency_lock("u1", "offerRespond", "req-1", fn, now=NOW)
    with_idempotency_lock("u2", "offerRespond", "req-1", fn, now=NOW)
    with_idempotency_lock("u1", "presenceStart", "req-1", fn, now=NOW)
    assert len(calls) == 3


def _insert_processing(started_at):
    with database.SessionLocal() as db:
        db.add(
            IdempotencyRecord(
                key=idempotency_key("u1", "offerRespond", "req-1"),
                user_id="u1",
                operation="offerRespond",
                request_id="req-1",
                status="processing",
                created_at=started_at,
                expires_at=started_at + timedelta(hours=2),
                processing_started_at=started_at,
            )
        )
        db.commit()


def test_request_in_flight_is_rejected():
    _insert_processing(NOW - timedelta(seconds=10))
    fn, calls = _counting()
    with pytest.raises(AlreadyExists) as exc:
        with_idempotency_lock("u1", "offerRespond", "req-1", fn, now=NOW)
    assert exc.value.code == "DUPLICATE_IN_PROGRESS"
    assert calls == []


def test_stale_lock_is_taken_over():
    _insert_processing(NOW - timedelta(seconds=120))
    fn, calls = _counting()
    result, cached = with_idempotency_lock("u1", "offerRespond", "req-1", fn, now=NOW)
    assert not cached
    assert result.primary_id == "r-1"
    assert len(calls) == 1


def test_failed_attempt_can_be_retried(get_row):
    def boom():
        raise FailedPrecondition("nope", code="OFFER_EXPIRED")

    with pytest.raises(FailedPrecondition):
        with_idempotency_lock("u1", "offerRespond", "req-1", boom, now=NOW)
    record = get_row(IdempotencyRecord, idempotency_key("u1", "offerRespond", "req-1"))
    assert record.status == "failed"
    assert record.error == "nope"

    fn, calls = _counting()
    result, cached = with_idempotency_lock("u1", "offerRespond", "req-1", fn, now=NOW)
    assert not cached and len(calls) == 1


def test_transaction_scoped_helpers():
    result = MinimalResult(primary_id="o-1", flags={"match_created": False})

    def write(db):
        assert check_idempotency_in_txn(db, "u1", "offerCreate", "req-9", NOW) is None
        mark_idempotency_complete_in_txn(db, "u1", "offerCreate", "req-9", result, NOW)

    database.run_in_transaction(write)

    with database.SessionLocal() as db:
        cached = check_idempotency_in_txn(db, "u1", "offerCreate", "req-9", NOW + timedelta(minutes=1))
        assert cached is not None and cached.primary_id == "o-1"
        assert check_idempotency_in_txn(db, "u1", "offerCreate", "req-9", NOW + timedelta(hours=3)) is None
        assert check_idempotency_in_txn(db, "u1", "offerCreate", None, NOW) is None


def test_purge_expired_records():
    result = MinimalResult(primary_id="x")
    database.run_in_transaction(
        lambda db: [
            mark_idempotency_complete_in_txn(db, "u1", "offerCreate", f"req-{i}", result, NOW - timedelta(hours=3))
            for i in range(3)
        ]
    )
    database.run_in_transaction(
        lambda db: mark_idempotency_complete_in_txn(db, "u1", "offerCreate", "fresh", result, NOW)
    )
    assert database.run_in_transaction(lambda db: purge_expired_records(db, NOW, limit=2)) == 2
    assert database.run_in_transaction(lambda db: purge_expired_records(db, NOW, limit=10)) == 1
    assert database.run_in_transaction(lambda db: purge_expired_records(db, NOW, limit=10)) == 0
