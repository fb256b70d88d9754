"""Periodic reconciliation sweeps.

Each sweep selects a bounded batch of due rows and settles every item in its
own transaction, so one bad row never blocks the rest of the batch.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from . import database
from .config import (
    CONFIRMATION_WINDOW_HOURS,
    JOB_IDEMPOTENCY_BATCH_SIZE,
    JOB_MATCH_BATCH_SIZE,
    JOB_OFFER_BATCH_SIZE,
    JOB_PRESENCE_BATCH_SIZE,
    STALE_PENDING_MINUTES,
)
from .models import Match, Offer, PresenceSession
from .services.idempotency import purge_expired_records
from .services.matches import SYSTEM_ACTOR, after_match_closed, cancel_match_as_system, cancel_match_in_txn
from .services.meeting_confirmation import auto_dismiss_confirmation, expire_to_pending_confirmation
from .services.offers import cleanup_pending_offers, expire_offer_if_stale
from .services.place_negotiation import resolve_expired_decision
from .services.state_machine import CONFIRMABLE_STATUSES, PENDING_CONFIRMATION, is_active

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _due_ids(query) -> list[str]:
    with database.SessionLocal() as db:
        return list(db.execute(query).scalars())


def _each(label: str, ids: Iterable[str], fn: Callable[[str], object]) -> int:
    done = 0
    for item_id in ids:
        try:
            if fn(item_id):
                done += 1
        except Exception:
            logger.exception(f"[jobs] {label} failed for {item_id}")
    return done


def expire_stale_offers(now: datetime | None = None, batch_size: int = JOB_OFFER_BATCH_SIZE) -> int:
    now = now or _now_utc()
    ids = _due_ids(
        select(Offer.id)
        .where(Offer.status == "pending", Offer.expires_at <= now)
        .order_by(Offer.expires_at)
        .limit(batch_size)
    )
    expired = _each("offer expiry", ids, lambda offer_id: expire_offer_if_stale(offer_id, now))
    if expired:
        logger.info(f"[jobs] expired {expired} offers")
    return expired


def _sweep_presence(uid: str, now: datetime) -> str:
    """Settle one lapsed presence. Returns what happened to it."""

    def _txn(db: Session) -> tuple[str, tuple[str, str, str] | None]:
        presence = db.get(PresenceSession, uid)
        if presence is None or presence.expires_at > now:
            return "skipped", None

        match = db.get(Match, presence.match_id) if presence.match_id else None
        if presence.status != "matched" or match is None or match.status == PENDING_CONFIRMATION:
            cleanup_pending_offers(db, uid, now, reason="presence_expired")
            db.delete(presence)
            return "deleted", None
        if not is_active(match.status):
            logger.warning(f"[jobs] presence {uid} held stale claim on {match.id} ({match.status})")
            db.delete(presence)
            return "deleted", None

        pair = (match.id, match.user1_uid, match.user2_uid)
        if match.status in CONFIRMABLE_STATUSES:
            resolved = expire_to_pending_confirmation(db, match, now)
            return "pending_confirmation", pair if resolved else None

        # A failed cancel rolls back with the presence still in place.
        cancel_match_in_txn(db, match, SYSTEM_ACTOR, "system_presence_expired", now)
        return "cancelled", pair

    outcome, closed = database.run_in_transaction(_txn)
    if closed is not None:
        after_match_closed(*closed)
    return outcome


def cleanup_expired_presence(now: datetime | None = None, batch_size: int = JOB_PRESENCE_BATCH_SIZE) -> int:
    now = now or _now_utc()
    uids = _due_ids(
        select(PresenceSession.user_id)
        .where(PresenceSession.expires_at <= now)
        .order_by(PresenceSession.expires_at)
        .limit(batch_size)
    )
    return _each("presence sweep", uids, lambda uid: _sweep_presence(uid, now) != "skipped")


def cleanup_stale_pending_matches(now: datetime | None = None, batch_size: int = JOB_MATCH_BATCH_SIZE) -> int:
    now = now or _now_utc()
    cutoff = now - timedelta(minutes=STALE_PENDING_MINUTES)
    ids = _due_ids(
        select(Match.id)
        .where(Match.status == "pending", Match.matched_at <= cutoff)
        .order_by(Match.matched_at)
        .limit(batch_size)
    )
    return _each("stale pending", ids, lambda match_id: cancel_match_as_system(match_id, "timeout_pending", now))


def resolve_expired_location_decisions(now: datetime | None = None, batch_size: int = JOB_MATCH_BATCH_SIZE) -> int:
    now = now or _now_utc()
    ids = _due_ids(
        select(Match.id)
        .where(Match.status == "location_deciding", Match.location_decision_expires_at <= now)
        .order_by(Match.location_decision_expires_at)
        .limit(batch_size)
    )
    return _each("location decision", ids, lambda match_id: resolve_expired_decision(match_id, now))


def cleanup_expired_confirmations(now: datetime | None = None, batch_size: int = JOB_MATCH_BATCH_SIZE) -> int:
    now = now or _now_utc()
    cutoff = now - timedelta(hours=CONFIRMATION_WINDOW_HOURS)
    ids = _due_ids(
        select(Match.id)
        .where(Match.status == PENDING_CONFIRMATION, Match.confirmation_requested_at <= cutoff)
        .order_by(Match.confirmation_requested_at)
        .limit(batch_size)
    )
    return _each("confirmation timeout", ids, lambda match_id: auto_dismiss_confirmation(match_id, now))


def cleanup_idempotency_records(now: datetime | None = None, batch_size: int = JOB_IDEMPOTENCY_BATCH_SIZE) -> int:
    now = now or _now_utc()
    deleted = database.run_in_transaction(lambda db: purge_expired_records(db, now, batch_size))
    if deleted >= batch_size * 0.9:
        logger.warning(f"[jobs] idempotency purge hit {deleted}/{batch_size}, backlog likely")
    elif deleted:
        logger.info(f"[jobs] purged {deleted} idempotency records")
    return deleted


def run_all_jobs(now: datetime | None = None) -> dict[str, int]:
    now = now or _now_utc()
    report = {
        "offers_expired": expire_stale_offers(now),
        "presence_cleaned": cleanup_expired_presence(now),
        "stale_pending_cancelled": cleanup_stale_pending_matches(now),
        "location_decisions_resolved": resolve_expired_location_decisions(now),
        "confirmations_dismissed": cleanup_expired_confirmations(now),
        "idempotency_purged": cleanup_idempotency_records(now),
    }
    logger.info(f"[jobs] run complete {report}")
    return report
