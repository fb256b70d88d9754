"""Directed meetup offers between two present users.

Every state change runs in one transaction. Checks that must leave a trace
behind (lazily expiring an offer, purging an expired presence) commit that write
first and surface the error afterwards.
"""

import logging
import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from .. import database
from ..config import INBOX_LIMIT, MAX_ACTIVE_OFFERS, OFFER_COOLDOWN_SECONDS, OFFER_TTL_MINUTES
from ..models import Offer, PresenceSession, Suggestion, UserAccount, UserBlock
from . import notifications
from .errors import (
    AlreadyExists,
    FailedPrecondition,
    InvalidArgument,
    MeetupError,
    NotFound,
    PermissionDenied,
    ResourceExhausted,
)
from .events import log_offer_event
from .idempotency import MinimalResult, check_idempotency_in_txn, mark_idempotency_complete_in_txn, with_idempotency_lock
from .match_guard import create_match_atomic
from .matches import find_active_match_for_user
from .places import has_any_place

logger = logging.getLogger(__name__)

OP_CREATE = "offerCreate"
OP_CREATE_MUTUAL = "offerCreate_mutualMatch"
OP_RESPOND = "offerRespond"


@dataclass
class _Outcome:
    result: Any = None
    error: MeetupError | None = None


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _run(fn: Callable[[Session], _Outcome]) -> Any:
    outcome = database.run_in_transaction(fn)
    if outcome.error is not None:
        raise outcome.error
    return outcome.result


def _is_live(presence: PresenceSession | None, now: datetime) -> bool:
    return presence is not None and presence.expires_at > now


def _without(ids: list[str] | None, offer_id: str) -> list[str]:
    return [i for i in (ids or []) if i != offer_id]


def is_blocked_either_way(db: Session, uid_a: str, uid_b: str) -> bool:
    row = db.execute(
        select(UserBlock.blocker_uid).where(
            or_(
                (UserBlock.blocker_uid == uid_a) & (UserBlock.blocked_uid == uid_b),
                (UserBlock.blocker_uid == uid_b) & (UserBlock.blocked_uid == uid_a),
            )
        )
    ).first()
    return row is not None


def _pending_offers_from(db: Session, uid: str, now: datetime) -> list[Offer]:
    return list(
        db.execute(
            select(Offer)
            .where(Offer.from_uid == uid, Offer.status == "pending", Offer.expires_at > now)
            .order_by(Offer.created_at)
        ).scalars()
    )


def _remember_unanswered(sender: PresenceSession, to_uid: str, now: datetime) -> None:
    recent = [u for u in (sender.recently_expired_offer_uids or []) if u != to_uid]
    sender.recently_expired_offer_uids = [*recent, to_uid][-20:]
    sender.updated_at = now


def _accepted(offer: Offer, match_id: str, is_new: bool) -> MinimalResult:
    return MinimalResult(
        primary_id=offer.id,
        secondary_ids=[match_id, offer.from_uid],
        flags={"action": "accepted", "matched": True, "match_id": match_id, "is_new": is_new},
    )


def _remove_from_outgoing(db: Session, sender_uid: str, offer_id: str, now: datetime) -> None:
    presence = db.get(PresenceSession, sender_uid)
    if presence is None or offer_id not in (presence.outgoing_offer_ids or []):
        return
    presence.outgoing_offer_ids = _without(presence.outgoing_offer_ids, offer_id)
    presence.updated_at = now


def cleanup_pending_offers(
    db: Session,
    uid: str,
    now: datetime,
    reason: str,
    exclude_ids: tuple[str, ...] = (),
) -> int:
    """Cancel every pending offer ``uid`` sent or received."""
    offers = db.execute(
        select(Offer).where(Offer.status == "pending", or_(Offer.from_uid == uid, Offer.to_uid == uid))
    ).scalars().all()
    count = _close_offers(db, [o for o in offers if o.id not in exclude_ids], now, reason)
    if count:
        logger.info(f"[offers] cancelled {count} pending offers for {uid} ({reason})")
    return count


def cancel_offers_between(db: Session, uid_a: str, uid_b: str, now: datetime, reason: str) -> int:
    offers = db.execute(
        select(Offer).where(
            Offer.status == "pending",
            or_(
                (Offer.from_uid == uid_a) & (Offer.to_uid == uid_b),
                (Offer.from_uid == uid_b) & (Offer.to_uid == uid_a),
            ),
        )
    ).scalars().all()
    return _close_offers(db, offers, now, reason)


def _close_offers(db: Session, offers: list[Offer], now: datetime, reason: str) -> int:
    count = 0
    for offer in offers:
        if offer.status != "pending":
            continue
        offer.status = "cancelled"
        offer.close_reason = reason
        offer.updated_at = now
        _remove_from_outgoing(db, offer.from_uid, offer.id, now)
        count += 1
    return count


def cleanup_after_match(uids: tuple[str, ...], exclude_ids: tuple[str, ...], now: datetime) -> None:
    def _txn(db: Session) -> int:
        total = 0
        for uid in uids:
            total += cleanup_pending_offers(db, uid, now, reason="matched_elsewhere", exclude_ids=exclude_ids)
        return total

    try:
        database.run_in_transaction(_txn)
    except Exception:
        logger.exception(f"[offers] post-match offer cleanup failed for {uids}")


def _create_response(offer_id: str, result: MinimalResult, cached: bool) -> dict[str, Any]:
    flags = result.flags
    return {
        "offer_id": offer_id,
        "match_created": bool(flags.get("match_created")),
        "match_id": flags.get("match_id"),
        "expires_at": flags.get("expires_at"),
        "cooldown_until": flags.get("cooldown_until"),
        "cached": cached,
    }


def create_offer(uid: str, to_uid: str, request_id: str | None = None, now: datetime | None = None) -> dict[str, Any]:
    now = now or _now_utc()
    if not to_uid:
        raise InvalidArgument("Target user is required")
    if to_uid == uid:
        raise InvalidArgument("Cannot send an offer to yourself", code="CANNOT_OFFER_SELF")

    def _txn(db: Session) -> _Outcome:
        for op in (OP_CREATE, OP_CREATE_MUTUAL):
            cached = check_idempotency_in_txn(db, uid, op, request_id, now)
            if cached is not None:
                return _Outcome(result=(cached, True))

        lapsed = db.get(PresenceSession, uid)
        if lapsed is not None and lapsed.expires_at <= now and lapsed.status != "matched":
            db.delete(lapsed)
            return _Outcome(error=FailedPrecondition("Your availability has expired", code="PRESENCE_EXPIRED"))

        if is_blocked_either_way(db, uid, to_uid):
            raise FailedPrecondition("You cannot send an offer to this user", code="BLOCKED")

        sender = db.get(PresenceSession, uid)
        if sender is None:
            raise FailedPrecondition("You must set your availability first", code="PRESENCE_REQUIRED")
        if not _is_live(sender, now):
            raise FailedPrecondition("Your availability has expired", code="PRESENCE_EXPIRED")
        if sender.lat is None or sender.lng is None:
            raise FailedPrecondition("Your location is unknown", code="LOCATION_UNKNOWN")

        if not has_any_place(db, (sender.lat, sender.lng), sender.activity, now):
            raise FailedPrecondition("No meeting places available nearby", code="NO_PLACES_AVAILABLE")

        pending = _pending_offers_from(db, uid, now)
        if any(o.to_uid == to_uid for o in pending):
            raise AlreadyExists("You already have a pending offer to this user", code="OFFER_ALREADY_PENDING")
        if len(pending) >= MAX_ACTIVE_OFFERS:
            raise ResourceExhausted(
                f"You can have at most {MAX_ACTIVE_OFFERS} active offers",
                code="MAX_ACTIVE_OFFERS",
            )
        if sender.offer_cooldown_until and sender.offer_cooldown_until > now:
            remaining = math.ceil((sender.offer_cooldown_until - now).total_seconds())
            raise ResourceExhausted(
                f"Please wait {remaining}s before sending another offer",
                code="OFFER_COOLDOWN",
                details={"cooldown_remaining": remaining},
            )

        recipient = db.get(PresenceSession, to_uid)
        if not _is_live(recipient, now):
            raise FailedPrecondition("This user is no longer available", code="RECIPIENT_UNAVAILABLE")
        if find_active_match_for_user(db, uid) is not None:
            raise FailedPrecondition("You are already in an active match", code="ALREADY_MATCHED")
        if find_active_match_for_user(db, to_uid) is not None:
            raise FailedPrecondition("This user is already matched", code="RECIPIENT_MATCHED")

        reverse = db.execute(
            select(Offer).where(
                Offer.from_uid == to_uid,
                Offer.to_uid == uid,
                Offer.status == "pending",
                Offer.expires_at > now,
            )
        ).scalars().first()
        if reverse is not None and reverse.activity == sender.activity:
            creation = create_match_atomic(db, uid, to_uid, sender.activity, now, triggering_offer_id=reverse.id)
            reverse.status = "accepted"
            reverse.match_id = creation.match_id
            reverse.responded_at = now
            reverse.updated_at = now
            sender.outgoing_offer_ids = []
            recipient.outgoing_offer_ids = []
            log_offer_event(db, "offer_mutual_match", reverse.id, user_id=uid, payload={"match_id": creation.match_id})
            result = MinimalResult(
                primary_id=reverse.id,
                secondary_ids=[creation.match_id],
                flags={"match_created": True, "match_id": creation.match_id, "is_new": creation.is_new},
            )
            mark_idempotency_complete_in_txn(db, uid, OP_CREATE_MUTUAL, request_id, result, now)
            return _Outcome(result=(result, False))

        expires_at = min(now + timedelta(minutes=OFFER_TTL_MINUTES), sender.expires_at, recipient.expires_at)
        cooldown_until = now + timedelta(seconds=OFFER_COOLDOWN_SECONDS)
        offer = Offer(
            id=str(uuid.uuid4()),
            from_uid=uid,
            to_uid=to_uid,
            status="pending",
            activity=sender.activity,
            expires_at=expires_at,
            created_at=now,
            updated_at=now,
        )
        db.add(offer)

        sender.outgoing_offer_ids = [*(sender.outgoing_offer_ids or []), offer.id]
        sender.offer_cooldown_until = cooldown_until
        sender.updated_at = now
        recipient.exposure_score = (recipient.exposure_score or 0) + 1
        recipient.last_exposed_at = now
        recipient.updated_at = now

        log_offer_event(db, "offer_created", offer.id, user_id=uid, payload={"to_uid": to_uid})
        result = MinimalResult(
            primary_id=offer.id,
            flags={
                "match_created": False,
                "activity": sender.activity,
                "expires_at": expires_at.isoformat(),
                "cooldown_until": cooldown_until.isoformat(),
            },
        )
        mark_idempotency_complete_in_txn(db, uid, OP_CREATE, request_id, result, now)
        return _Outcome(result=(result, False))

    result, cached = _run(_txn)
    if cached:
        return _create_response(result.primary_id, result, cached=True)

    if result.flags.get("match_created"):
        match_id = result.flags["match_id"]
        cleanup_after_match((uid, to_uid), (result.primary_id,), now)
        if result.flags.get("is_new"):
            notifications.send_match_created(*sorted((uid, to_uid)), match_id)
        logger.info(f"[offers] mutual offer between {uid} and {to_uid} -> match {match_id}")
    else:
        notifications.send_offer_received(to_uid, uid, result.flags.get("activity") or "a meetup", result.primary_id)
    return _create_response(result.primary_id, result, cached=False)


def respond_to_offer(
    uid: str,
    offer_id: str,
    action: str,
    request_id: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    if not offer_id:
        raise InvalidArgument("Offer ID is required")
    if action not in ("accept", "decline"):
        raise InvalidArgument('Action must be "accept" or "decline"')
    now = now or _now_utc()

    def _expire(offer: Offer) -> None:
        offer.status = "expired"
        offer.updated_at = now

    def _link_accepted(offer: Offer, match_id: str) -> None:
        offer.status = "accepted"
        offer.match_id = match_id
        offer.responded_at = now
        offer.updated_at = now

    def _txn(db: Session) -> _Outcome:
        offer = db.get(Offer, offer_id)
        if offer is None:
            raise NotFound("Offer not found")
        if offer.to_uid != uid:
            raise PermissionDenied("Only the recipient can respond to this offer")
        if offer.status == "accepted" and offer.match_id and action == "accept":
            # A concurrent accept of this offer already committed the match.
            return _Outcome(result=_accepted(offer, offer.match_id, is_new=False))
        if offer.status != "pending":
            raise FailedPrecondition(f"Offer is already {offer.status}", code="OFFER_NOT_PENDING")
        if offer.expires_at <= now:
            _expire(offer)
            _remove_from_outgoing(db, offer.from_uid, offer.id, now)
            return _Outcome(error=FailedPrecondition("Offer has expired", code="OFFER_EXPIRED"))

        if action == "decline":
            offer.status = "declined"
            offer.responded_at = now
            offer.updated_at = now
            _remove_from_outgoing(db, offer.from_uid, offer.id, now)
            sender = db.get(PresenceSession, offer.from_uid)
            if sender is not None:
                _remember_unanswered(sender, uid, now)
            for from_uid, to_uid in ((uid, offer.from_uid), (offer.from_uid, uid)):
                db.merge(
                    Suggestion(id=f"{from_uid}_{to_uid}", from_uid=from_uid, to_uid=to_uid, action="reject", created_at=now)
                )
            log_offer_event(db, "offer_declined", offer.id, user_id=uid)
            return _Outcome(result=MinimalResult(primary_id=offer.id, flags={"action": "declined", "matched": False}))

        sender = db.get(PresenceSession, offer.from_uid)
        if not _is_live(sender, now):
            _expire(offer)
            return _Outcome(error=FailedPrecondition("The other user is no longer available", code="SENDER_UNAVAILABLE"))
        receiver = db.get(PresenceSession, uid)
        if not _is_live(receiver, now):
            raise FailedPrecondition("You must set your availability first", code="PRESENCE_REQUIRED")

        sender_match = find_active_match_for_user(db, offer.from_uid)
        if sender_match is not None and uid in (sender_match.user1_uid, sender_match.user2_uid):
            # Already paired with the sender, e.g. through crossing offers.
            _link_accepted(offer, sender_match.id)
            return _Outcome(result=_accepted(offer, sender_match.id, is_new=False))
        if sender_match is not None:
            # First accept wins: the sender already matched elsewhere.
            _expire(offer)
            _remove_from_outgoing(db, offer.from_uid, offer.id, now)
            log_offer_event(db, "offer_too_late", offer.id, user_id=uid)
            return _Outcome(
                result=MinimalResult(
                    primary_id=offer.id,
                    flags={"action": "accepted", "matched": False, "code": "NO_LONGER_AVAILABLE"},
                )
            )
        if find_active_match_for_user(db, uid) is not None:
            raise FailedPrecondition("You are already in an active match", code="ALREADY_MATCHED")

        if sender.activity != receiver.activity or offer.activity != sender.activity:
            _expire(offer)
            _remove_from_outgoing(db, offer.from_uid, offer.id, now)
            return _Outcome(error=FailedPrecondition("Activities no longer match", code="ACTIVITY_MISMATCH"))

        creation = create_match_atomic(db, offer.from_uid, uid, offer.activity, now, triggering_offer_id=offer.id)
        _link_accepted(offer, creation.match_id)
        _remove_from_outgoing(db, offer.from_uid, offer.id, now)
        log_offer_event(db, "offer_accepted", offer.id, user_id=uid, payload={"match_id": creation.match_id})
        return _Outcome(result=_accepted(offer, creation.match_id, is_new=creation.is_new))

    def _execute() -> MinimalResult:
        return _run(_txn)

    result, cached = with_idempotency_lock(uid, OP_RESPOND, request_id, _execute, now=now)
    flags = result.flags
    if flags.get("matched") and not cached:
        sender_uid = result.secondary_ids[1] if len(result.secondary_ids) > 1 else None
        if sender_uid:
            cleanup_after_match((uid, sender_uid), (offer_id,), now)
            if flags.get("is_new"):
                notifications.send_match_created(*sorted((uid, sender_uid)), flags["match_id"])

    response: dict[str, Any] = {
        "success": True,
        "action": flags.get("action"),
        "matched": bool(flags.get("matched")),
        "match_id": flags.get("match_id"),
        "cached": cached,
    }
    if flags.get("code"):
        response["code"] = flags["code"]
    return response


def cancel_offer(uid: str, offer_id: str, now: datetime | None = None) -> dict[str, Any]:
    if not offer_id:
        raise InvalidArgument("Offer ID is required")
    now = now or _now_utc()

    def _txn(db: Session) -> dict[str, Any]:
        offer = db.get(Offer, offer_id)
        if offer is None:
            raise NotFound("Offer not found")
        if offer.from_uid != uid:
            raise PermissionDenied("Only the sender can cancel this offer")
        if offer.status != "pending":
            raise FailedPrecondition(f"Offer is already {offer.status}", code="OFFER_NOT_PENDING")
        offer.status = "cancelled"
        offer.close_reason = "sender_cancelled"
        offer.updated_at = now
        _remove_from_outgoing(db, uid, offer.id, now)
        log_offer_event(db, "offer_cancelled", offer.id, user_id=uid)
        return {"success": True}

    return database.run_in_transaction(_txn)


def get_inbox(uid: str, now: datetime | None = None) -> dict[str, Any]:
    now = now or _now_utc()

    def _read(db: Session) -> dict[str, Any]:
        base = (Offer.to_uid == uid, Offer.status == "pending", Offer.expires_at > now)
        total = db.execute(select(func.count()).select_from(Offer).where(*base)).scalar_one()
        offers = db.execute(
            select(Offer).where(*base).order_by(Offer.expires_at).limit(INBOX_LIMIT)
        ).scalars().all()
        items = []
        for offer in offers:
            sender = db.get(UserAccount, offer.from_uid)
            items.append(
                {
                    "offer_id": offer.id,
                    "from_uid": offer.from_uid,
                    "from_display_name": sender.display_name if sender else None,
                    "from_photo_url": sender.photo_url if sender else None,
                    "activity": offer.activity,
                    "expires_at": offer.expires_at.isoformat(),
                    "expires_in_seconds": max(0, int((offer.expires_at - now).total_seconds())),
                }
            )
        return {"offers": items, "total_count": total}

    return database.run_in_transaction(_read)


def get_outgoing(uid: str, now: datetime | None = None) -> dict[str, Any]:
    now = now or _now_utc()

    def _txn(db: Session) -> dict[str, Any]:
        offers = _pending_offers_from(db, uid, now)
        presence = db.get(PresenceSession, uid)
        cooldown_remaining = 0
        if presence is not None:
            live_ids = [o.id for o in offers]
            if list(presence.outgoing_offer_ids or []) != live_ids:
                presence.outgoing_offer_ids = live_ids
                presence.updated_at = now
            if presence.offer_cooldown_until and presence.offer_cooldown_until > now:
                cooldown_remaining = math.ceil((presence.offer_cooldown_until - now).total_seconds())

        items = []
        for offer in offers:
            recipient = db.get(UserAccount, offer.to_uid)
            items.append(
                {
                    "offer_id": offer.id,
                    "to_uid": offer.to_uid,
                    "to_display_name": recipient.display_name if recipient else None,
                    "activity": offer.activity,
                    "expires_at": offer.expires_at.isoformat(),
                    "expires_in_seconds": max(0, int((offer.expires_at - now).total_seconds())),
                }
            )
        return {
            "offers": items,
            "cooldown_remaining": cooldown_remaining,
            "max_offers": MAX_ACTIVE_OFFERS,
            "can_send_more": len(offers) < MAX_ACTIVE_OFFERS and cooldown_remaining == 0,
        }

    return database.run_in_transaction(_txn)


def expire_offer_if_stale(offer_id: str, now: datetime) -> bool:
    def _txn(db: Session) -> bool:
        offer = db.get(Offer, offer_id)
        if offer is None or offer.status != "pending" or offer.expires_at > now:
            return False
        offer.status = "expired"
        offer.updated_at = now
        sender = db.get(PresenceSession, offer.from_uid)
        if sender is not None:
            sender.outgoing_offer_ids = _without(sender.outgoing_offer_ids, offer.id)
            _remember_unanswered(sender, offer.to_uid, now)
        log_offer_event(db, "offer_expired", offer.id, user_id=offer.from_uid)
        return True

    return database.run_in_transaction(_txn)
