import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from .. import database
from ..models import Match, UserAccount, UserBlock
from .errors import InvalidArgument, NotFound
from .events import log_product_event
from .matches import SYSTEM_ACTOR, after_match_closed, cancel_match_in_txn
from .offers import cancel_offers_between
from .state_machine import ACTIVE_MATCH_STATUSES

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def block_user(uid: str, blocked_uid: str, now: datetime | None = None) -> dict[str, Any]:
    """Block ``blocked_uid`` and tear down anything currently linking the two."""
    if not blocked_uid:
        raise InvalidArgument("User ID is required")
    if blocked_uid == uid:
        raise InvalidArgument("You cannot block yourself")
    now = now or _now_utc()

    def _txn(db: Session) -> tuple[dict[str, Any], list[tuple[str, str, str]]]:
        if db.get(UserAccount, blocked_uid) is None:
            raise NotFound("User not found")
        if db.get(UserBlock, (uid, blocked_uid)) is None:
            db.add(UserBlock(blocker_uid=uid, blocked_uid=blocked_uid, created_at=now))

        shared = db.execute(
            select(Match).where(
                Match.status.in_(ACTIVE_MATCH_STATUSES),
                or_(
                    and_(Match.user1_uid == uid, Match.user2_uid == blocked_uid),
                    and_(Match.user1_uid == blocked_uid, Match.user2_uid == uid),
                ),
            )
        ).scalars().all()
        closed = []
        for match in shared:
            cancel_match_in_txn(db, match, SYSTEM_ACTOR, "blocked", now)
            closed.append((match.id, match.user1_uid, match.user2_uid))

        offers_cancelled = cancel_offers_between(db, uid, blocked_uid, now, reason="blocked")

        log_product_event(db, "user_blocked", user_id=uid, properties={"matches_cancelled": len(closed)})
        return {"success": True, "matches_cancelled": len(closed), "offers_cancelled": offers_cancelled}, closed

    result, closed = database.run_in_transaction(_txn)
    for match_id, user1_uid, user2_uid in closed:
        after_match_closed(match_id, user1_uid, user2_uid)
    logger.info(f"[safety] {uid} blocked {blocked_uid}, cancelled {result['matches_cancelled']} matches")
    return result
