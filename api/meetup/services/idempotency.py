"""At-most-once execution of client-issued mutating requests.

Each record is keyed by ``{uid}_{operation}_{request_id}``. The standalone lock
(``with_idempotency_lock``) reserves the key in its own transaction before the
wrapped operation runs. The transaction-scoped helpers only read inside the
caller's transaction and write the completion as part of its commit, leaning on
the transaction retry to settle first-time racers.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .. import database
from ..config import IDEMPOTENCY_MAX_ATTEMPTS, IDEMPOTENCY_STALE_LOCK_SECONDS, IDEMPOTENCY_TTL_HOURS
from ..models import IdempotencyRecord
from .errors import AlreadyExists

logger = logging.getLogger(__name__)

STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

_ACQUIRED = "acquired"
_CACHED = "cached"
_RETRY = "retry"


@dataclass
class MinimalResult:
    """Ids and a few flags. Never a full response payload."""

    primary_id: str
    secondary_ids: list[str] = field(default_factory=list)
    flags: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"primary_id": self.primary_id, "secondary_ids": list(self.secondary_ids), "flags": dict(self.flags)}

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "MinimalResult":
        data = data or {}
        return cls(
            primary_id=str(data.get("primary_id") or ""),
            secondary_ids=list(data.get("secondary_ids") or []),
            flags=dict(data.get("flags") or {}),
        )


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def idempotency_key(uid: str, operation: str, request_id: str) -> str:
    return f"{uid}_{operation}_{request_id}"


def _try_acquire(key: str, uid: str, operation: str, request_id: str, now: datetime) -> tuple[str, MinimalResult | None]:
    with database.SessionLocal() as db:
        db.add(
            IdempotencyRecord(
                key=key,
                user_id=uid,
                operation=operation,
                request_id=request_id,
                status=STATUS_PROCESSING,
                created_at=now,
                expires_at=now + timedelta(hours=IDEMPOTENCY_TTL_HOURS),
                processing_started_at=now,
            )
        )
        try:
            db.commit()
            return _ACQUIRED, None
        except IntegrityError:
            db.rollback()

        existing = db.get(IdempotencyRecord, key)
        if existing is None:
            return _RETRY, None

        if existing.expires_at <= now:
            logger.info(f"[idempotency] expired record {key}, replacing")
            db.delete(existing)
            db.commit()
            return _RETRY, None

        if existing.status == STATUS_COMPLETED:
            logger.info(f"[idempotency] duplicate request {key}, returning cached result")
            return _CACHED, MinimalResult.from_dict(existing.result)

        if existing.status == STATUS_FAILED:
            logger.info(f"[idempotency] previous attempt failed for {key}, retrying")
            db.delete(existing)
            db.commit()
            return _RETRY, None

        started = existing.processing_started_at or existing.created_at
        age_seconds = (now - started).total_seconds()
        if age_seconds < IDEMPOTENCY_STALE_LOCK_SECONDS:
            raise AlreadyExists(
                "Request already in progress. Please wait.",
                code="DUPLICATE_IN_PROGRESS",
            )

        logger.warning(f"[idempotency] stale lock for {key} ({age_seconds:.0f}s old), taking over")
        existing.status = STATUS_FAILED
        existing.error = "stale_lock"
        db.commit()
        return _RETRY, None


def _finish(key: str, *, status: str, result: MinimalResult | None = None, error: str | None = None) -> None:
    with database.SessionLocal() as db:
        record = db.get(IdempotencyRecord, key)
        if record is None:
            logger.warning(f"[idempotency] record {key} vanished before it could be marked {status}")
            return
        record.status = status
        record.result = result.to_dict() if result else None
        record.error = error
        record.completed_at = _now_utc()
        db.commit()


def with_idempotency_lock(
    uid: str,
    operation: str,
    request_id: str | None,
    fn: Callable[[], MinimalResult],
    now: datetime | None = None,
) -> tuple[MinimalResult, bool]:
    """Run ``fn`` at most once per (uid, operation, request_id).

    Returns ``(result, cached)``. Without a request id the call is passed
    straight through.
    """
    if not request_id:
        return fn(), False

    key = idempotency_key(uid, operation, request_id)
    for _ in range(IDEMPOTENCY_MAX_ATTEMPTS):
        outcome, cached = _try_acquire(key, uid, operation, request_id, now or _now_utc())
        if outcome == _CACHED and cached is not None:
            return cached, True
        if outcome == _ACQUIRED:
            break
    else:
        raise AlreadyExists("Could not acquire request lock", code="DUPLICATE_IN_PROGRESS")

    try:
        result = fn()
    except Exception as exc:
        try:
            _finish(key, status=STATUS_FAILED, error=str(exc) or exc.__class__.__name__)
        except Exception:
            logger.exception(f"[idempotency] failed to record failure for {key}")
        raise

    try:
        _finish(key, status=STATUS_COMPLETED, result=result)
    except Exception:
        logger.exception(f"[idempotency] failed to record completion for {key}")
    return result, False


def check_idempotency_in_txn(
    db: Session,
    uid: str,
    operation: str,
    request_id: str | None,
    now: datetime,
) -> MinimalResult | None:
    """Read-only duplicate check for use inside a larger transaction."""
    if not request_id:
        return None
    record = db.get(IdempotencyRecord, idempotency_key(uid, operation, request_id))
    if record is None or record.status != STATUS_COMPLETED or record.expires_at <= now:
        return None
    return MinimalResult.from_dict(record.result)


def mark_idempotency_complete_in_txn(
    db: Session,
    uid: str,
    operation: str,
    request_id: str | None,
    result: MinimalResult,
    now: datetime,
) -> None:
    if not request_id:
        return
    db.merge(
        IdempotencyRecord(
            key=idempotency_key(uid, operation, request_id),
            user_id=uid,
            operation=operation,
            request_id=request_id,
            status=STATUS_COMPLETED,
            result=result.to_dict(),
            error=None,
            created_at=now,
            expires_at=now + timedelta(hours=IDEMPOTENCY_TTL_HOURS),
            processing_started_at=None,
            completed_at=now,
        )
    )


def purge_expired_records(db: Session, now: datetime, limit: int) -> int:
    keys = db.execute(
        select(IdempotencyRecord.key).where(IdempotencyRecord.expires_at < now).limit(limit)
    ).scalars().all()
    if not keys:
        return 0
    db.execute(delete(IdempotencyRecord).where(IdempotencyRecord.key.in_(keys)))
    return len(keys)
