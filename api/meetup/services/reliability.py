from datetime import datetime

from sqlalchemy.orm import Session

from ..models import UserReliability


def _get_or_create(db: Session, user_id: str) -> UserReliability:
    row = db.get(UserReliability, user_id)
    if row is None:
        row = UserReliability(
            user_id=user_id,
            total_matches=0,
            met_confirmed=0,
            cancelled_by_user=0,
            no_show=0,
            expired=0,
            penalty_points=0.0,
            reliability_score=0.5,
        )
        db.add(row)
    return row


def compute_score(stats: UserReliability, severe: bool = False) -> float:
    total = stats.total_matches or 1
    raw = (
        (stats.met_confirmed or 0) * 1.0
        - (stats.cancelled_by_user or 0) * (0.5 if severe else 0.3)
        - (stats.no_show or 0) * 0.5
    ) / total
    return max(0.0, min(1.0, 0.5 + raw * 0.5))


def record_cancellation(db: Session, user_id: str, *, severe: bool, penalty: float, now: datetime) -> UserReliability:
    stats = _get_or_create(db, user_id)
    stats.cancelled_by_user = (stats.cancelled_by_user or 0) + 1
    stats.total_matches = (stats.total_matches or 0) + 1
    stats.penalty_points = (stats.penalty_points or 0.0) + penalty
    stats.reliability_score = compute_score(stats, severe=severe)
    stats.updated_at = now
    return stats


def record_met(db: Session, user_id: str, now: datetime) -> UserReliability:
    stats = _get_or_create(db, user_id)
    stats.met_confirmed = (stats.met_confirmed or 0) + 1
    stats.total_matches = (stats.total_matches or 0) + 1
    stats.reliability_score = compute_score(stats)
    stats.updated_at = now
    return stats


def record_unconfirmed(db: Session, user_id: str, now: datetime) -> UserReliability:
    stats = _get_or_create(db, user_id)
    stats.expired = (stats.expired or 0) + 1
    stats.total_matches = (stats.total_matches or 0) + 1
    stats.reliability_score = compute_score(stats)
    stats.updated_at = now
    return stats


def meet_and_cancel_rates(stats: UserReliability | None) -> tuple[float, float]:
    if stats is None or not stats.total_matches:
        return 0.5, 0.0
    total = float(stats.total_matches)
    return stats.met_confirmed / total, stats.cancelled_by_user / total
