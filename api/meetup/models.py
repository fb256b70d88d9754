import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    PrimaryKeyConstraint,
    String,
    Text,
)
from sqlalchemy.types import TypeDecorator

from .database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime that always comes back as UTC, SQLite included."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class UserAccount(Base):
    __tablename__ = "user_account"

    id = Column(String(64), primary_key=True, default=_uuid)
    email = Column(String(254), nullable=False, unique=True)
    password_hash = Column(String, nullable=True)
    display_name = Column(String(80), nullable=True)
    photo_url = Column(String(500), nullable=True)
    interests = Column(JSON, nullable=False, default=list)
    push_token = Column(String, nullable=True)
    is_email_verified = Column(Boolean, nullable=False, default=False)
    disabled_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=_now_utc)
    last_login_at = Column(UTCDateTime, nullable=True)


class UserBlock(Base):
    __tablename__ = "user_block"

    blocker_uid = Column(String(64), nullable=False)
    blocked_uid = Column(String(64), nullable=False)
    created_at = Column(UTCDateTime, nullable=False, default=_now_utc)

    __table_args__ = (
        PrimaryKeyConstraint("blocker_uid", "blocked_uid", name="pk_user_block"),
        Index("idx_user_block_blocked", "blocked_uid"),
    )


class PresenceSession(Base):
    __tablename__ = "presence"

    user_id = Column(String(64), primary_key=True)
    activity = Column(String(32), nullable=False)
    duration_minutes = Column(Integer, nullable=False)
    lat = Column(Float, nullable=True)
    lng = Column(Float, nullable=True)
    geohash = Column(String(12), nullable=True)
    status = Column(String(16), nullable=False, default="available")
    session_id = Column(String(36), nullable=False, default=_uuid)
    expires_at = Column(UTCDateTime, nullable=False)
    original_expires_at = Column(UTCDateTime, nullable=True)
    offer_cooldown_until = Column(UTCDateTime, nullable=True)
    exposure_score = Column(Integer, nullable=False, default=0)
    last_exposed_at = Column(UTCDateTime, nullable=True)
    outgoing_offer_ids = Column(JSON, nullable=False, default=list)
    match_id = Column(String(36), nullable=True)
    seen_uids = Column(JSON, nullable=False, default=list)
    last_viewed_uid = Column(String(64), nullable=True)
    recently_expired_offer_uids = Column(JSON, nullable=False, default=list)
    created_at = Column(UTCDateTime, nullable=False, default=_now_utc)
    updated_at = Column(UTCDateTime, nullable=False, default=_now_utc)
    version_id = Column(Integer, nullable=False)

    __table_args__ = (
        Index("idx_presence_status_expires", "status", "expires_at"),
        Index("idx_presence_geohash", "geohash"),
    )
    __mapper_args__ = {"version_id_col": version_id}


class Offer(Base):
    __tablename__ = "offer"

    id = Column(String(36), primary_key=True, default=_uuid)
    from_uid = Column(String(64), nullable=False)
    to_uid = Column(String(64), nullable=False)
    status = Column(String(16), nullable=False, default="pending")
    activity = Column(String(32), nullable=False)
    expires_at = Column(UTCDateTime, nullable=False)
    match_id = Column(String(36), nullable=True)
    close_reason = Column(String(64), nullable=True)
    responded_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=_now_utc)
    updated_at = Column(UTCDateTime, nullable=False, default=_now_utc)
    version_id = Column(Integer, nullable=False)

    __table_args__ = (
        Index("idx_offer_from_status", "from_uid", "status"),
        Index("idx_offer_to_status", "to_uid", "status"),
        Index("idx_offer_status_expires", "status", "expires_at"),
        Index("idx_offer_match_id", "match_id"),
    )
    __mapper_args__ = {"version_id_col": version_id}


class PairGuard(Base):
    __tablename__ = "pair_guard"

    pair_key = Column(String(140), primary_key=True)
    user1_uid = Column(String(64), nullable=False)
    user2_uid = Column(String(64), nullable=False)
    match_id = Column(String(36), nullable=False)
    expires_at = Column(UTCDateTime, nullable=False)
    created_at = Column(UTCDateTime, nullable=False, default=_now_utc)


class Match(Base):
    __tablename__ = "match"

    id = Column(String(36), primary_key=True, default=_uuid)
    user1_uid = Column(String(64), nullable=False)
    user2_uid = Column(String(64), nullable=False)
    status = Column(String(40), nullable=False, default="pending")
    status_by_user = Column(JSON, nullable=False, default=dict)
    activity = Column(String(32), nullable=True)
    triggering_offer_id = Column(String(36), nullable=True)
    matched_at = Column(UTCDateTime, nullable=False, default=_now_utc)

    place_candidates = Column(JSON, nullable=False, default=list)
    location_decision_expires_at = Column(UTCDateTime, nullable=True)
    location_decision_resolved_at = Column(UTCDateTime, nullable=True)
    place_choice_by_user = Column(JSON, nullable=False, default=dict)
    confirmed_place_id = Column(String(64), nullable=True)
    confirmed_place_name = Column(String(200), nullable=True)
    confirmed_place_address = Column(String(300), nullable=True)
    confirmed_place_lat = Column(Float, nullable=True)
    confirmed_place_lng = Column(Float, nullable=True)
    place_confirmed_at = Column(UTCDateTime, nullable=True)
    place_resolution_reason = Column(String(40), nullable=True)

    cancelled_by = Column(String(64), nullable=True)
    cancellation_reason = Column(String(64), nullable=True)
    cancellation_severe = Column(Boolean, nullable=True)
    cancellation_penalty = Column(Float, nullable=True)
    cancelled_at = Column(UTCDateTime, nullable=True)

    meeting_confirmation = Column(JSON, nullable=False, default=dict)
    pending_confirmation_uids = Column(JSON, nullable=False, default=list)
    confirmation_requested_at = Column(UTCDateTime, nullable=True)
    outcome = Column(String(32), nullable=True)
    resolved_at = Column(UTCDateTime, nullable=True)
    completed_at = Column(UTCDateTime, nullable=True)

    last_message_at = Column(UTCDateTime, nullable=True)
    last_sender_uid = Column(String(64), nullable=True)
    telemetry = Column(JSON, nullable=False, default=dict)
    updated_at = Column(UTCDateTime, nullable=False, default=_now_utc)
    version_id = Column(Integer, nullable=False)

    __table_args__ = (
        Index("idx_match_user1_status", "user1_uid", "status"),
        Index("idx_match_user2_status", "user2_uid", "status"),
        Index("idx_match_status_matched_at", "status", "matched_at"),
        Index("idx_match_status_decision", "status", "location_decision_expires_at"),
    )
    __mapper_args__ = {"version_id_col": version_id}


class IdempotencyRecord(Base):
    __tablename__ = "idempotency_record"

    key = Column(String(255), primary_key=True)
    user_id = Column(String(64), nullable=False)
    operation = Column(String(64), nullable=False)
    request_id = Column(String(128), nullable=False)
    status = Column(String(16), nullable=False)
    result = Column(JSON, nullable=True)
    error = Column(Text, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=_now_utc)
    expires_at = Column(UTCDateTime, nullable=False)
    processing_started_at = Column(UTCDateTime, nullable=True)
    completed_at = Column(UTCDateTime, nullable=True)

    __table_args__ = (Index("idx_idempotency_expires_at", "expires_at"),)


class Place(Base):
    __tablename__ = "place"

    id = Column(String(64), primary_key=True, default=_uuid)
    name = Column(String(200), nullable=False)
    address = Column(String(300), nullable=False, default="")
    category = Column(String(32), nullable=True)
    lat = Column(Float, nullable=False)
    lng = Column(Float, nullable=False)
    geohash = Column(String(12), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    allowed_activities = Column(JSON, nullable=False, default=list)
    opening_hours = Column(JSON, nullable=True)
    tags = Column(JSON, nullable=False, default=list)
    price_level = Column(Integer, nullable=True)
    photo_url = Column(String(500), nullable=True)
    source = Column(String(32), nullable=False, default="seed")
    created_by = Column(String(64), nullable=True)
    times_selected = Column(Integer, nullable=False, default=0)
    created_at = Column(UTCDateTime, nullable=False, default=_now_utc)
    updated_at = Column(UTCDateTime, nullable=False, default=_now_utc)

    __table_args__ = (
        Index("idx_place_active_geohash", "is_active", "geohash"),
    )


class Suggestion(Base):
    __tablename__ = "suggestion"

    id = Column(String(140), primary_key=True)
    from_uid = Column(String(64), nullable=False)
    to_uid = Column(String(64), nullable=False)
    action = Column(String(16), nullable=False)
    created_at = Column(UTCDateTime, nullable=False, default=_now_utc)

    __table_args__ = (
        Index("idx_suggestion_from_action", "from_uid", "action", "created_at"),
        Index("idx_suggestion_to_action", "to_uid", "action", "created_at"),
    )


class UserReliability(Base):
    __tablename__ = "user_reliability"

    user_id = Column(String(64), primary_key=True)
    total_matches = Column(Integer, nullable=False, default=0)
    met_confirmed = Column(Integer, nullable=False, default=0)
    cancelled_by_user = Column(Integer, nullable=False, default=0)
    no_show = Column(Integer, nullable=False, default=0)
    expired = Column(Integer, nullable=False, default=0)
    penalty_points = Column(Float, nullable=False, default=0.0)
    reliability_score = Column(Float, nullable=False, default=0.5)
    updated_at = Column(UTCDateTime, nullable=False, default=_now_utc)


class MatchEvent(Base):
    __tablename__ = "match_event"

    id = Column(String(36), primary_key=True, default=_uuid)
    match_id = Column(String(36), nullable=True)
    user_id = Column(String(64), nullable=True)
    event_type = Column(String(64), nullable=False)
    payload = Column(JSON, nullable=False, default=dict)
    created_at = Column(UTCDateTime, nullable=False, default=_now_utc)

    __table_args__ = (
        Index("idx_match_event_match_id", "match_id"),
        Index("idx_match_event_type_created", "event_type", "created_at"),
    )


class MatchMessage(Base):
    __tablename__ = "match_message"

    id = Column(String(36), primary_key=True, default=_uuid)
    match_id = Column(String(36), nullable=False)
    sender_uid = Column(String(64), nullable=False)
    content = Column(Text, nullable=False)
    created_at = Column(UTCDateTime, nullable=False, default=_now_utc)

    __table_args__ = (Index("idx_match_message_match_created", "match_id", "created_at"),)
