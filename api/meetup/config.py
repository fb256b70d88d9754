import os

JWT_SECRET = os.getenv("JWT_SECRET", "")
ACCESS_TOKEN_TTL_MINUTES = int(os.getenv("ACCESS_TOKEN_TTL_MINUTES", "60"))
DEV_MODE = os.getenv("DEV_MODE", "false").lower() == "true"

ACTIVITY_CATEGORIES = ("coffee", "study", "food", "event", "explore", "sports", "other")

# Presence
PRESENCE_MIN_DURATION_MINUTES = int(os.getenv("PRESENCE_MIN_DURATION_MINUTES", "15"))
PRESENCE_MAX_DURATION_MINUTES = int(os.getenv("PRESENCE_MAX_DURATION_MINUTES", "240"))
PRESENCE_GRACE_MINUTES = int(os.getenv("PRESENCE_GRACE_MINUTES", "5"))
PRESENCE_STARTS_PER_HOUR = int(os.getenv("PRESENCE_STARTS_PER_HOUR", "100"))
REGION_MIN_LAT = float(os.getenv("REGION_MIN_LAT", "40.4"))
REGION_MAX_LAT = float(os.getenv("REGION_MAX_LAT", "41.0"))
REGION_MIN_LNG = float(os.getenv("REGION_MIN_LNG", "-74.3"))
REGION_MAX_LNG = float(os.getenv("REGION_MAX_LNG", "-73.7"))

# Offers
OFFER_TTL_MINUTES = int(os.getenv("OFFER_TTL_MINUTES", "10"))
OFFER_COOLDOWN_SECONDS = int(os.getenv("OFFER_COOLDOWN_SECONDS", "5"))
MAX_ACTIVE_OFFERS = int(os.getenv("MAX_ACTIVE_OFFERS", "3"))
INBOX_LIMIT = int(os.getenv("INBOX_LIMIT", "3"))
REJECTION_COOLDOWN_HOURS = int(os.getenv("REJECTION_COOLDOWN_HOURS", "6"))

# Matches
PAIR_GUARD_TTL_HOURS = int(os.getenv("PAIR_GUARD_TTL_HOURS", "2"))
MATCHED_PRESENCE_EXTENSION_HOURS = int(os.getenv("MATCHED_PRESENCE_EXTENSION_HOURS", "2"))
CANCEL_GRACE_SECONDS = int(os.getenv("CANCEL_GRACE_SECONDS", "60"))
CANCEL_BASE_PENALTY = float(os.getenv("CANCEL_BASE_PENALTY", "1.0"))
STALE_PENDING_MINUTES = int(os.getenv("STALE_PENDING_MINUTES", "15"))
CONFIRMATION_WINDOW_HOURS = int(os.getenv("CONFIRMATION_WINDOW_HOURS", "48"))

# Match chat
CHAT_MAX_CHARS = int(os.getenv("CHAT_MAX_CHARS", "500"))
CHAT_MAX_WORDS = int(os.getenv("CHAT_MAX_WORDS", "100"))
CHAT_MAX_MESSAGES = int(os.getenv("CHAT_MAX_MESSAGES", "400"))
CHAT_PAGE_SIZE = int(os.getenv("CHAT_PAGE_SIZE", "50"))

# Places
PLACES_HARD_CAP = int(os.getenv("PLACES_HARD_CAP", "9"))
PLACES_SOFT_MIN = int(os.getenv("PLACES_SOFT_MIN", "6"))
PLACES_SEARCH_RADII_KM = tuple(
    float(v) for v in os.getenv("PLACES_SEARCH_RADII_KM", "2,3,5").split(",") if v.strip()
)
LOCATION_DECISION_SECONDS = int(os.getenv("LOCATION_DECISION_SECONDS", "120"))
DEFAULT_LOCATION = (
    float(os.getenv("DEFAULT_LOCATION_LAT", "40.7295")),
    float(os.getenv("DEFAULT_LOCATION_LNG", "-73.9965")),
)
PLACES_TIMEZONE = os.getenv("PLACES_TIMEZONE", "America/New_York")

# Discovery
DISCOVERY_RADIUS_KM = float(os.getenv("DISCOVERY_RADIUS_KM", "5"))
DISCOVERY_MAX_DURATION_DIFF_MINUTES = int(os.getenv("DISCOVERY_MAX_DURATION_DIFF_MINUTES", "60"))
DISCOVERY_MAX_ATTEMPTS = int(os.getenv("DISCOVERY_MAX_ATTEMPTS", "3"))

# Idempotency
IDEMPOTENCY_TTL_HOURS = int(os.getenv("IDEMPOTENCY_TTL_HOURS", "2"))
IDEMPOTENCY_STALE_LOCK_SECONDS = int(os.getenv("IDEMPOTENCY_STALE_LOCK_SECONDS", "60"))
IDEMPOTENCY_MAX_ATTEMPTS = int(os.getenv("IDEMPOTENCY_MAX_ATTEMPTS", "4"))

# Transactions
TXN_MAX_ATTEMPTS = int(os.getenv("TXN_MAX_ATTEMPTS", "5"))

# Scheduled jobs
JOB_OFFER_BATCH_SIZE = int(os.getenv("JOB_OFFER_BATCH_SIZE", "100"))
JOB_PRESENCE_BATCH_SIZE = int(os.getenv("JOB_PRESENCE_BATCH_SIZE", "100"))
JOB_MATCH_BATCH_SIZE = int(os.getenv("JOB_MATCH_BATCH_SIZE", "50"))
JOB_IDEMPOTENCY_BATCH_SIZE = int(os.getenv("JOB_IDEMPOTENCY_BATCH_SIZE", "2000"))

RL_AUTH_LOGIN_LIMIT = int(os.getenv("RL_AUTH_LOGIN_LIMIT", "100"))
RL_PRESENCE_LIMIT = int(os.getenv("RL_PRESENCE_LIMIT", "60"))
RL_OFFER_CREATE_LIMIT = int(os.getenv("RL_OFFER_CREATE_LIMIT", "60"))
RL_OFFER_RESPOND_LIMIT = int(os.getenv("RL_OFFER_RESPOND_LIMIT", "100"))
RL_MATCH_ACTION_LIMIT = int(os.getenv("RL_MATCH_ACTION_LIMIT", "120"))
RL_WINDOW_SECONDS = int(os.getenv("RL_WINDOW_SECONDS", "60"))
