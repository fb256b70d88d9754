ACTIVE_MATCH_STATUSES = ("pending", "location_deciding", "place_confirmed", "heading_there", "arrived")
TERMINAL_MATCH_STATUSES = ("completed", "cancelled")
PENDING_CONFIRMATION = "expired_pending_confirmation"

# Statuses a presence lapse hands over to meeting confirmation instead of cancelling.
CONFIRMABLE_STATUSES = ("place_confirmed", "heading_there", "arrived")

USER_STATUS_ORDER = {"pending": 0, "heading_there": 1, "arrived": 2, "completed": 3}
USER_SETTABLE_STATUSES = ("heading_there", "arrived", "completed")

USER_CANCEL_REASONS = ("changed_mind", "running_late", "cant_make_it", "safety", "other")
# The only reasons a participant may give that waive the penalty.
USER_WAIVED_CANCEL_REASONS = frozenset({"safety"})


def is_active(status: str | None) -> bool:
    return status in ACTIVE_MATCH_STATUSES


def is_terminal(status: str | None) -> bool:
    return status in TERMINAL_MATCH_STATUSES


def promote_status(current: str, user1_status: str | None, user2_status: str | None) -> str:
    """Overall status after a per-user sub-status change."""
    moving = {"heading_there", "arrived"}
    if user1_status == "completed" and user2_status == "completed":
        return "completed"
    if user1_status == "arrived" and user2_status == "arrived":
        return "arrived"
    if user1_status in moving and user2_status in moving:
        return "heading_there"
    return current


def can_cancel(status: str | None) -> bool:
    return status not in TERMINAL_MATCH_STATUSES


def is_severe_cancel(other_user_status: str | None) -> bool:
    return other_user_status in ("heading_there", "arrived")


def cancellation_penalty(
    reason: str | None,
    cancelled_by: str,
    seconds_since_match: float,
    severe: bool,
    grace_seconds: float,
    base_penalty: float,
) -> float:
    if cancelled_by == "system":
        return 0.0
    if reason in USER_WAIVED_CANCEL_REASONS:
        return 0.0
    if seconds_since_match <= grace_seconds:
        return 0.0
    return base_penalty * 2 if severe else base_penalty


def resolve_confirmation_outcome(responses: list[str]) -> tuple[str, str]:
    """Map both users' effective responses to (final status, outcome)."""
    if any(r == "dismissed" for r in responses):
        return "cancelled", "unconfirmed"
    if all(r == "met" for r in responses):
        return "completed", "both_confirmed"
    if all(r == "not_met" for r in responses):
        return "cancelled", "both_not_met"
    return "cancelled", "disputed"
