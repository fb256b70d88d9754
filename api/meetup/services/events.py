from typing import Any

from ..models import MatchEvent


def log_match_event(
    db,
    event_type: str,
    match_id: str | None = None,
    user_id: str | None = None,
    payload: dict[str, Any] | None = None,
) -> None:
    db.add(
        MatchEvent(
            match_id=match_id,
            user_id=user_id,
            event_type=event_type,
            payload=dict(payload or {}),
        )
    )


def log_offer_event(
    db,
    event_type: str,
    offer_id: str,
    user_id: str | None = None,
    payload: dict[str, Any] | None = None,
) -> None:
    log_match_event(
        db,
        event_type=event_type,
        user_id=user_id,
        payload={"offer_id": offer_id, **(payload or {})},
    )


def log_product_event(
    db,
    event_name: str,
    user_id: str | None = None,
    properties: dict[str, Any] | None = None,
) -> None:
    log_match_event(db, event_type=f"product.{event_name}", user_id=user_id, payload=properties)
