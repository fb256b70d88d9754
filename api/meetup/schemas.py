from typing import Literal

from pydantic import BaseModel, Field


class LoginRequest(BaseModel):
    email: str
    password: str


class PresenceStartRequest(BaseModel):
    activity: str
    duration_minutes: int
    lat: float
    lng: float
    request_id: str | None = None


class OfferCreateRequest(BaseModel):
    to_uid: str
    request_id: str | None = None


class OfferRespondRequest(BaseModel):
    action: Literal["accept", "decline"]
    request_id: str | None = None


class PlaceChoiceRequest(BaseModel):
    place_id: str | None = None
    action: Literal["choose", "tick", "find_others"] = "choose"


class CustomPlaceRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    address: str = ""
    lat: float
    lng: float
    place_id: str | None = None


class MatchCancelRequest(BaseModel):
    reason: Literal["changed_mind", "running_late", "cant_make_it", "safety", "other"] | None = None


class MatchStatusRequest(BaseModel):
    status: Literal["heading_there", "arrived", "completed"]


class ConfirmMeetingRequest(BaseModel):
    response: Literal["met", "not_met", "dismissed"]


class SuggestionRespondRequest(BaseModel):
    action: Literal["pass", "accept"]


class SendMessageRequest(BaseModel):
    content: str
