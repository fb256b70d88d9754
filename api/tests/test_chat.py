from datetime import timedelta

import pytest

from meetup import database
from meetup.config import CHAT_MAX_MESSAGES
from meetup.models import Match, MatchMessage
from meetup.services import chat, matches
from meetup.services.errors import (
    FailedPrecondition,
    InvalidArgument,
    NotFound,
    PermissionDenied,
    ResourceExhausted,
)

from conftest import NOW


def test_send_trims_and_stamps_match(pair, make_match, get_row, all_rows):
    match_id = make_match("alice", "bob")
    at = NOW + timedelta(minutes=1)

    res = chat.send_message("alice", match_id, "  see you at the corner  ", now=at)

    assert res["success"] is True
    message = get_row(MatchMessage, res["message_id"])
    assert message.content == "see you at the corner"
    assert message.sender_uid == "alice"
    match = get_row(Match, match_id)
    assert match.last_message_at == at
    assert match.last_sender_uid == "alice"
    assert len(all_rows(MatchMessage)) == 1


def test_list_returns_latest_page_in_order(pair, make_match):
    match_id = make_match("alice", "bob")
    for i in range(5):
        sender = "alice" if i % 2 == 0 else "bob"
        chat.send_message(sender, match_id, f"message {i}", now=NOW + timedelta(seconds=i))

    page = chat.list_messages("bob", match_id, limit=3)["messages"]

    assert [m["content"] for m in page] == ["message 2", "message 3", "message 4"]
    assert [m["sender_uid"] for m in page] == ["alice", "bob", "alice"]


@pytest.mark.parametrize(
    "content",
    [None, "", "   ", "x" * 501, " ".join(["word"] * 101)],
)
def test_rejects_bad_content(pair, make_match, content, all_rows):
    match_id = make_match("alice", "bob")
    with pytest.raises(InvalidArgument):
        chat.send_message("alice", match_id, content, now=NOW)
    assert all_rows(MatchMessage) == []


def test_limits_are_inclusive(pair, make_match):
    match_id = make_match("alice", "bob")
    assert chat.send_message("alice", match_id, "x" * 500, now=NOW)["success"] is True
    assert chat.send_message("alice", match_id, " ".join(["ok"] * 100), now=NOW)["success"] is True


def test_only_participants_may_chat(pair, make_user, make_match):
    make_user("mallory")
    match_id = make_match("alice", "bob")

    with pytest.raises(PermissionDenied):
        chat.send_message("mallory", match_id, "hi", now=NOW)
    with pytest.raises(PermissionDenied):
        chat.list_messages("mallory", match_id)
    with pytest.raises(NotFound):
        chat.send_message("alice", "missing", "hi", now=NOW)


def test_closed_match_is_read_only(pair, make_match):
    match_id = make_match("alice", "bob")
    chat.send_message("bob", match_id, "running late?", now=NOW)
    matches.cancel_match("alice", match_id, reason="cant_make_it", now=NOW + timedelta(seconds=20))

    with pytest.raises(FailedPrecondition):
        chat.send_message("bob", match_id, "hello?", now=NOW + timedelta(minutes=1))
    assert len(chat.list_messages("alice", match_id)["messages"]) == 1


def test_chat_caps_total_messages(pair, make_match):
    match_id = make_match("alice", "bob")
    with database.SessionLocal() as db:
        db.add_all(
            MatchMessage(match_id=match_id, sender_uid="alice", content=f"m{i}", created_at=NOW)
            for i in range(CHAT_MAX_MESSAGES)
        )
        db.commit()

    with pytest.raises(ResourceExhausted) as exc:
        chat.send_message("bob", match_id, "one more", now=NOW)
    assert exc.value.code == "CHAT_FULL"
