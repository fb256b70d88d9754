"""
Tests for access token validation.

These verify that:
1. Cookie and bearer tokens both resolve the caller
2. Expired, malformed and orphaned tokens are rejected with 401
3. Dev mode error bodies carry the failure reason and a trace id
"""

from datetime import datetime, timedelta, timezone

import jwt
import pytest

pytest.importorskip("fastapi")
from fastapi.testclient import TestClient

import meetup.main as m
from meetup import repo
from meetup.auth import deps
from meetup.auth.deps import SESSION_COOKIE_NAME
from meetup.auth.security import ALGORITHM, create_access_token, hash_password, verify_password
from meetup.config import JWT_SECRET

USER = {
    "id": "user-1",
    "email": "user@example.com",
    "display_name": "User One",
    "password_hash": "unused",
    "is_email_verified": True,
    "disabled_at": None,
}


@pytest.fixture
def client(monkeypatch):
    users = {USER["id"]: dict(USER)}
    monkeypatch.setattr(repo, "get_user_by_id", lambda user_id: users.get(user_id))
    client = TestClient(m.app)
    client.users = users
    return client


def _token(user_id="user-1", verified=True):
    return create_access_token(user_id=user_id, email="user@example.com", is_email_verified=verified)


class TestTokenValidation:
    def test_bearer_token_resolves_user(self, client):
        res = client.get("/auth/me", headers={"Authorization": f"Bearer {_token()}"})
        assert res.status_code == 200
        assert res.json()["email"] == "user@example.com"

    def test_cookie_token_resolves_user(self, client):
        client.cookies.set(SESSION_COOKIE_NAME, _token())
        res = client.get("/auth/me")
        assert res.status_code == 200
        assert res.json()["id"] == "user-1"

    def test_missing_and_malformed_headers(self, client):
        assert client.get("/auth/me").status_code == 401
        assert client.get("/auth/me", headers={"Authorization": "Token abc"}).status_code == 401
        assert client.get("/auth/me", headers={"Authorization": "Bearer "}).status_code == 401

    def test_expired_token(self, client):
        past = datetime.now(timezone.utc) - timedelta(hours=2)
        token = jwt.encode(
            {"sub": "user-1", "iat": int(past.timestamp()), "exp": int((past + timedelta(minutes=5)).timestamp())},
            JWT_SECRET,
            algorithm=ALGORITHM,
        )
        res = client.get("/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert res.status_code == 401

    def test_token_signed_with_other_secret(self, client):
        token = jwt.encode({"sub": "user-1"}, "some-other-secret", algorithm=ALGORITHM)
        assert client.get("/auth/me", headers={"Authorization": f"Bearer {token}"}).status_code == 401

    def test_token_for_deleted_user(self, client):
        res = client.get("/auth/me", headers={"Authorization": f"Bearer {_token('gone')}"})
        assert res.status_code == 401

    def test_disabled_account(self, client):
        client.users["user-1"]["disabled_at"] = datetime.now(timezone.utc)
        res = client.get("/auth/me", headers={"Authorization": f"Bearer {_token()}"})
        assert res.status_code == 403

    def test_dev_mode_exposes_reason(self, client, monkeypatch):
        monkeypatch.setattr(deps, "DEV_MODE", True)
        res = client.get("/auth/me", headers={"Authorization": f"Bearer {_token('gone')}"})
        detail = res.json()["detail"]
        assert detail["reason"] == "token_user_not_found"
        assert detail["trace_id"]

    def test_prod_mode_hides_reason(self, client, monkeypatch):
        monkeypatch.setattr(deps, "DEV_MODE", False)
        detail = client.get("/auth/me").json()["detail"]
        assert "reason" not in detail
        assert detail["trace_id"]


class TestVerifiedGate:
    def test_unverified_user_blocked_from_mutations(self, client):
        client.users["user-1"]["is_email_verified"] = False
        res = client.post("/presence/end", headers={"Authorization": f"Bearer {_token()}"})
        assert res.status_code == 403
        assert res.json()["detail"]["code"] == "EMAIL_NOT_VERIFIED"

    def test_dependency_override(self, client):
        m.app.dependency_overrides[deps.require_verified_user] = lambda: dict(USER, id="nobody")
        try:
            res = client.post("/presence/end")
        finally:
            m.app.dependency_overrides = {}
        assert res.status_code == 200
        assert res.json()["ended"] is False


def test_password_hashing_round_trip():
    hashed = hash_password("correct horse")
    assert hashed != "correct horse"
    assert verify_password("correct horse", hashed)
    assert not verify_password("wrong", hashed)
