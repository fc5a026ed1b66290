"""
tests/test_auth_routes.py -- Integration tests for /api/auth/*.

Every test drives the real ASGI stack through the harness TestClient; emails
are captured by RecordingMailer so verification tokens can be replayed.

Coverage:
  - register: 201 + cookies + verification email; duplicate (any case) -> 409
  - register race: store-level UNIQUE violation still answers 409
  - register validation -> 400 with a per-field errors map
  - login: unknown email / wrong password / unverified / success
  - login rate limit: 6th attempt in the window -> 429 + Retry-After;
    a successful login clears the counter
  - me via cookie and via Bearer; logout; refresh rotation
  - verify-email (GET) and resend (POST)
  - email delivery failure never fails the request
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from starlette.requests import Request

from api.limiter import client_identifier
from auth.models import IdentityClaims
from auth.tokens import ACCESS_TOKEN_COOKIE, REFRESH_TOKEN_COOKIE

# Same as conftest.DEFAULT_PASSWORD, the create_user fixture default.
DEFAULT_PASSWORD = "correct-horse-battery"

REGISTER_BODY = {"name": "Ada Lovelace", "email": "ada@example.com", "password": DEFAULT_PASSWORD}


def _set_cookie_headers(resp) -> list[str]:
    return resp.headers.get_list("set-cookie")


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


class TestRegister:
    def test_creates_unverified_account_with_session(self, harness) -> None:
        resp = harness.client.post("/api/auth/register", json=REGISTER_BODY)
        assert resp.status_code == 201, resp.text
        body = resp.json()
        assert body["success"] is True
        assert body["data"]["email"] == "ada@example.com"
        assert body["data"]["is_verified"] is False
        assert body["data"]["role"] == "user"
        assert "hashed_password" not in body["data"]
        assert resp.cookies.get(ACCESS_TOKEN_COOKIE)
        assert resp.cookies.get(REFRESH_TOKEN_COOKIE)
        assert resp.headers["cache-control"] == "no-store"

    def test_sends_verification_email(self, harness) -> None:
        harness.client.post("/api/auth/register", json=REGISTER_BODY)
        email = harness.mailer.last("verification", "ada@example.com")
        assert email.name == "Ada Lovelace"
        assert len(email.token) == 64

    def test_password_is_stored_hashed(self, harness) -> None:
        harness.client.post("/api/auth/register", json=REGISTER_BODY)
        user = harness.user_store.find_by_email("ada@example.com")
        assert user.hashed_password and user.hashed_password != DEFAULT_PASSWORD
        assert user.hashed_password.startswith("$2")

    @pytest.mark.parametrize("email", ["ada@example.com", "ADA@Example.com", "  ada@example.com "])
    def test_duplicate_email_conflicts(self, harness, create_user, email: str) -> None:
        create_user(email="ada@example.com")
        resp = harness.client.post("/api/auth/register", json=dict(REGISTER_BODY, email=email))
        assert resp.status_code == 409
        body = resp.json()
        assert body["success"] is False
        assert body["message"] == "Email already registered"
        assert body["errors"]["email"] == "An account with this email already exists"

    def test_unique_index_catches_race(self, harness, create_user, monkeypatch) -> None:
        create_user(email="ada@example.com")
        # Simulate a concurrent registration slipping past the pre-check.
        monkeypatch.setattr(harness.user_store, "find_by_email", lambda email: None)
        resp = harness.client.post("/api/auth/register", json=REGISTER_BODY)
        assert resp.status_code == 409
        assert resp.json()["errors"]["email"] == "An account with this email already exists"

    def test_invalid_fields_reported_per_field(self, client: TestClient) -> None:
        resp = client.post("/api/auth/register", json={"name": "A", "email": "not-an-email", "password": "short"})
        assert resp.status_code == 400
        body = resp.json()
        assert body["success"] is False
        assert body["message"] == "Validation failed"
        assert body["errors"] == {
            "name": "Name must be at least 2 characters",
            "email": "Please enter a valid email address",
            "password": "Password must be at least 8 characters",
        }

    def test_missing_fields_are_required(self, client: TestClient) -> None:
        resp = client.post("/api/auth/register", json={})
        assert resp.status_code == 400
        errors = resp.json()["errors"]
        assert errors["name"] == "Name is required"
        assert errors["email"] == "Email is required"
        assert errors["password"] == "Password is required"

    def test_email_failure_does_not_fail_registration(self, harness) -> None:
        harness.mailer.fail = True
        resp = harness.client.post("/api/auth/register", json=REGISTER_BODY)
        assert resp.status_code == 201
        assert harness.user_store.find_by_email("ada@example.com") is not None

    def test_register_rate_limited(self, client: TestClient) -> None:
        for i in range(3):
            client.post("/api/auth/register", json=dict(REGISTER_BODY, email=f"user{i}@example.com"))
        resp = client.post("/api/auth/register", json=dict(REGISTER_BODY, email="late@example.com"))
        assert resp.status_code == 429
        assert resp.json()["message"] == "Too many registration attempts. Please try again later."
        assert int(resp.headers["retry-after"]) >= 1


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


class TestLogin:
    def test_verified_user_logs_in(self, harness, create_user, login) -> None:
        create_user(email="ada@example.com")
        resp = login("ada@example.com")
        assert resp.status_code == 200, resp.text
        body = resp.json()
        assert body["message"] == "Login successful"
        assert body["data"]["email"] == "ada@example.com"
        assert resp.cookies.get(ACCESS_TOKEN_COOKIE)
        assert resp.headers["cache-control"] == "no-store"
        assert harness.user_store.find_by_email("ada@example.com").last_login_at is not None

    def test_email_is_case_insensitive(self, create_user, login) -> None:
        create_user(email="ada@example.com")
        assert login("ADA@EXAMPLE.COM").status_code == 200

    def test_unknown_email(self, login) -> None:
        resp = login("nobody@example.com")
        assert resp.status_code == 401
        body = resp.json()
        assert body["message"] == "Invalid credentials"
        assert body["errors"] == {"email": "No account found with this email"}

    def test_wrong_password(self, create_user, login) -> None:
        create_user(email="ada@example.com")
        resp = login("ada@example.com", "wrong-password")
        assert resp.status_code == 401
        assert resp.json()["errors"] == {"password": "Incorrect password"}

    def test_unverified_account_needs_verification(self, create_user, login) -> None:
        create_user(email="new@example.com", verified=False)
        resp = login("new@example.com")
        assert resp.status_code == 403
        body = resp.json()
        assert body["requires_verification"] is True
        assert "email" in body["errors"]
        assert ACCESS_TOKEN_COOKIE not in resp.cookies

    def test_missing_password(self, client: TestClient) -> None:
        resp = client.post("/api/auth/login", json={"email": "ada@example.com", "password": ""})
        assert resp.status_code == 400
        assert resp.json()["errors"]["password"] == "Password is required"

    def test_sixth_attempt_is_throttled(self, harness, create_user, login) -> None:
        create_user(email="ada@example.com")
        for _ in range(5):
            assert login("ada@example.com", "wrong-password").status_code == 401
        resp = login("ada@example.com", "wrong-password")
        assert resp.status_code == 429
        assert resp.json()["message"] == "Too many login attempts. Please try again later."
        assert resp.headers["retry-after"] == "900"

    def test_throttle_applies_before_validation(self, login) -> None:
        for _ in range(5):
            login("", "")
        assert login("", "").status_code == 429

    def test_window_elapses(self, harness, create_user, login) -> None:
        create_user(email="ada@example.com")
        for _ in range(6):
            login("ada@example.com", "wrong-password")
        harness.clock.advance(15 * 60)
        assert login("ada@example.com").status_code == 200

    def test_success_resets_counter(self, create_user, login) -> None:
        create_user(email="ada@example.com")
        for _ in range(4):
            login("ada@example.com", "wrong-password")
        assert login("ada@example.com").status_code == 200
        for _ in range(5):
            assert login("ada@example.com", "wrong-password").status_code == 401

    def test_spoofed_forwarded_for_shares_one_bucket(self, client: TestClient, create_user) -> None:
        """Rotating X-Forwarded-For must not buy a fresh login budget."""
        create_user(email="ada@example.com")
        codes = [
            client.post(
                "/api/auth/login",
                json={"email": "ada@example.com", "password": "wrong-password"},
                headers={"X-Forwarded-For": f"10.0.0.{i}"},
            ).status_code
            for i in range(8)
        ]
        assert codes[:5] == [401] * 5
        assert codes[5:] == [429] * 3


# ---------------------------------------------------------------------------
# Session: me / logout / refresh
# ---------------------------------------------------------------------------


class TestSession:
    def test_me_with_cookie(self, create_user, login, client: TestClient) -> None:
        user = create_user(email="ada@example.com", name="Ada Lovelace")
        login("ada@example.com")
        resp = client.get("/api/auth/me")
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["id"] == user.id
        assert data["name"] == "Ada Lovelace"

    def test_me_with_bearer_header(self, create_user, client: TestClient, issuer) -> None:
        user = create_user(email="ada@example.com")
        token = issuer.issue_access(user.identity())
        resp = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 200
        assert resp.json()["data"]["email"] == "ada@example.com"

    def test_me_anonymous(self, client: TestClient) -> None:
        resp = client.get("/api/auth/me")
        assert resp.status_code == 401
        assert resp.json() == {"success": False, "message": "Not authenticated"}

    def test_me_with_garbage_token(self, client: TestClient) -> None:
        resp = client.get("/api/auth/me", headers={"Authorization": "Bearer not.a.token"})
        assert resp.status_code == 401

    def test_me_for_deleted_account(self, client: TestClient, issuer, create_user) -> None:
        user = create_user()
        ghost = IdentityClaims(subject="9999", email=user.email, role=user.role, verified=True)
        resp = client.get("/api/auth/me", headers={"Authorization": f"Bearer {issuer.issue_access(ghost)}"})
        assert resp.status_code == 404
        assert resp.json()["message"] == "User not found"

    def test_logout_expires_cookies(self, create_user, login, client: TestClient) -> None:
        create_user(email="ada@example.com")
        login("ada@example.com")
        resp = client.post("/api/auth/logout")
        assert resp.status_code == 200
        assert resp.json()["message"] == "Logged out successfully"
        cookies = _set_cookie_headers(resp)
        assert any(c.startswith(f"{ACCESS_TOKEN_COOKIE}=") and "Max-Age=0" in c for c in cookies)
        assert any(c.startswith(f"{REFRESH_TOKEN_COOKIE}=") and "Max-Age=0" in c for c in cookies)
        assert client.get("/api/auth/me").status_code == 401

    def test_logout_without_session(self, client: TestClient) -> None:
        assert client.post("/api/auth/logout").status_code == 200

    def test_refresh_rotates_pair(self, create_user, login, client: TestClient, issuer) -> None:
        user = create_user(email="ada@example.com")
        login("ada@example.com")
        resp = client.post("/api/auth/refresh")
        assert resp.status_code == 200
        assert resp.json()["message"] == "Token refreshed successfully"
        payload = issuer.verify(resp.cookies[ACCESS_TOKEN_COOKIE])
        assert payload is not None
        assert payload.claims == user.identity()
        assert issuer.verify(resp.cookies[REFRESH_TOKEN_COOKIE]) is not None

    def test_refresh_without_cookie(self, client: TestClient) -> None:
        resp = client.post("/api/auth/refresh")
        assert resp.status_code == 401
        assert resp.json()["message"] == "No refresh token provided"

    def test_refresh_with_invalid_cookie(self, client: TestClient) -> None:
        client.cookies.set(REFRESH_TOKEN_COOKIE, "garbage")
        resp = client.post("/api/auth/refresh")
        assert resp.status_code == 401
        assert resp.json()["message"] == "Invalid or expired refresh token"


# ---------------------------------------------------------------------------
# Email verification
# ---------------------------------------------------------------------------


class TestVerifyEmail:
    def _register(self, harness) -> str:
        harness.client.post("/api/auth/register", json=REGISTER_BODY)
        harness.client.cookies.clear()
        return harness.mailer.last("verification", "ada@example.com").token

    def test_verifies_account(self, harness, login) -> None:
        token = self._register(harness)
        resp = harness.client.get("/api/auth/verify-email", params={"token": token})
        assert resp.status_code == 200, resp.text
        assert resp.json()["message"] == "Email verified successfully. You can now log in."
        user = harness.user_store.find_by_email("ada@example.com")
        assert user.is_verified is True
        assert user.verification_token_hash is None
        assert login("ada@example.com").status_code == 200

    def test_token_is_single_use(self, harness) -> None:
        token = self._register(harness)
        harness.client.get("/api/auth/verify-email", params={"token": token})
        resp = harness.client.get("/api/auth/verify-email", params={"token": token})
        assert resp.status_code == 400
        assert resp.json()["message"] == "Invalid or expired verification token"

    def test_missing_token(self, client: TestClient) -> None:
        resp = client.get("/api/auth/verify-email")
        assert resp.status_code == 400
        assert resp.json()["message"] == "Verification token is required"

    def test_unknown_token(self, client: TestClient) -> None:
        resp = client.get("/api/auth/verify-email", params={"token": "f" * 64})
        assert resp.status_code == 400

    def test_expired_token(self, harness) -> None:
        token = self._register(harness)
        user = harness.user_store.find_by_email("ada@example.com")
        user.verification_expires = datetime.now(timezone.utc) - timedelta(minutes=1)
        harness.user_store.save(user)
        resp = harness.client.get("/api/auth/verify-email", params={"token": token})
        assert resp.status_code == 400
        assert harness.user_store.find_by_email("ada@example.com").is_verified is False

    def test_resend_for_unknown_email_is_generic(self, harness) -> None:
        resp = harness.client.post("/api/auth/verify-email", json={"email": "nobody@example.com"})
        assert resp.status_code == 200
        assert resp.json()["message"] == "If an account exists, a verification email has been sent."
        assert harness.mailer.sent == []

    def test_resend_for_verified_account(self, harness, create_user) -> None:
        create_user(email="ada@example.com")
        resp = harness.client.post("/api/auth/verify-email", json={"email": "ada@example.com"})
        assert resp.status_code == 200
        assert resp.json()["message"] == "Email is already verified."
        assert harness.mailer.sent == []

    def test_resend_replaces_token(self, harness) -> None:
        first = self._register(harness)
        resp = harness.client.post("/api/auth/verify-email", json={"email": "ada@example.com"})
        assert resp.status_code == 200
        assert resp.json()["message"] == "Verification email sent. Please check your inbox."
        second = harness.mailer.last("verification", "ada@example.com").token
        assert second != first
        assert harness.client.get("/api/auth/verify-email", params={"token": first}).status_code == 400
        assert harness.client.get("/api/auth/verify-email", params={"token": second}).status_code == 200

    def test_resend_validates_email(self, client: TestClient) -> None:
        resp = client.post("/api/auth/verify-email", json={"email": "nope"})
        assert resp.status_code == 400
        assert resp.json()["errors"]["email"] == "Please enter a valid email address"


# ---------------------------------------------------------------------------
# Client identity for rate limiting
# ---------------------------------------------------------------------------


def _request(client, headers=()) -> Request:
    return Request({"type": "http", "client": client, "headers": list(headers)})


def test_client_identifier_ignores_forwarded_header() -> None:
    request = _request(("198.51.100.7", 50000), [(b"x-forwarded-for", b"203.0.113.9, 10.0.0.1")])
    assert client_identifier(request) == "198.51.100.7"


def test_client_identifier_without_peer() -> None:
    assert client_identifier(_request(None)) == "unknown"
