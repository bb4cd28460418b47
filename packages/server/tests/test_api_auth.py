"""
Integration tests for /api/auth/* against a SQLite database.

The auth service dependency is overridden so the OTP clock, token secret,
notifier and OAuth provider are under test control.
"""

from __future__ import annotations

import uuid
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi import Depends
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.auth import OAUTH_STATE_COOKIE, get_auth_service
from app.core.database import get_session
from app.core.errors import AuthenticationError, DependencyError
from app.main import app
from app.services.auth import AuthService
from app.services.credential_store import CredentialStore
from app.services.oauth import OAuthIdentity
from app.services.otp import OTPManager


@pytest.fixture
def oauth_slot():
    """Holds the OAuth provider the app should use (None = not configured)."""
    return {"provider": None}


@pytest.fixture
async def client(session_factory, notifier, clock, tokens, oauth_slot):
    async def _session():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def _service(session: AsyncSession = Depends(get_session)) -> AuthService:
        return AuthService(
            CredentialStore(session),
            OTPManager(clock=clock),
            tokens,
            notifier,
            oauth=oauth_slot["provider"],
        )

    app.dependency_overrides[get_session] = _session
    app.dependency_overrides[get_auth_service] = _service
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


async def _register(client: AsyncClient, notifier, email="a@x.com", password="secret1") -> dict:
    resp = await client.post("/api/auth/send-otp", json={"email": email, "password": password})
    assert resp.status_code == 200
    resp = await client.post(
        "/api/auth/verify-otp", json={"email": email, "otp": notifier.last_code(email)}
    )
    assert resp.status_code == 200
    return resp.json()


def _bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


# ---------------------------------------------------------------------------
# OTP
# ---------------------------------------------------------------------------

class TestOTPEndpoints:
    async def test_send_otp(self, client, notifier):
        resp = await client.post("/api/auth/send-otp", json={"email": "A@x.com", "password": "secret1"})
        assert resp.status_code == 200
        assert resp.json()["message"] == "OTP sent to your email"
        assert resp.json()["success"] is True
        assert notifier.otps[0][0] == "a@x.com"

    async def test_send_otp_missing_email(self, client):
        resp = await client.post("/api/auth/send-otp", json={})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "MissingFields"

    async def test_send_otp_invalid_email(self, client):
        resp = await client.post("/api/auth/send-otp", json={"email": "not-an-email", "password": "secret1"})
        assert resp.status_code == 422
        body = resp.json()
        assert body["success"] is False
        assert body["message"]
        assert body["error"]["code"] == "InvalidRequest"

    async def test_send_otp_password_required(self, client):
        resp = await client.post("/api/auth/send-otp", json={"email": "new@x.com"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "PasswordRequired"

    async def test_send_otp_wrong_password_for_existing_user(self, client, notifier):
        await _register(client, notifier)
        resp = await client.post("/api/auth/send-otp", json={"email": "a@x.com", "password": "nope-nope"})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "InvalidCredentials"

    async def test_send_otp_delivery_failure(self, client, notifier):
        notifier.fail_otp = True
        resp = await client.post("/api/auth/send-otp", json={"email": "a@x.com", "password": "secret1"})
        assert resp.status_code == 503
        body = resp.json()["error"]
        assert body["code"] == "NotificationFailed"
        assert "SMTP" not in body["message"]
        assert "SMTP" not in resp.json()["message"]

    async def test_verify_otp(self, client, notifier):
        data = await _register(client, notifier)
        assert data["message"] == "Authentication successful"
        assert data["success"] is True
        assert data["token"]
        user = data["user"]
        assert user["email"] == "a@x.com"
        assert user["is_email_verified"] is True
        assert user["is_active"] is True
        assert "password_hash" not in user
        assert "otp_code" not in user

    async def test_verify_otp_wrong_code(self, client, notifier):
        await client.post("/api/auth/send-otp", json={"email": "a@x.com", "password": "secret1"})
        code = notifier.last_code("a@x.com")
        wrong = "100000" if code != "100000" else "100001"
        resp = await client.post("/api/auth/verify-otp", json={"email": "a@x.com", "otp": wrong})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "InvalidOrExpiredOTP"

    async def test_verify_otp_replay(self, client, notifier):
        await _register(client, notifier)
        resp = await client.post(
            "/api/auth/verify-otp", json={"email": "a@x.com", "otp": notifier.last_code("a@x.com")}
        )
        assert resp.status_code == 400

    async def test_verify_otp_unknown_user(self, client):
        resp = await client.post("/api/auth/verify-otp", json={"email": "ghost@x.com", "otp": "123456"})
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "UserNotFound"


# ---------------------------------------------------------------------------
# Password login
# ---------------------------------------------------------------------------

class TestLoginEndpoint:
    async def test_login(self, client, notifier):
        registered = await _register(client, notifier)
        resp = await client.post("/api/auth/login", json={"email": "a@x.com", "password": "secret1"})
        assert resp.status_code == 200
        data = resp.json()
        assert data["message"] == "Login successful"
        assert data["user"]["id"] == registered["user"]["id"]

    async def test_login_wrong_password(self, client, notifier):
        await _register(client, notifier)
        resp = await client.post("/api/auth/login", json={"email": "a@x.com", "password": "wrong-one"})
        assert resp.status_code == 401
        assert resp.json() == {
            "success": False,
            "message": "Invalid credentials",
            "error": {"code": "InvalidCredentials", "message": "Invalid credentials", "status": 401},
        }

    async def test_login_missing_fields(self, client):
        resp = await client.post("/api/auth/login", json={"email": "a@x.com"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "MissingFields"

    async def test_login_records_forwarded_ip(self, client, notifier, session_factory):
        registered = await _register(client, notifier)
        await client.post(
            "/api/auth/login",
            json={"email": "a@x.com", "password": "secret1"},
            headers={"X-Forwarded-For": "203.0.113.7, 10.0.0.1", "User-Agent": "buddy-ext/1.0"},
        )
        async with session_factory() as session:
            history = await CredentialStore(session).login_history(uuid.UUID(registered["user"]["id"]))
        assert history[0].ip_address == "203.0.113.7"
        assert history[0].user_agent == "buddy-ext/1.0"


# ---------------------------------------------------------------------------
# Session management
# ---------------------------------------------------------------------------

class TestSessionEndpoints:
    async def test_me(self, client, notifier):
        data = await _register(client, notifier)
        resp = await client.get("/api/auth/me", headers=_bearer(data["token"]))
        assert resp.status_code == 200
        assert resp.json()["user"]["email"] == "a@x.com"
        assert resp.json()["success"] is True

    async def test_me_without_token(self, client):
        resp = await client.get("/api/auth/me")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "Unauthorized"
        assert resp.json()["success"] is False
        assert resp.json()["message"] == "Not authorized. Please login."

    async def test_me_with_garbage_token(self, client):
        resp = await client.get("/api/auth/me", headers=_bearer("garbage"))
        assert resp.status_code == 401

    async def test_logout_revokes_token(self, client, notifier):
        data = await _register(client, notifier)
        resp = await client.post("/api/auth/logout", headers=_bearer(data["token"]))
        assert resp.status_code == 200
        assert resp.json()["message"] == "Logged out successfully"
        assert resp.json()["success"] is True

        resp = await client.get("/api/auth/me", headers=_bearer(data["token"]))
        assert resp.status_code == 401
        assert resp.json()["error"]["message"] == "Session expired. Please login again."

    async def test_logout_requires_token(self, client):
        resp = await client.post("/api/auth/logout")
        assert resp.status_code == 401


# ---------------------------------------------------------------------------
# Google OAuth
# ---------------------------------------------------------------------------

class TestGoogleEndpoints:
    @staticmethod
    async def _callback(client, provider, query: str, *, extension=False, nonce=None):
        state = provider.new_state(extension=extension)
        cookie = nonce if nonce is not None else state.nonce
        return await client.get(
            f"/api/auth/google/callback?state={state.value}&{query}",
            headers={"Cookie": f"{OAUTH_STATE_COOKIE}={cookie}"},
        )

    @staticmethod
    def _identity(monkeypatch, provider, identity):
        async def exchange(code):
            if isinstance(identity, Exception):
                raise identity
            return identity

        monkeypatch.setattr(provider, "exchange_code", exchange)

    async def test_not_configured(self, client):
        resp = await client.get("/api/auth/google")
        assert resp.status_code == 503
        assert resp.json()["error"] == {
            "code": "ProviderNotConfigured",
            "message": "Google OAuth is not configured",
            "status": 503,
        }

        resp = await client.get("/api/auth/google/callback?code=abc")
        assert resp.status_code == 503

    async def test_redirects_to_consent_with_signed_state(self, client, oauth_slot, oauth_provider):
        oauth_slot["provider"] = oauth_provider
        resp = await client.get("/api/auth/google?state=ext")
        assert resp.status_code == 302
        location = urlparse(resp.headers["location"])
        assert location.netloc == "accounts.google.com"

        state = parse_qs(location.query)["state"][0]
        assert state != "ext"
        nonce = resp.cookies[OAUTH_STATE_COOKIE]
        set_cookie = resp.headers["set-cookie"].lower()
        assert "httponly" in set_cookie
        assert "samesite=lax" in set_cookie
        assert oauth_provider.read_state(state, nonce) is True

    async def test_consent_then_callback(self, client, oauth_slot, oauth_provider, monkeypatch):
        self._identity(monkeypatch, oauth_provider, OAuthIdentity("google-1", "o@x.com", "Oz"))
        oauth_slot["provider"] = oauth_provider

        start = await client.get("/api/auth/google")
        state = parse_qs(urlparse(start.headers["location"]).query)["state"][0]
        nonce = start.cookies[OAUTH_STATE_COOKIE]

        resp = await client.get(
            f"/api/auth/google/callback?code=abc&state={state}",
            headers={"Cookie": f"{OAUTH_STATE_COOKIE}={nonce}"},
        )
        assert resp.status_code == 302
        location = urlparse(resp.headers["location"])
        assert location.path == "/auth/callback"
        query = parse_qs(location.query)
        assert query["email"] == ["o@x.com"]
        assert query["name"] == ["Oz"]

        me = await client.get("/api/auth/me", headers=_bearer(query["token"][0]))
        assert me.status_code == 200

    async def test_callback_extension_flow(self, client, oauth_slot, oauth_provider, monkeypatch):
        self._identity(monkeypatch, oauth_provider, OAuthIdentity("google-1", "o@x.com", "</script>"))
        oauth_slot["provider"] = oauth_provider

        resp = await self._callback(client, oauth_provider, "code=abc", extension=True)
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/html")
        assert "buddy-auth" in resp.text
        assert "window.opener.postMessage" in resp.text
        assert "<\\/script>" in resp.text

    async def test_callback_without_matching_cookie_is_rejected(self, client, oauth_slot, oauth_provider, monkeypatch):
        self._identity(monkeypatch, oauth_provider, OAuthIdentity("google-1", "o@x.com", "Oz"))
        oauth_slot["provider"] = oauth_provider

        resp = await self._callback(client, oauth_provider, "code=abc", nonce="someone-elses-nonce")
        assert resp.status_code == 302
        assert resp.headers["location"].endswith("/login?error=auth_failed")

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as fresh:
            state = oauth_provider.new_state()
            resp = await fresh.get(f"/api/auth/google/callback?code=abc&state={state.value}")
        assert resp.headers["location"].endswith("/login?error=auth_failed")

    async def test_bare_ext_state_is_rejected(self, client, oauth_slot, oauth_provider):
        oauth_slot["provider"] = oauth_provider
        resp = await client.get("/api/auth/google/callback?code=abc&state=ext")
        assert resp.status_code == 302
        assert "error=auth_failed" in resp.headers["location"]

    async def test_callback_failure_redirects_to_login(self, client, oauth_slot, oauth_provider, monkeypatch):
        self._identity(monkeypatch, oauth_provider, AuthenticationError("OAuthEmailUnverified", "unverified"))
        oauth_slot["provider"] = oauth_provider

        resp = await self._callback(client, oauth_provider, "code=abc")
        assert resp.status_code == 302
        assert resp.headers["location"].endswith("/login?error=auth_failed")

    async def test_provider_outage_redirects_with_server_error(self, client, oauth_slot, oauth_provider, monkeypatch):
        self._identity(monkeypatch, oauth_provider, DependencyError("OAuthProviderError", "down"))
        oauth_slot["provider"] = oauth_provider

        resp = await self._callback(client, oauth_provider, "code=abc")
        assert resp.headers["location"].endswith("/login?error=server_error")

    async def test_callback_without_code(self, client, oauth_slot, oauth_provider):
        oauth_slot["provider"] = oauth_provider
        resp = await self._callback(client, oauth_provider, "")
        assert resp.status_code == 302
        assert "error=auth_failed" in resp.headers["location"]
