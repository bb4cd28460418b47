"""
Google OAuth as an optional capability.

The provider object only exists when client credentials are configured; the
auth service treats a missing provider as ``ProviderNotConfigured``.

Every consent redirect carries a signed ``state`` holding a random nonce and
the extension flag. The same nonce is kept in a cookie on the browser that
started the flow; the callback accepts the state only when both match.
"""

from __future__ import annotations

import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx
import jwt
import structlog
from authlib.integrations.base_client import OAuthError
from authlib.integrations.httpx_client import AsyncOAuth2Client
from authlib.oauth2.rfc6749.parameters import prepare_grant_uri

from app.core.config import Settings
from app.core.errors import AuthenticationError, DependencyError

log = structlog.get_logger()

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://openidconnect.googleapis.com/v1/userinfo"
GOOGLE_SCOPE = "openid email profile"

STATE_TTL = timedelta(minutes=10)
STATE_AUDIENCE = "buddy-oauth-state"


@dataclass(frozen=True)
class OAuthIdentity:
    """A verified identity asserted by an external provider."""

    provider_id: str
    email: str
    name: Optional[str] = None


@dataclass(frozen=True)
class OAuthState:
    value: str  # sent to Google as ``state``
    nonce: str  # kept in the initiating browser's cookie


class GoogleOAuthProvider:
    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        *,
        state_secret: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.state_secret = state_secret
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> Optional["GoogleOAuthProvider"]:
        if not settings.google_oauth_enabled:
            return None
        return cls(
            settings.google_client_id,
            settings.google_client_secret,
            settings.google_redirect_uri,
            state_secret=settings.secret_key,
        )

    # -- state ----------------------------------------------------------------

    def new_state(self, *, extension: bool = False) -> OAuthState:
        nonce = secrets.token_urlsafe(24)
        now = datetime.now(timezone.utc)
        value = jwt.encode(
            {"nonce": nonce, "ext": extension, "aud": STATE_AUDIENCE, "iat": now, "exp": now + STATE_TTL},
            self.state_secret,
            algorithm="HS256",
        )
        return OAuthState(value=value, nonce=nonce)

    def read_state(self, value: Optional[str], nonce: Optional[str]) -> bool:
        """Check a returned state against the browser's nonce. Returns the extension flag."""
        if not value or not nonce:
            raise AuthenticationError("InvalidOAuthState", "OAuth state is missing")
        try:
            claims = jwt.decode(
                value,
                self.state_secret,
                algorithms=["HS256"],
                audience=STATE_AUDIENCE,
                options={"require": ["nonce", "exp"]},
            )
        except jwt.PyJWTError:
            raise AuthenticationError("InvalidOAuthState", "OAuth state is invalid or expired")
        if not hmac.compare_digest(str(claims["nonce"]), nonce):
            raise AuthenticationError("InvalidOAuthState", "OAuth state does not match this browser")
        return bool(claims.get("ext", False))

    # -- authorization code flow ----------------------------------------------

    def authorization_url(self, state: str) -> str:
        return prepare_grant_uri(
            GOOGLE_AUTH_URL,
            self.client_id,
            "code",
            redirect_uri=self.redirect_uri,
            scope=GOOGLE_SCOPE,
            state=state,
        )

    def _client(self) -> AsyncOAuth2Client:
        return AsyncOAuth2Client(
            client_id=self.client_id,
            client_secret=self.client_secret,
            redirect_uri=self.redirect_uri,
            scope=GOOGLE_SCOPE,
            timeout=self.timeout,
            transport=self._transport,
        )

    async def exchange_code(self, code: str) -> OAuthIdentity:
        """Trade an authorization code for the user's Google identity."""
        try:
            async with self._client() as client:
                await client.fetch_token(GOOGLE_TOKEN_URL, code=code)
                info_resp = await client.get(GOOGLE_USERINFO_URL)
                info_resp.raise_for_status()
                info = info_resp.json()
        except OAuthError as exc:
            log.warning("oauth.code_rejected", provider="google", error=exc.error)
            raise AuthenticationError("InvalidCredentials", "OAuth authorization failed") from exc
        except httpx.HTTPStatusError as exc:
            if str(exc.request.url) == GOOGLE_TOKEN_URL and exc.response.status_code == 400:
                # Bad, reused or expired code
                log.warning("oauth.code_rejected", provider="google", status=400)
                raise AuthenticationError("InvalidCredentials", "OAuth authorization failed") from exc
            log.error("oauth.exchange_failed", provider="google", error=str(exc))
            raise DependencyError("OAuthProviderError", "Identity provider request failed") from exc
        except (httpx.HTTPError, KeyError, ValueError) as exc:
            log.error("oauth.exchange_failed", provider="google", error=str(exc))
            raise DependencyError("OAuthProviderError", "Identity provider request failed") from exc

        subject = info.get("sub")
        if not subject:
            raise DependencyError("OAuthProviderError", "Identity provider returned no subject")
        email = info.get("email")
        if not email or not info.get("email_verified", False):
            raise AuthenticationError(
                "OAuthEmailUnverified", "Google account email is missing or unverified"
            )
        return OAuthIdentity(
            provider_id=str(subject),
            email=email,
            name=info.get("name"),
        )
