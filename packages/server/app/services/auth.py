"""
Authentication service: composes the credential store, OTP challenges,
session tokens, notifications and the optional OAuth provider into the
login, registration, OAuth-link and logout flows.

Per-user states: anonymous -> pending (OTP issued) -> active, and
active -> logged out. Every failure is raised as an ``AuthError`` subclass
with a stable kind; only the welcome email is best-effort.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import TokenIssuer, hash_password, verify_password
from app.core.config import AuthConfig, Settings, get_settings
from app.core.errors import (
    AuthenticationError,
    DependencyError,
    NotFoundError,
    ValidationError,
)
from app.models.base import as_utc
from app.models.user import User
from app.services.credential_store import CredentialStore
from app.services.notifications import EmailNotifier
from app.services.oauth import GoogleOAuthProvider, OAuthIdentity
from app.services.otp import OTPManager
from buddy_shared.schemas.auth import UserSummary

log = structlog.get_logger()


@dataclass(frozen=True)
class ClientInfo:
    """Where a login came from, recorded in login history."""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass(frozen=True)
class AuthResult:
    token: str
    user: UserSummary


def summarize(user: User) -> UserSummary:
    return UserSummary(
        id=user.id,
        email=user.email,
        name=user.name,
        is_email_verified=user.is_email_verified,
        is_active=user.is_active,
        created_at=as_utc(user.created_at),
        last_login_at=as_utc(user.last_login_at),
    )


class AuthService:
    def __init__(
        self,
        store: CredentialStore,
        otp: OTPManager,
        tokens: TokenIssuer,
        notifier: EmailNotifier,
        *,
        config: AuthConfig = AuthConfig(),
        oauth: Optional[GoogleOAuthProvider] = None,
    ):
        self.store = store
        self.otp = otp
        self.tokens = tokens
        self.notifier = notifier
        self.config = config
        self.oauth = oauth

    # ------------------------------------------------------------------
    # Email + OTP
    # ------------------------------------------------------------------

    async def request_challenge(
        self,
        email: Optional[str],
        password: Optional[str] = None,
        name: Optional[str] = None,
    ) -> None:
        """Register (new email) or start a login (known email) by sending an OTP."""
        if not email:
            raise ValidationError("MissingFields", "Email is required")

        user = await self.store.find_by_email(email)
        if user is None:
            if not password:
                raise ValidationError("PasswordRequired", "Password is required for new registration")
            if len(password) < self.config.min_password_length:
                raise ValidationError(
                    "PasswordTooShort",
                    f"Password must be at least {self.config.min_password_length} characters",
                )
            user = await self.store.create(email, password_hash=hash_password(password), name=name)
        elif password and user.password_hash:
            if not verify_password(password, user.password_hash):
                log.warning("auth.challenge_rejected", user_id=str(user.id), reason="bad_password")
                raise AuthenticationError("InvalidCredentials", "Invalid password")

        code = self.otp.issue(user)
        await self.store.save(user)

        # Delivery failure fails the request; the user stays pending and a
        # retry simply reissues.
        await self.notifier.send_otp(user.email, code, user.name)
        log.info("auth.challenge_sent", user_id=str(user.id))

    async def complete_challenge(
        self,
        email: Optional[str],
        otp: Optional[str],
        name: Optional[str] = None,
        client: ClientInfo = ClientInfo(),
    ) -> AuthResult:
        if not email or not otp:
            raise ValidationError("MissingFields", "Email and OTP are required")

        user = await self.store.find_by_email(email)
        if user is None:
            raise NotFoundError("UserNotFound", "User not found. Please request OTP first.")

        if not self.otp.verify(user, otp):
            # Keep the attempt count even though the request fails
            await self.store.save(user)
            log.warning("auth.otp_rejected", user_id=str(user.id), attempts=user.otp_attempts)
            raise AuthenticationError("InvalidOrExpiredOTP", "Invalid or expired OTP", status_code=400)

        if name and not user.name:
            user.name = name
        user.is_email_verified = True
        self.otp.clear(user)
        return await self._start_session(user, client, method="otp")

    # ------------------------------------------------------------------
    # Password
    # ------------------------------------------------------------------

    async def password_login(
        self,
        email: Optional[str],
        password: Optional[str],
        client: ClientInfo = ClientInfo(),
    ) -> AuthResult:
        if not email or not password:
            raise ValidationError("MissingFields", "Email and password are required")

        user = await self.store.find_by_email(email)
        if not user or not user.password_hash:
            raise AuthenticationError("InvalidCredentials", "Invalid credentials")
        if not verify_password(password, user.password_hash):
            log.warning("auth.login_failure", user_id=str(user.id), reason="bad_password")
            raise AuthenticationError("InvalidCredentials", "Invalid credentials")

        return await self._start_session(user, client, method="password")

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    @property
    def oauth_enabled(self) -> bool:
        return self.oauth is not None

    def _require_oauth(self) -> GoogleOAuthProvider:
        if self.oauth is None:
            raise DependencyError(
                "ProviderNotConfigured", "Google OAuth is not configured", public=True
            )
        return self.oauth

    def oauth_authorization_url(self, *, extension: bool = False) -> tuple[str, str]:
        """Consent URL plus the nonce the browser must hold for the callback."""
        provider = self._require_oauth()
        state = provider.new_state(extension=extension)
        return provider.authorization_url(state.value), state.nonce

    def oauth_check_state(self, state: Optional[str], nonce: Optional[str]) -> bool:
        """Validate the callback state against the browser nonce. Returns the extension flag."""
        return self._require_oauth().read_state(state, nonce)

    async def oauth_login(self, code: str, client: ClientInfo = ClientInfo()) -> AuthResult:
        """Finish the provider redirect: exchange the code, then log in or link."""
        identity = await self._require_oauth().exchange_code(code)
        return await self.oauth_complete(identity, client)

    async def oauth_complete(
        self,
        identity: OAuthIdentity,
        client: ClientInfo = ClientInfo(),
    ) -> AuthResult:
        self._require_oauth()

        user = await self.store.find_by_oauth_id(identity.provider_id)
        if user is None:
            user = await self.store.find_by_email(identity.email)
            if user is not None:
                if user.oauth_id and user.oauth_id != identity.provider_id:
                    log.warning("auth.oauth_relinked", user_id=str(user.id))
                user.oauth_id = identity.provider_id
                user.name = user.name or identity.name
                user.is_email_verified = True
                await self.store.save(user)
                log.info("auth.oauth_linked", user_id=str(user.id))
            else:
                user = await self.store.create(
                    identity.email,
                    name=identity.name,
                    oauth_id=identity.provider_id,
                    is_email_verified=True,
                )

        return await self._start_session(user, client, method="oauth")

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def authenticate(self, token: str) -> User:
        """Resolve a bearer token to its user, enforcing the revocation counter."""
        try:
            claims = self.tokens.validate(token)
        except AuthenticationError as exc:
            raise AuthenticationError("Unauthorized", exc.message) from exc

        user = await self.store.find_by_id(claims.user_id)
        if user is None:
            raise AuthenticationError("Unauthorized", "User not found. Token is invalid.")
        if claims.token_version != user.token_version:
            raise AuthenticationError("Unauthorized", "Session expired. Please login again.")
        return user

    async def current_user(self, token: str) -> UserSummary:
        return summarize(await self.authenticate(token))

    async def logout(self, token: str) -> None:
        """End the session everywhere: every token for this user stops validating."""
        user = await self.authenticate(token)
        version = await self.store.end_session(user)
        log.info("auth.logout", user_id=str(user.id), token_version=version)

    async def revoke_all(self) -> int:
        count = await self.store.revoke_all()
        log.info("auth.revoked_all", users=count)
        return count

    async def _start_session(self, user: User, client: ClientInfo, *, method: str) -> AuthResult:
        first_login = user.last_login_at is None

        await self.store.record_login(user, client.ip_address, client.user_agent)
        user.is_active = True
        token = self.tokens.mint(user.id, user.token_version)
        user.session_token = token
        await self.store.save(user)

        log.info("auth.login_success", user_id=str(user.id), method=method)
        if first_login:
            await self._send_welcome(user)
        return AuthResult(token=token, user=summarize(user))

    async def _send_welcome(self, user: User) -> None:
        try:
            await self.notifier.send_welcome(user.email, user.name)
        except DependencyError as exc:
            log.warning("email.welcome_failed", user_id=str(user.id), error=exc.message)


def build_auth_service(session: AsyncSession, settings: Optional[Settings] = None) -> AuthService:
    """Wire the production collaborators around a database session."""
    settings = settings or get_settings()
    config = AuthConfig.from_settings(settings)
    return AuthService(
        CredentialStore(session, login_history_limit=config.login_history_limit),
        OTPManager(ttl=config.otp_ttl, max_attempts=config.otp_max_attempts),
        TokenIssuer(settings.secret_key, algorithm=settings.jwt_algorithm, ttl=config.token_ttl),
        EmailNotifier.from_settings(settings),
        config=config,
        oauth=GoogleOAuthProvider.from_settings(settings),
    )
