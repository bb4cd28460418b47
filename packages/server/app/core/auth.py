"""
Credential primitives for Buddy.

- Password hashing (bcrypt, salted, slow)
- Session tokens: signed JWTs that embed the user's token version
- Bearer token extraction for request handlers

Revocation is not tracked per token. A token is only honoured while the
``token_version`` it carries equals the user's stored counter; bumping the
counter invalidates every token minted before it.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
import jwt
from fastapi import Depends
from fastapi.security import APIKeyHeader

from app.core.errors import AuthenticationError

api_key_header = APIKeyHeader(name="Authorization", auto_error=False)

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------

def hash_password(password: str) -> str:
    """Hash a password using bcrypt with cost factor 12."""
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt(rounds=12)).decode()


def verify_password(password: str, hashed: str) -> bool:
    """Verify a password against a bcrypt hash."""
    try:
        return bcrypt.checkpw(password.encode(), hashed.encode())
    except ValueError:
        # Corrupt or non-bcrypt hash
        return False


# ---------------------------------------------------------------------------
# Session tokens (JWT)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TokenClaims:
    user_id: uuid.UUID
    token_version: int


class TokenIssuer:
    """Mints and validates bearer tokens bound to a user's token version."""

    def __init__(
        self,
        secret_key: str,
        *,
        algorithm: str = "HS256",
        ttl: timedelta = timedelta(days=7),
    ):
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.ttl = ttl

    def mint(
        self,
        user_id: uuid.UUID,
        token_version: int,
        *,
        expires_delta: timedelta | None = None,
    ) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "sub": str(user_id),
            "token_version": token_version,
            "iat": now,
            "exp": now + (expires_delta if expires_delta is not None else self.ttl),
        }
        return jwt.encode(payload, self.secret_key, algorithm=self.algorithm)

    def validate(self, token: str) -> TokenClaims:
        """Decode a token. Raises AuthenticationError(InvalidToken) on any failure."""
        try:
            payload = jwt.decode(
                token,
                self.secret_key,
                algorithms=[self.algorithm],
                options={"require": ["sub", "exp"]},
            )
        except jwt.ExpiredSignatureError:
            raise AuthenticationError("InvalidToken", "Session expired. Please login again.")
        except jwt.PyJWTError:
            raise AuthenticationError("InvalidToken", "Invalid or expired token")

        version = payload.get("token_version")
        # bool is an int subclass; reject it explicitly
        if not isinstance(version, int) or isinstance(version, bool):
            raise AuthenticationError("InvalidToken", "Malformed token payload")
        try:
            user_id = uuid.UUID(str(payload["sub"]))
        except ValueError:
            raise AuthenticationError("InvalidToken", "Malformed token payload")

        return TokenClaims(user_id=user_id, token_version=version)


# ---------------------------------------------------------------------------
# Bearer extraction
# ---------------------------------------------------------------------------

def parse_bearer(authorization: Optional[str]) -> str:
    """Pull the token out of an ``Authorization: Bearer <token>`` header value."""
    if not authorization:
        raise AuthenticationError("Unauthorized", "Not authorized. Please login.")
    scheme, _, token = authorization.partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token:
        raise AuthenticationError("Unauthorized", "Not authorized. Please login.")
    return token


async def get_bearer_token(
    authorization: Optional[str] = Depends(api_key_header),
) -> str:
    """FastAPI dependency: the raw bearer token from the request."""
    return parse_bearer(authorization)
