"""User model: identity, credentials, the OTP challenge and the revocation counter."""

from datetime import datetime
from typing import Optional

import sqlalchemy as sa
from sqlmodel import Field

from .base import TimestampMixin, UUIDMixin


class User(UUIDMixin, TimestampMixin, table=True):
    __tablename__ = "users"

    email: str = Field(nullable=False, unique=True, index=True)  # stored lower-cased
    password_hash: Optional[str] = Field(default=None)  # bcrypt; absent for OAuth-only accounts
    name: Optional[str] = Field(default=None)
    oauth_id: Optional[str] = Field(default=None, unique=True, index=True)
    is_email_verified: bool = Field(default=False, nullable=False)

    # Single outstanding OTP challenge; replaced on reissue
    otp_code: Optional[str] = Field(default=None)
    otp_expires_at: Optional[datetime] = Field(default=None, sa_type=sa.DateTime(timezone=True))
    otp_attempts: int = Field(default=0, nullable=False)

    token_version: int = Field(default=0, nullable=False, index=True)
    session_token: Optional[str] = Field(default=None)
    is_active: bool = Field(default=False, nullable=False, index=True)
    last_login_at: Optional[datetime] = Field(default=None, sa_type=sa.DateTime(timezone=True))
