"""Authentication request/response schemas."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------
# Fields are optional at the schema level so that missing input surfaces as
# the service's MissingFields / PasswordRequired errors rather than a 422.

class SendOTPRequest(BaseModel):
    """Start registration or login by email code."""
    email: Optional[EmailStr] = None
    password: Optional[str] = None
    name: Optional[str] = Field(default=None, max_length=200)


class VerifyOTPRequest(BaseModel):
    """Complete an outstanding email-code challenge."""
    email: Optional[EmailStr] = None
    otp: Optional[str] = None
    name: Optional[str] = Field(default=None, max_length=200)


class LoginRequest(BaseModel):
    email: Optional[EmailStr] = None
    password: Optional[str] = None


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------

class UserSummary(BaseModel):
    """Outward view of a user. Never carries credentials or OTP state."""
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    email: str
    name: Optional[str] = None
    is_email_verified: bool = False
    is_active: bool = False
    created_at: datetime
    last_login_at: Optional[datetime] = None


class AuthResponse(BaseModel):
    success: bool = True
    message: str
    token: str
    user: UserSummary


class CurrentUserResponse(BaseModel):
    success: bool = True
    user: UserSummary
