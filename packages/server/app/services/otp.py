"""
One-time email codes.

A user has at most one outstanding challenge: ``issue`` overwrites the code,
expiry and attempt counter in place. Wrong guesses are counted; once the
attempt budget is spent the challenge is burned and a fresh one must be
requested.
"""

from __future__ import annotations

import hmac
import secrets
from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog

from app.models.base import as_utc, utcnow
from app.models.user import User

log = structlog.get_logger()

OTP_DIGITS = 6


class OTPManager:
    def __init__(
        self,
        *,
        ttl: timedelta = timedelta(minutes=10),
        max_attempts: int = 5,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.ttl = ttl
        self.max_attempts = max_attempts
        self.clock = clock

    @staticmethod
    def generate_code() -> str:
        """Uniform 6-digit code with no leading zero."""
        low = 10 ** (OTP_DIGITS - 1)
        return str(low + secrets.randbelow(9 * low))

    def issue(self, user: User) -> str:
        """Attach a fresh challenge to the user, replacing any prior one. Caller persists."""
        code = self.generate_code()
        user.otp_code = code
        user.otp_expires_at = self.clock() + self.ttl
        user.otp_attempts = 0
        log.info("auth.otp_issued", user_id=str(user.id))
        return code

    def has_challenge(self, user: User) -> bool:
        return bool(user.otp_code) and user.otp_expires_at is not None

    def verify(self, user: User, candidate: Optional[str]) -> bool:
        """Check a candidate code. A mismatch counts against the attempt budget."""
        if not self.has_challenge(user):
            return False
        if self.clock() > as_utc(user.otp_expires_at):
            return False
        if user.otp_attempts >= self.max_attempts:
            return False

        candidate = (candidate or "").strip()
        if hmac.compare_digest(candidate.encode(), user.otp_code.encode()):
            return True

        user.otp_attempts += 1
        if user.otp_attempts >= self.max_attempts:
            log.warning("auth.otp_attempts_exhausted", user_id=str(user.id))
            self.clear(user)
        return False

    def clear(self, user: User) -> None:
        user.otp_code = None
        user.otp_expires_at = None
        user.otp_attempts = 0
