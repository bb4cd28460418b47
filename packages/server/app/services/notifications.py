"""
Email notifications: OTP codes and the first-login welcome message.

Messages go out over SMTP (STARTTLS) from a worker thread so a slow mail
server only suspends the request that is sending. Without an SMTP host,
messages are only logged when the notifier is in log-only (debug) mode;
otherwise delivery fails with NotificationFailed.
"""

from __future__ import annotations

import asyncio
import html as html_lib
import smtplib
from email.message import EmailMessage
from typing import Optional

import structlog

from app.core.config import Settings
from app.core.errors import DependencyError

log = structlog.get_logger()

PRODUCT_NAME = "Buddy Coding Assistant"


def render_otp_email(code: str, name: str, ttl_minutes: int) -> tuple[str, str, str]:
    """Returns (subject, text, html)."""
    subject = f"Your OTP for {PRODUCT_NAME}"
    text = (
        f"Hello {name},\n\n"
        f"Your one-time code is: {code}\n\n"
        f"It expires in {ttl_minutes} minutes. If you did not request it, ignore this email.\n"
    )
    html = (
        f"<p>Hello {html_lib.escape(name)},</p>"
        f"<p>Your one-time code is:</p>"
        f'<p style="font-size:32px;font-weight:bold;letter-spacing:4px">{code}</p>'
        f"<p>It expires in {ttl_minutes} minutes. If you did not request it, ignore this email.</p>"
    )
    return subject, text, html


def render_welcome_email(name: str) -> tuple[str, str, str]:
    subject = f"Welcome to {PRODUCT_NAME}"
    text = (
        f"Hi {name},\n\n"
        f"Your account is ready. Open a problem on any supported site and "
        f"Buddy will be there for hints, quizzes and chat.\n"
    )
    html = (
        f"<p>Hi {html_lib.escape(name)},</p>"
        f"<p>Your account is ready. Open a problem on any supported site and "
        f"Buddy will be there for hints, quizzes and chat.</p>"
    )
    return subject, text, html


class EmailNotifier:
    """Sends account emails through an SMTP relay."""

    def __init__(
        self,
        *,
        host: str = "",
        port: int = 587,
        username: str = "",
        password: str = "",
        sender: str = f"{PRODUCT_NAME} <no-reply@buddy.local>",
        otp_ttl_minutes: int = 10,
        timeout: float = 15.0,
        log_only: bool = False,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender = sender
        self.otp_ttl_minutes = otp_ttl_minutes
        self.timeout = timeout
        self.log_only = log_only

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailNotifier":
        return cls(
            host=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_username,
            password=settings.smtp_password,
            sender=settings.mail_from,
            otp_ttl_minutes=settings.otp_ttl_minutes,
            log_only=settings.debug,
        )

    async def send_otp(self, email: str, code: str, name: Optional[str] = None) -> None:
        subject, text, html = render_otp_email(code, name or "User", self.otp_ttl_minutes)
        if not self.host:
            self._require_log_only()
            log.warning("email.smtp_not_configured", to=email, kind="otp", code=code)
            return
        await self._send(email, subject, text, html)
        log.info("email.otp_sent", to=email)

    async def send_welcome(self, email: str, name: Optional[str] = None) -> None:
        subject, text, html = render_welcome_email(name or "User")
        if not self.host:
            self._require_log_only()
            log.info("email.smtp_not_configured", to=email, kind="welcome")
            return
        await self._send(email, subject, text, html)
        log.info("email.welcome_sent", to=email)

    def _require_log_only(self) -> None:
        if not self.log_only:
            raise DependencyError("NotificationFailed", "SMTP is not configured")

    async def _send(self, to: str, subject: str, text: str, html: str) -> None:
        msg = EmailMessage()
        msg["From"] = self.sender
        msg["To"] = to
        msg["Subject"] = subject
        msg.set_content(text)
        msg.add_alternative(html, subtype="html")
        try:
            await asyncio.to_thread(self._deliver, msg)
        except (smtplib.SMTPException, OSError) as exc:
            log.error("email.send_failed", to=to, subject=subject, error=str(exc))
            raise DependencyError("NotificationFailed", f"Failed to send email: {exc}") from exc

    def _deliver(self, msg: EmailMessage) -> None:
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
            server.starttls()
            if self.username:
                server.login(self.username, self.password)
            server.send_message(msg)
