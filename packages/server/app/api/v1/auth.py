"""
Authentication endpoints.

- Email + OTP registration/login
- Email/password login
- Google OAuth login and account linking
- Current user and logout (bearer token)
"""

from __future__ import annotations

import json
from typing import Optional
from urllib.parse import urlencode

import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import get_bearer_token
from app.core.config import get_settings
from app.core.database import get_session
from app.core.errors import AuthError, DependencyError
from app.models.user import User
from app.services.auth import AuthResult, AuthService, ClientInfo, build_auth_service, summarize
from app.services.oauth import STATE_TTL
from buddy_shared.schemas.auth import (
    AuthResponse,
    CurrentUserResponse,
    LoginRequest,
    SendOTPRequest,
    VerifyOTPRequest,
)
from buddy_shared.schemas.common import MessageResponse

log = structlog.get_logger()
settings = get_settings()
router = APIRouter()


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

async def get_auth_service(session: AsyncSession = Depends(get_session)) -> AuthService:
    return build_auth_service(session, settings)


def get_client_info(request: Request) -> ClientInfo:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        ip = forwarded.split(",")[0].strip()
    else:
        ip = request.client.host if request.client else None
    return ClientInfo(ip_address=ip, user_agent=request.headers.get("user-agent"))


async def get_current_user(
    token: str = Depends(get_bearer_token),
    service: AuthService = Depends(get_auth_service),
) -> User:
    """Resolve the bearer token to a user; 401 if invalid, expired or revoked."""
    return await service.authenticate(token)


def _auth_response(result: AuthResult, message: str) -> AuthResponse:
    return AuthResponse(message=message, token=result.token, user=result.user)


# ---------------------------------------------------------------------------
# Email + OTP
# ---------------------------------------------------------------------------

@router.post("/send-otp", response_model=MessageResponse)
async def send_otp(
    body: SendOTPRequest,
    service: AuthService = Depends(get_auth_service),
):
    """Register a new account or start a login; emails a one-time code."""
    await service.request_challenge(body.email, body.password, body.name)
    return MessageResponse(message="OTP sent to your email")


@router.post("/verify-otp", response_model=AuthResponse)
async def verify_otp(
    body: VerifyOTPRequest,
    client: ClientInfo = Depends(get_client_info),
    service: AuthService = Depends(get_auth_service),
):
    """Complete the email challenge and receive a session token."""
    result = await service.complete_challenge(body.email, body.otp, body.name, client)
    return _auth_response(result, "Authentication successful")


# ---------------------------------------------------------------------------
# Email/Password
# ---------------------------------------------------------------------------

@router.post("/login", response_model=AuthResponse)
async def login(
    body: LoginRequest,
    client: ClientInfo = Depends(get_client_info),
    service: AuthService = Depends(get_auth_service),
):
    result = await service.password_login(body.email, body.password, client)
    return _auth_response(result, "Login successful")


# ---------------------------------------------------------------------------
# Google OAuth
# ---------------------------------------------------------------------------

def _extension_handoff(result: AuthResult) -> HTMLResponse:
    """Page that hands the token to the extension window that opened it, then closes."""
    payload = json.dumps(
        {
            "source": "buddy-auth",
            "token": result.token,
            "email": result.user.email,
            "name": result.user.name or "",
        }
    ).replace("</", "<\\/")
    html = (
        "<!doctype html><html><body><script>\n"
        "try {\n"
        f"  if (window.opener) {{ window.opener.postMessage({payload}, '*'); }}\n"
        "} catch (e) {}\n"
        "window.close();\n"
        "</script><p>You can close this window.</p></body></html>"
    )
    return HTMLResponse(html)


OAUTH_STATE_COOKIE = "buddy_oauth_state"
OAUTH_COOKIE_PATH = "/api/auth/google"


def _redirect(url: str) -> RedirectResponse:
    response = RedirectResponse(url, status_code=302)
    response.delete_cookie(OAUTH_STATE_COOKIE, path=OAUTH_COOKIE_PATH)
    return response


@router.get("/google")
async def google_login(
    request: Request,
    state: Optional[str] = None,
    service: AuthService = Depends(get_auth_service),
):
    """Redirect to Google's consent screen. ``state=ext`` marks the extension flow."""
    url, nonce = service.oauth_authorization_url(extension=state == "ext")
    response = RedirectResponse(url, status_code=302)
    response.set_cookie(
        OAUTH_STATE_COOKIE,
        nonce,
        max_age=int(STATE_TTL.total_seconds()),
        path=OAUTH_COOKIE_PATH,
        httponly=True,
        samesite="lax",
        secure=request.url.scheme == "https",
    )
    return response


@router.get("/google/callback")
async def google_callback(
    request: Request,
    code: Optional[str] = None,
    state: Optional[str] = None,
    client: ClientInfo = Depends(get_client_info),
    service: AuthService = Depends(get_auth_service),
):
    if not service.oauth_enabled:
        raise DependencyError("ProviderNotConfigured", "Google OAuth is not configured", public=True)

    frontend = settings.frontend_url.rstrip("/")
    try:
        extension = service.oauth_check_state(state, request.cookies.get(OAUTH_STATE_COOKIE))
    except AuthError as exc:
        log.warning("auth.oauth_state_rejected", kind=exc.kind, detail=exc.message)
        return _redirect(f"{frontend}/login?error=auth_failed")

    if not code:
        return _redirect(f"{frontend}/login?error=auth_failed")

    try:
        result = await service.oauth_login(code, client)
    except DependencyError as exc:
        log.error("auth.oauth_callback_failed", kind=exc.kind, detail=exc.message)
        return _redirect(f"{frontend}/login?error=server_error")
    except AuthError as exc:
        log.warning("auth.oauth_callback_failed", kind=exc.kind)
        return _redirect(f"{frontend}/login?error=auth_failed")

    if extension:
        response = _extension_handoff(result)
        response.delete_cookie(OAUTH_STATE_COOKIE, path=OAUTH_COOKIE_PATH)
        return response

    query = urlencode(
        {"token": result.token, "email": result.user.email, "name": result.user.name or ""}
    )
    return _redirect(f"{frontend}/auth/callback?{query}")


# ---------------------------------------------------------------------------
# Session Management
# ---------------------------------------------------------------------------

@router.get("/me", response_model=CurrentUserResponse)
async def me(user: User = Depends(get_current_user)):
    return CurrentUserResponse(user=summarize(user))


@router.post("/logout", response_model=MessageResponse)
async def logout(
    token: str = Depends(get_bearer_token),
    service: AuthService = Depends(get_auth_service),
):
    """Log out everywhere: every token issued to this user stops working."""
    await service.logout(token)
    return MessageResponse(message="Logged out successfully")
