"""
API Router

Authentication endpoints live under /api/auth, matching the paths the
browser extension calls.
"""

from fastapi import APIRouter

from buddy_shared.schemas.common import ErrorResponse

from . import auth

router = APIRouter()

router.include_router(
    auth.router,
    prefix="/auth",
    tags=["Authentication"],
    responses={
        400: {"model": ErrorResponse},
        401: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
)


@router.get("/", tags=["API"])
async def api_root():
    """List available API endpoints."""
    return {
        "api": "buddy",
        "endpoints": [
            "/api/auth/send-otp",
            "/api/auth/verify-otp",
            "/api/auth/login",
            "/api/auth/google",
            "/api/auth/google/callback",
            "/api/auth/me",
            "/api/auth/logout",
        ],
    }
