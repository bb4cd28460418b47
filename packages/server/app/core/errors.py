"""
Error taxonomy for the authentication core.

Every failure carries a stable ``kind`` (e.g. ``InvalidCredentials``) that is
returned to clients as the error code, plus a human-readable message.
"""

from __future__ import annotations

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.responses import JSONResponse

log = structlog.get_logger()


class AuthError(Exception):
    """Base class for structured authentication failures."""

    status_code = 400
    public = True  # message may be shown to the caller

    def __init__(
        self,
        kind: str,
        message: str,
        *,
        status_code: int | None = None,
        public: bool | None = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if public is not None:
            self.public = public

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind!r}, message={self.message!r})"


class ValidationError(AuthError):
    """Missing or malformed input the caller can correct."""

    status_code = 400


class AuthenticationError(AuthError):
    """Bad password, bad/expired OTP, or an invalid or revoked token."""

    status_code = 401


class NotFoundError(AuthError):
    status_code = 404


class ConflictError(AuthError):
    """Duplicate email or OAuth id on creation."""

    status_code = 409


class DependencyError(AuthError):
    """Store, mail channel or identity provider unavailable."""

    status_code = 503
    public = False


def error_body(kind: str, message: str, status: int) -> dict:
    return {
        "success": False,
        "message": message,
        "error": {"code": kind, "message": message, "status": status},
    }


async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    message = exc.message
    if isinstance(exc, DependencyError):
        log.error("dependency.failure", kind=exc.kind, detail=exc.message, path=request.url.path)
    if not exc.public:
        message = "Service temporarily unavailable. Please try again."
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(exc.kind, message, exc.status_code),
    )


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed request bodies (e.g. a bad email) in the same envelope, still 422."""
    errors = exc.errors()
    message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
    return JSONResponse(status_code=422, content=error_body("InvalidRequest", message, 422))


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AuthError, auth_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
