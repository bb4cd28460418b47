"""
Buddy API Server

Entry point for the FastAPI application.
"""

import structlog
from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.responses import JSONResponse

from app.api.v1 import router as api_router
from app.core.config import DEFAULT_SECRET_KEY, get_settings
from app.core.database import engine, get_session, init_db, ping
from app.core.errors import register_error_handlers
from app.core.logging import configure_logging

settings = get_settings()
log = structlog.get_logger()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    configure_logging(settings.log_level, settings.log_format)

    app = FastAPI(
        title="Buddy",
        description="Authentication and session backend for the Buddy coding assistant extension.",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type", "Authorization"],
    )

    register_error_handlers(app)

    app.include_router(api_router, prefix="/api")

    @app.get("/health", tags=["System"])
    async def health_check():
        """Health check endpoint for liveness checks."""
        return {"status": "ok"}

    @app.get("/ready", tags=["System"])
    async def readiness_check(session: AsyncSession = Depends(get_session)):
        """Readiness check endpoint: the database must answer."""
        try:
            await ping(session)
        except SQLAlchemyError as exc:
            log.warning("readiness.database_unavailable", error=str(exc))
            return JSONResponse(status_code=503, content={"status": "unavailable"})
        return {"status": "ready"}

    @app.on_event("startup")
    async def on_startup():
        if settings.secret_key == DEFAULT_SECRET_KEY:
            log.warning("config.default_secret_key", hint="set BUDDY_SECRET_KEY in production")
        if not settings.google_oauth_enabled:
            log.warning("config.google_oauth_disabled")
        if not settings.smtp_enabled and not settings.debug:
            log.warning("config.smtp_not_configured", hint="OTP requests will fail until BUDDY_SMTP_HOST is set")
        if settings.debug:
            await init_db()
        log.info("Buddy starting", port=settings.port)

    @app.on_event("shutdown")
    async def on_shutdown():
        log.info("Buddy shutting down")
        await engine.dispose()

    return app


app = create_app()
