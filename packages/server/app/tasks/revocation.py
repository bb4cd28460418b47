"""
ARQ background task: nightly mass logout.

Bumps every user's token version so all outstanding session tokens stop
validating at once. Runs daily at the configured UTC time. A Redis lock keeps
overlapping runs (several workers, or a slow previous run) from
double-incrementing.
"""

from __future__ import annotations

from datetime import timezone as dt_timezone

import structlog
from arq import cron
from arq.connections import RedisSettings
from redis.exceptions import LockError
from sqlalchemy.exc import SQLAlchemyError

from app.core.config import get_settings
from app.core.database import get_session_context
from app.core.logging import configure_logging
from app.core.redis import get_redis, named_lock
from app.services.credential_store import CredentialStore

log = structlog.get_logger()
settings = get_settings()

SWEEP_LOCK = "revocation-sweep"


async def revoke_all_sessions(ctx: dict) -> int:
    """Increment every user's token version.

    Returns the number of users updated, or 0 when another run holds the lock.
    Store failures are logged and re-raised; the next cron tick retries.
    """
    redis = ctx.get("redis") or await get_redis()
    lock = named_lock(redis, SWEEP_LOCK, settings.revocation_lock_seconds)
    if not await lock.acquire(blocking=False):
        log.info("revocation.sweep_skipped", reason="lock_held")
        return 0

    try:
        async with get_session_context() as session:
            count = await CredentialStore(session).revoke_all()
    except SQLAlchemyError:
        log.exception("revocation.sweep_failed")
        raise
    finally:
        try:
            await lock.release()
        except LockError:
            # Outlived the lock TTL; the key already expired
            log.warning("revocation.lock_expired", lock=SWEEP_LOCK)

    log.info("revocation.sweep_completed", users=count)
    return count


async def startup(ctx: dict) -> None:
    configure_logging(settings.log_level, settings.log_format)
    log.info("worker.starting", sweep_at=f"{settings.revocation_hour:02d}:{settings.revocation_minute:02d}")


# ARQ worker settings
class WorkerSettings:
    """ARQ worker configuration."""

    functions = [revoke_all_sessions]
    cron_jobs = [
        cron(
            revoke_all_sessions,
            hour={settings.revocation_hour},
            minute={settings.revocation_minute},
            run_at_startup=False,
            unique=True,
        ),
    ]
    on_startup = startup
    timezone = dt_timezone.utc
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
