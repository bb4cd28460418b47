"""
Async engine and sessions for the credential store.

Request handlers get one unit of work per request through ``get_session``;
the revocation worker and the CLI use ``get_session_context``. Both commit
when the caller finishes cleanly and roll back on any exception.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from app.core.config import get_settings

settings = get_settings()

engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    pool_pre_ping=True,
)

# Store methods read back attributes after commit
async_session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@asynccontextmanager
async def get_session_context() -> AsyncIterator[AsyncSession]:
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_session() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency wrapping ``get_session_context``."""
    async with get_session_context() as session:
        yield session


async def init_db() -> None:
    """Create the ``users`` and ``login_events`` tables if they are missing.

    Runs on startup in debug mode and from ``revoke_sessions --init-db``.
    """
    import app.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)


async def ping(session: AsyncSession) -> None:
    """Round-trip to the database. Raises SQLAlchemyError when it is unreachable."""
    await session.execute(text("SELECT 1"))
