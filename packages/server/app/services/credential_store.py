"""
Credential store: durable user records over an async SQLModel session.

``save`` commits immediately. State that must outlive a failed request (an
OTP issued before its email bounced, a failed OTP attempt) has to be durable
before the caller raises.

Known limitation: ``save`` is last-writer-wins for plain columns. The
revocation counter never goes through ``save``; it is bumped with an atomic
``UPDATE ... SET token_version = token_version + 1``.
"""

from __future__ import annotations

import uuid
from typing import Optional

import structlog
from sqlalchemy import delete, func, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col, select

from app.core.errors import ConflictError
from app.models.base import utcnow
from app.models.login_event import LoginEvent
from app.models.user import User

log = structlog.get_logger()


def normalize_email(email: str) -> str:
    return email.strip().lower()


class CredentialStore:
    """User persistence with the uniqueness and single-challenge invariants."""

    def __init__(self, session: AsyncSession, *, login_history_limit: int = 50):
        self.session = session
        self.login_history_limit = login_history_limit

    # -- lookups -------------------------------------------------------------

    async def find_by_email(self, email: str) -> Optional[User]:
        result = await self.session.execute(
            select(User)
            .where(User.email == normalize_email(email))
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def find_by_id(self, user_id: uuid.UUID) -> Optional[User]:
        return await self.session.get(User, user_id, populate_existing=True)

    async def find_by_oauth_id(self, oauth_id: str) -> Optional[User]:
        result = await self.session.execute(
            select(User)
            .where(User.oauth_id == oauth_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    # -- writes --------------------------------------------------------------

    async def create(
        self,
        email: str,
        password_hash: Optional[str] = None,
        name: Optional[str] = None,
        oauth_id: Optional[str] = None,
        *,
        is_email_verified: bool = False,
    ) -> User:
        """Insert a new user. Raises ConflictError on a duplicate email or OAuth id."""
        email = normalize_email(email)
        if await self.find_by_email(email):
            raise ConflictError("DuplicateEmail", "Email already registered")
        if oauth_id and await self.find_by_oauth_id(oauth_id):
            raise ConflictError("DuplicateOAuthId", "OAuth account already linked")

        user = User(
            email=email,
            password_hash=password_hash,
            name=name or None,
            oauth_id=oauth_id,
            is_email_verified=is_email_verified,
        )
        self.session.add(user)
        try:
            await self.session.commit()
        except IntegrityError:
            # Lost a race with a concurrent insert
            await self.session.rollback()
            raise ConflictError("DuplicateEmail", "Email already registered")
        await self.session.refresh(user)

        log.info("user.created", user_id=str(user.id), oauth=bool(oauth_id))
        return user

    async def save(self, user: User) -> User:
        """Persist mutations on a user record."""
        self.session.add(user)
        try:
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            raise ConflictError("DuplicateOAuthId", "OAuth account already linked")
        await self.session.refresh(user)
        return user

    async def record_login(
        self,
        user: User,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginEvent:
        """Append a login-history entry and trim history to the retention limit.

        Does not commit; the caller saves the user afterwards.
        """
        now = utcnow()
        event = LoginEvent(
            user_id=user.id,
            logged_in_at=now,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self.session.add(event)
        user.last_login_at = now
        await self.session.flush()

        keep = (
            select(LoginEvent.id)
            .where(LoginEvent.user_id == user.id)
            .order_by(col(LoginEvent.logged_in_at).desc(), col(LoginEvent.id).desc())
            .limit(self.login_history_limit)
        )
        await self.session.execute(
            delete(LoginEvent)
            .where(LoginEvent.user_id == user.id, col(LoginEvent.id).not_in(keep))
            .execution_options(synchronize_session=False)
        )
        return event

    async def login_history(self, user_id: uuid.UUID, limit: Optional[int] = None) -> list[LoginEvent]:
        """Login history for a user, newest first."""
        query = (
            select(LoginEvent)
            .where(LoginEvent.user_id == user_id)
            .order_by(col(LoginEvent.logged_in_at).desc())
        )
        if limit is not None:
            query = query.limit(limit)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def count_logins(self, user_id: uuid.UUID) -> int:
        result = await self.session.execute(
            select(func.count()).select_from(LoginEvent).where(LoginEvent.user_id == user_id)
        )
        return result.scalar_one()

    # -- revocation counter --------------------------------------------------

    async def bump_token_version(self, user_id: uuid.UUID) -> int:
        """Atomically increment one user's token version. Returns the new value."""
        await self.session.execute(
            update(User)
            .where(User.id == user_id)
            .values(token_version=User.token_version + 1)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        result = await self.session.execute(
            select(User.token_version).where(User.id == user_id)
        )
        return result.scalar_one()

    async def end_session(self, user: User) -> int:
        """Deactivate the user and bump its token version in one commit.

        Returns the new token version. On failure nothing is persisted.
        """
        user.is_active = False
        user.session_token = None
        self.session.add(user)
        try:
            await self.session.execute(
                update(User)
                .where(User.id == user.id)
                .values(token_version=User.token_version + 1)
                .execution_options(synchronize_session=False)
            )
            await self.session.commit()
        except SQLAlchemyError:
            await self.session.rollback()
            raise
        await self.session.refresh(user)
        return user.token_version

    async def revoke_all(self) -> int:
        """Increment every user's token version in one statement. Returns rows updated."""
        result = await self.session.execute(
            update(User)
            .values(token_version=User.token_version + 1)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        return result.rowcount or 0
