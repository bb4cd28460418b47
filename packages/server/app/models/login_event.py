"""Login history entries, one row per successful login."""

from datetime import datetime
from typing import Optional
import uuid

import sqlalchemy as sa
from sqlmodel import Field

from .base import UUIDMixin, utcnow


class LoginEvent(UUIDMixin, table=True):
    __tablename__ = "login_events"

    user_id: uuid.UUID = Field(foreign_key="users.id", index=True, nullable=False)
    logged_in_at: datetime = Field(
        default_factory=utcnow,
        nullable=False,
        index=True,
        sa_type=sa.DateTime(timezone=True),
    )
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
