# SQLModel definitions, imported here to ensure metadata is populated for create_all.
from .base import UUIDMixin, TimestampMixin  # noqa: F401
from .user import User  # noqa: F401
from .login_event import LoginEvent  # noqa: F401
