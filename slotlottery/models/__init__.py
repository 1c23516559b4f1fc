from .base import Base

# import models so Alembic/autoloaders can discover mappers
from .user import User  # noqa: F401
from .event import Event  # noqa: F401
from .lottery import (  # noqa: F401
    LotteryEntry,
    LotterySession,
    SelectionRecord,
)

__all__ = [
    "Base",
    "User",
    "Event",
    "LotterySession",
    "LotteryEntry",
    "SelectionRecord",
]
