from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import ID_TYPE, Base

if TYPE_CHECKING:
    from .event import Event


class User(Base):
    """An account that can organize events or apply to their lotteries.

    Authentication lives outside this package; the engine only needs a stable
    primary key to check ownership and to attribute entries and selections.
    """

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    in_app_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    nickname: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    organized_events: Mapped[list["Event"]] = relationship(back_populates="organizer")

    def __init__(
        self,
        in_app_id: str,
        nickname: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ):
        self.in_app_id = in_app_id
        self.nickname = nickname
        if created_at is not None:
            self.created_at = created_at

    def __repr__(self) -> str:
        return f"<User(id={self.id}, in_app_id='{self.in_app_id}', nickname='{self.nickname}')>"
