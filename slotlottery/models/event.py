from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from sqlalchemy import DateTime, ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import ID_TYPE, Base

if TYPE_CHECKING:
    from .lottery import LotterySession
    from .user import User


class Event(Base):
    """Target event whose scarce slots are allocated by a lottery."""

    __tablename__ = "events"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    organizer_id: Mapped[int] = mapped_column(
        ID_TYPE, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    starts_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    organizer: Mapped["User"] = relationship(back_populates="organized_events")
    lottery_session: Mapped[Optional["LotterySession"]] = relationship(
        back_populates="event", uselist=False
    )

    def __init__(
        self,
        *,
        title: str,
        organizer: Optional["User"] = None,
        organizer_id: Optional[int] = None,
        starts_at: Optional[datetime] = None,
    ) -> None:
        self.title = title
        if organizer is not None:
            self.organizer = organizer
        if organizer_id is not None:
            self.organizer_id = organizer_id
        self.starts_at = starts_at

    def __repr__(self) -> str:  # pragma: no cover - repr is trivial
        return f"<Event(id={self.id}, organizer_id={self.organizer_id}, title='{self.title}')>"
