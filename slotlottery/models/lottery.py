"""Database models for lottery sessions, entries and the selection audit trail."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    select,
    text,
)
from sqlalchemy.orm import Mapped, Session, mapped_column, relationship

from ..db.utils import dt_iso
from .base import ID_TYPE, Base

if TYPE_CHECKING:
    from ..lottery.types import (
        ChekiSelectionConfig,
        ModelSelectionConfig,
        WeightConfig,
    )
    from .event import Event


SESSION_STATUSES = ("upcoming", "accepting", "selecting", "completed")
"""Session lifecycle in forward order. ``completed`` is terminal."""

MODEL_SELECTION_SCOPES = ("per_slot", "session_wide")
CHEKI_SELECTION_SCOPES = ("per_slot", "total_only")

SESSION_WIDE_SLOT = ""
"""Stored ``slot_ref`` for entries that do not target a particular slot."""


class LotterySession(Base):
    """One configured lottery tied to one target event."""

    __tablename__ = "lottery_sessions"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    """Primary key."""

    event_id: Mapped[int] = mapped_column(
        ID_TYPE, ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    """Target event. The event's organizer owns the session."""

    entry_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    """Start of the entry window (inclusive)."""

    entry_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    """End of the entry window (inclusive)."""

    selection_deadline: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    """After this instant the deadline sweep selects winners automatically."""

    max_winners: Mapped[int] = mapped_column(Integer, nullable=False)
    """Upper bound for entries in ``selected`` status."""

    max_entries_per_slot: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    """Optional cap on ``applied`` entries per slot; ``None`` means unlimited."""

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="upcoming")
    """One of :data:`SESSION_STATUSES`."""

    weight_enabled: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )
    weight_method: Mapped[str] = mapped_column(String(20), nullable=False, default="linear")
    weight_multiplier: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)

    model_selection_enabled: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )
    model_selection_scope: Mapped[str] = mapped_column(
        String(20), nullable=False, default="per_slot"
    )
    cheki_selection_enabled: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )
    cheki_selection_scope: Mapped[str] = mapped_column(
        String(20), nullable=False, default="total_only"
    )

    selection_criteria: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    """Opaque organizer-defined extension map."""

    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    event: Mapped["Event"] = relationship(back_populates="lottery_session")
    entries: Mapped[list["LotteryEntry"]] = relationship(
        back_populates="lottery_session",
        cascade="all, delete-orphan",
        order_by="LotteryEntry.submitted_at",
    )
    selection_records: Mapped[list["SelectionRecord"]] = relationship(
        back_populates="lottery_session",
        cascade="all, delete-orphan",
        order_by="SelectionRecord.id",
    )

    __table_args__ = (
        UniqueConstraint("event_id", name="uq_lottery_sessions_event_id"),
        CheckConstraint("max_winners >= 1", name="max_winners_positive"),
        CheckConstraint(
            "status IN ('upcoming','accepting','selecting','completed')",
            name="status_enum",
        ),
        Index("ix_lottery_sessions_status_deadline", "status", "selection_deadline"),
    )

    def __repr__(self) -> str:  # pragma: no cover - repr is trivial
        return "<LotterySession(id={id}, event_id={event}, status={status})>".format(
            id=self.id,
            event=self.event_id,
            status=self.status,
        )

    @property
    def owner_id(self) -> int:
        """Organizer of the target event."""
        return self.event.organizer_id

    @property
    def is_completed(self) -> bool:
        return self.status == "completed"

    @property
    def weight_config(self) -> "WeightConfig":
        from ..lottery.types import WeightConfig

        return WeightConfig(
            enabled=self.weight_enabled,
            method=self.weight_method,
            multiplier=self.weight_multiplier,
        )

    @property
    def model_selection_config(self) -> "ModelSelectionConfig":
        from ..lottery.types import ModelSelectionConfig

        return ModelSelectionConfig(
            enabled=self.model_selection_enabled, scope=self.model_selection_scope
        )

    @property
    def cheki_selection_config(self) -> "ChekiSelectionConfig":
        from ..lottery.types import ChekiSelectionConfig

        return ChekiSelectionConfig(
            enabled=self.cheki_selection_enabled, scope=self.cheki_selection_scope
        )

    def apply_weight_config(self, config: "WeightConfig") -> None:
        self.weight_enabled = config.enabled
        self.weight_method = config.method
        self.weight_multiplier = config.multiplier

    @classmethod
    def get_by_event_id(cls, session: Session, event_id: int) -> Optional["LotterySession"]:
        """Return the lottery session attached to ``event_id`` if it exists."""

        return session.scalar(select(cls).where(cls.event_id == event_id))

    def to_json(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "event_id": self.event_id,
            "entry_start": dt_iso(self.entry_start),
            "entry_end": dt_iso(self.entry_end),
            "selection_deadline": dt_iso(self.selection_deadline),
            "max_winners": self.max_winners,
            "max_entries_per_slot": self.max_entries_per_slot,
            "status": self.status,
            "weight_config": {
                "enabled": self.weight_enabled,
                "method": self.weight_method,
                "multiplier": self.weight_multiplier,
            },
            "model_selection_config": {
                "enabled": self.model_selection_enabled,
                "scope": self.model_selection_scope,
            },
            "cheki_selection_config": {
                "enabled": self.cheki_selection_enabled,
                "scope": self.cheki_selection_scope,
            },
            "selection_criteria": dict(self.selection_criteria or {}),
            "completed_at": dt_iso(self.completed_at),
        }


class LotteryEntry(Base):
    """One applicant's submission into a session, optionally scoped to a slot."""

    __tablename__ = "lottery_entries"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    session_id: Mapped[int] = mapped_column(
        ID_TYPE,
        ForeignKey("lottery_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    applicant_id: Mapped[int] = mapped_column(
        ID_TYPE, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    slot_ref: Mapped[str] = mapped_column(
        String(64), nullable=False, default=SESSION_WIDE_SLOT, server_default=text("''")
    )
    """Slot within the session; empty string for session-wide entries.

    Stored NOT NULL so the uniqueness constraint also covers entries without a
    slot (NULLs never collide in SQL unique constraints).
    """

    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    preferred_provider_id: Mapped[Optional[int]] = mapped_column(
        ID_TYPE, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    cheki_unsigned_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cheki_signed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="applied")
    weight: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    """Cached weight. Never authoritative; ranking recomputes it."""

    submitted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    lottery_session: Mapped["LotterySession"] = relationship(back_populates="entries")

    __table_args__ = (
        UniqueConstraint(
            "session_id",
            "applicant_id",
            "slot_ref",
            name="uq_lottery_entry_per_slot",
        ),
        CheckConstraint(
            "status IN ('applied','selected','rejected')", name="status_enum"
        ),
        Index("ix_lottery_entries_session_status", "session_id", "status"),
    )

    def __init__(
        self,
        *,
        applicant_id: int,
        session_id: Optional[int] = None,
        lottery_session: Optional["LotterySession"] = None,
        slot_ref: Optional[str] = None,
        message: Optional[str] = None,
        preferred_provider_id: Optional[int] = None,
        cheki_unsigned_count: int = 0,
        cheki_signed_count: int = 0,
        status: str = "applied",
        weight: Optional[float] = None,
        submitted_at: Optional[datetime] = None,
    ) -> None:
        self.applicant_id = applicant_id
        if session_id is not None:
            self.session_id = session_id
        if lottery_session is not None:
            self.lottery_session = lottery_session
        self.slot_ref = slot_ref if slot_ref is not None else SESSION_WIDE_SLOT
        self.message = message
        self.preferred_provider_id = preferred_provider_id
        self.cheki_unsigned_count = cheki_unsigned_count
        self.cheki_signed_count = cheki_signed_count
        self.status = status
        self.weight = weight
        if submitted_at is not None:
            self.submitted_at = submitted_at

    def __repr__(self) -> str:  # pragma: no cover - repr is trivial
        return "<LotteryEntry(id={id}, session_id={sid}, applicant_id={aid}, slot_ref={slot!r}, status={status})>".format(
            id=self.id,
            sid=self.session_id,
            aid=self.applicant_id,
            slot=self.slot_ref,
            status=self.status,
        )

    @property
    def slot(self) -> Optional[str]:
        """Public slot reference; ``None`` for session-wide entries."""
        return self.slot_ref or None

    def to_json(self, *, weight: Optional[float] = None) -> dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "applicant_id": self.applicant_id,
            "slot_ref": self.slot,
            "message": self.message,
            "preferred_provider_id": self.preferred_provider_id,
            "cheki_unsigned_count": self.cheki_unsigned_count,
            "cheki_signed_count": self.cheki_signed_count,
            "status": self.status,
            "weight": weight if weight is not None else self.weight,
            "submitted_at": dt_iso(self.submitted_at),
        }


class SelectionRecord(Base):
    """Append-only audit row for every select/undo action on an entry."""

    __tablename__ = "lottery_selection_records"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    session_id: Mapped[int] = mapped_column(
        ID_TYPE,
        ForeignKey("lottery_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    entry_id: Mapped[int] = mapped_column(
        ID_TYPE,
        ForeignKey("lottery_entries.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    actor_id: Mapped[Optional[int]] = mapped_column(
        ID_TYPE, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    """User who acted; ``None`` when the system principal ran the sweep."""

    automated: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )
    action: Mapped[str] = mapped_column(String(10), nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    lottery_session: Mapped["LotterySession"] = relationship(
        back_populates="selection_records"
    )
    entry: Mapped["LotteryEntry"] = relationship()

    __table_args__ = (
        CheckConstraint("action IN ('select','undo')", name="action_enum"),
    )

    def to_json(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "entry_id": self.entry_id,
            "actor_id": self.actor_id,
            "automated": self.automated,
            "action": self.action,
            "reason": self.reason,
            "occurred_at": dt_iso(self.occurred_at),
        }


__all__ = [
    "CHEKI_SELECTION_SCOPES",
    "LotteryEntry",
    "LotterySession",
    "MODEL_SELECTION_SCOPES",
    "SESSION_STATUSES",
    "SESSION_WIDE_SLOT",
    "SelectionRecord",
]
