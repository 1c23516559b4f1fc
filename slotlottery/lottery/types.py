"""Value objects shared by the lottery engine and the workflow layer."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Generic, Optional, TypeVar

if TYPE_CHECKING:
    from ..models import LotteryEntry
    from .errors import LotteryError

T = TypeVar("T")


@dataclass(frozen=True)
class WeightConfig:
    """Weighting configuration of a session.

    Attributes
    ----------
    enabled : bool
        When ``False`` ranking ignores weights and uses submission order only.
    method : str
        Key of a :class:`~slotlottery.lottery.weights.WeightMethod`
        (``"linear"``, ``"bonus"`` or ``"custom"`` by default).
    multiplier : float
        Strictly positive factor handed to the weight formula.
    """

    enabled: bool = False
    method: str = "linear"
    multiplier: float = 1.0


@dataclass(frozen=True)
class ModelSelectionConfig:
    enabled: bool = False
    scope: str = "per_slot"


@dataclass(frozen=True)
class ChekiSelectionConfig:
    enabled: bool = False
    scope: str = "total_only"


@dataclass(frozen=True)
class OperationResult(Generic[T]):
    """Success/failure value returned by every public workflow.

    Exactly one of ``data`` (on success) or ``error`` (on failure) is
    meaningful. ``data`` may legitimately be ``None`` on success, e.g. when a
    lookup finds nothing.
    """

    data: Optional[T] = None
    error: Optional["LotteryError"] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def error_code(self) -> Optional[str]:
        return None if self.error is None else self.error.code

    @property
    def error_message(self) -> Optional[str]:
        return None if self.error is None else self.error.message

    @classmethod
    def success(cls, data: Optional[T] = None) -> "OperationResult[T]":
        return cls(data=data)

    @classmethod
    def failure(cls, error: "LotteryError") -> "OperationResult[T]":
        return cls(error=error)


@dataclass(frozen=True)
class ProcedureResult:
    """Outcome of an atomic persistence procedure (``success``/``message``)."""

    success: bool
    message: str
    count: int = 0


@dataclass(frozen=True)
class EntryView:
    """An entry annotated with its freshly computed weight."""

    entry: "LotteryEntry"
    weight: Optional[float]

    def to_json(self) -> dict[str, Any]:
        return self.entry.to_json(weight=self.weight)


@dataclass(frozen=True)
class SelectionOutcome:
    selected_count: int
    message: str = ""


@dataclass(frozen=True)
class UndoOutcome:
    reverted_count: int
    message: str = ""


@dataclass(frozen=True)
class SweepSessionResult:
    """Per-session line of a sweep report.

    ``outcome`` is one of ``"selected"``, ``"completed_empty"``,
    ``"already_completed"``, ``"skipped"`` or ``"failed"``.
    """

    lottery_session_id: int
    outcome: str
    selected_count: int = 0
    entry_ids: tuple[int, ...] = ()
    owner_id: Optional[int] = None
    event_id: Optional[int] = None
    event_title: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 1

    @property
    def processed(self) -> bool:
        return self.outcome in ("selected", "completed_empty")


@dataclass(frozen=True)
class SweepReport:
    results: list[SweepSessionResult] = field(default_factory=list)

    @property
    def processed_count(self) -> int:
        return sum(1 for result in self.results if result.processed)

    @property
    def failed_count(self) -> int:
        return sum(1 for result in self.results if result.outcome == "failed")


@dataclass(frozen=True)
class PendingSelection:
    """Dashboard row for a session that still needs a selection decision."""

    lottery_session_id: int
    event_id: int
    event_title: str
    deadline: datetime
    status: str
    max_winners: int
    is_overdue: bool
    days_remaining: int


@dataclass(frozen=True)
class EntryStatistics:
    total_entries: int
    total_applicants: int
    entries_by_slot: dict[Optional[str], int]
    entries_by_status: dict[str, int]
    preferred_provider_popularity: dict[int, int]
    cheki_unsigned_total: int
    cheki_signed_total: int


@dataclass(frozen=True)
class WinnerView:
    entry_id: int
    applicant_id: int
    applicant_nickname: Optional[str]
    preferred_provider_id: Optional[int]
    preferred_provider_nickname: Optional[str]
    cheki_unsigned_count: int
    cheki_signed_count: int
    won_at: Optional[datetime]


@dataclass(frozen=True)
class SlotWinners:
    """Winners of one slot; ``slot`` is ``None`` for session-wide entries."""

    slot: Optional[str]
    winners: list[WinnerView] = field(default_factory=list)


__all__ = [
    "ChekiSelectionConfig",
    "EntryStatistics",
    "EntryView",
    "ModelSelectionConfig",
    "OperationResult",
    "PendingSelection",
    "ProcedureResult",
    "SelectionOutcome",
    "SlotWinners",
    "SweepReport",
    "SweepSessionResult",
    "UndoOutcome",
    "WeightConfig",
    "WinnerView",
]
