"""Utilities for the lottery subsystem."""

from .automation import auto_select_overdue, find_overdue_sessions
from .engine import SelectionEngine
from .errors import (
    AlreadyCompletedError,
    AuthorizationError,
    DuplicateEntryError,
    LotteryError,
    NotFoundError,
    PersistenceError,
    ValidationError,
    WindowClosedError,
)
from .procedures import select_winners_procedure, undo_selection_procedure
from .ranking import fresh_weights, rank_entries
from .types import (
    ChekiSelectionConfig,
    EntryStatistics,
    EntryView,
    ModelSelectionConfig,
    OperationResult,
    PendingSelection,
    SelectionOutcome,
    SlotWinners,
    SweepReport,
    SweepSessionResult,
    UndoOutcome,
    WeightConfig,
    WinnerView,
)
from .weights import (
    DEFAULT_WEIGHT_REGISTRY,
    WeightMethod,
    WeightMethodRegistry,
    compute_weight,
)

__all__ = [
    "AlreadyCompletedError",
    "AuthorizationError",
    "ChekiSelectionConfig",
    "DEFAULT_WEIGHT_REGISTRY",
    "DuplicateEntryError",
    "EntryStatistics",
    "EntryView",
    "LotteryError",
    "ModelSelectionConfig",
    "NotFoundError",
    "OperationResult",
    "PendingSelection",
    "PersistenceError",
    "SelectionEngine",
    "SelectionOutcome",
    "SlotWinners",
    "SweepReport",
    "SweepSessionResult",
    "UndoOutcome",
    "ValidationError",
    "WeightConfig",
    "WeightMethod",
    "WeightMethodRegistry",
    "WindowClosedError",
    "WinnerView",
    "auto_select_overdue",
    "compute_weight",
    "find_overdue_sessions",
    "fresh_weights",
    "rank_entries",
    "select_winners_procedure",
    "undo_selection_procedure",
]
