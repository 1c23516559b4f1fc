"""Public lottery operations.

Every function here returns an :class:`~slotlottery.lottery.types.OperationResult`
instead of raising domain errors. Writes are flushed into the caller's
transaction; committing (or rolling back after a ``persistence_error``) is
left to the caller, typically through ``sessionmaker.begin()``.
"""

import functools
import logging
import math
from collections import Counter
from itertools import groupby
from datetime import datetime, timedelta
from typing import Any, Iterable, Mapping, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, aliased

from .db.utils import as_utc, utcnow
from .lottery import automation
from .lottery.engine import SelectionEngine
from .lottery.errors import (
    AlreadyCompletedError,
    AuthorizationError,
    DuplicateEntryError,
    LotteryError,
    NotFoundError,
    PersistenceError,
    ValidationError,
    WindowClosedError,
)
from .lottery.procedures import select_winners_procedure
from .lottery.types import (
    ChekiSelectionConfig,
    EntryStatistics,
    ModelSelectionConfig,
    OperationResult,
    PendingSelection,
    SlotWinners,
    WeightConfig,
    WinnerView,
)
from .lottery.weights import DEFAULT_WEIGHT_REGISTRY, WeightMethodRegistry
from .models import Event, LotteryEntry, LotterySession, SelectionRecord, User
from .models.lottery import (
    CHEKI_SELECTION_SCOPES,
    MODEL_SELECTION_SCOPES,
    SESSION_STATUSES,
    SESSION_WIDE_SLOT,
)

logger = logging.getLogger(__name__)


def _returns_result(func_):
    """Wrap an operation so domain and database errors become failed results."""

    @functools.wraps(func_)
    def wrapper(*args, **kwargs) -> OperationResult:
        try:
            return OperationResult.success(func_(*args, **kwargs))
        except LotteryError as exc:
            logger.debug("%s failed: %s (%s)", func_.__name__, exc.message, exc.code)
            return OperationResult.failure(exc)
        except SQLAlchemyError as exc:
            logger.exception("Database error in %s", func_.__name__)
            return OperationResult.failure(PersistenceError(str(exc)))

    return wrapper


def _validate_weight_config(
    config: WeightConfig, registry: Optional[WeightMethodRegistry]
) -> None:
    active_registry = registry or DEFAULT_WEIGHT_REGISTRY
    if config.method not in active_registry:
        raise ValidationError(f"Unknown weight method '{config.method}'.")
    if not config.multiplier > 0:
        raise ValidationError("Weight multiplier must be positive.")


# -------- Session Manager --------
@_returns_result
def create_lottery_session(
    session: Session,
    owner_id: int,
    event_id: int,
    *,
    entry_start: datetime,
    entry_end: datetime,
    selection_deadline: datetime,
    max_winners: int,
    weight_config: Optional[WeightConfig] = None,
    model_selection_config: Optional[ModelSelectionConfig] = None,
    cheki_selection_config: Optional[ChekiSelectionConfig] = None,
    selection_criteria: Optional[Mapping[str, Any]] = None,
    max_entries_per_slot: Optional[int] = None,
    registry: Optional[WeightMethodRegistry] = None,
) -> LotterySession:
    """Configure a lottery for an event owned by ``owner_id``.

    Parameters
    ----------
    session : Session
        Active SQLAlchemy session.
    owner_id : int
        Caller; must be the organizer of the event.
    event_id : int
        Target event. An event carries at most one lottery session.
    entry_start, entry_end : datetime
        Entry window, both ends inclusive. ``entry_start`` must be earlier.
    selection_deadline : datetime
        Instant after which the sweep resolves the session. Not before
        ``entry_end``.
    max_winners : int
        Maximum number of selected entries (at least 1).
    weight_config : Optional[WeightConfig]
        Weighting; disabled when omitted.
    model_selection_config, cheki_selection_config : optional
        Whether applicants may name a preferred provider and cheki counts.
    selection_criteria : Optional[Mapping[str, Any]]
        Opaque organizer data stored as JSON.
    max_entries_per_slot : Optional[int]
        Cap on ``applied`` entries per slot.

    Returns
    -------
    OperationResult[LotterySession]
        The new session in ``upcoming`` status, or a failure with code
        ``not_found``, ``unauthorized`` or ``validation_error``.
    """

    event = session.get(Event, event_id)
    if event is None:
        raise NotFoundError("Event not found.")
    if event.organizer_id != owner_id:
        raise AuthorizationError()

    start = as_utc(entry_start)
    end = as_utc(entry_end)
    deadline = as_utc(selection_deadline)
    if start is None or end is None or deadline is None:
        raise ValidationError("Entry window and selection deadline are required.")
    if start >= end:
        raise ValidationError("entry_start must be before entry_end.")
    if deadline < end:
        raise ValidationError("selection_deadline must not be before entry_end.")
    if max_winners < 1:
        raise ValidationError("max_winners must be at least 1.")
    if max_entries_per_slot is not None and max_entries_per_slot < 1:
        raise ValidationError("max_entries_per_slot must be at least 1.")

    weights = weight_config or WeightConfig()
    _validate_weight_config(weights, registry)
    model = model_selection_config or ModelSelectionConfig()
    if model.scope not in MODEL_SELECTION_SCOPES:
        raise ValidationError(f"Unknown model selection scope '{model.scope}'.")
    cheki = cheki_selection_config or ChekiSelectionConfig()
    if cheki.scope not in CHEKI_SELECTION_SCOPES:
        raise ValidationError(f"Unknown cheki selection scope '{cheki.scope}'.")

    if LotterySession.get_by_event_id(session, event_id) is not None:
        raise ValidationError("Event already has a lottery session.")

    lottery = LotterySession(
        event_id=event_id,
        entry_start=start,
        entry_end=end,
        selection_deadline=deadline,
        max_winners=max_winners,
        max_entries_per_slot=max_entries_per_slot,
        status="upcoming",
        model_selection_enabled=model.enabled,
        model_selection_scope=model.scope,
        cheki_selection_enabled=cheki.enabled,
        cheki_selection_scope=cheki.scope,
        selection_criteria=dict(selection_criteria or {}),
    )
    lottery.apply_weight_config(weights)
    try:
        with session.begin_nested():
            session.add(lottery)
            session.flush()
    except IntegrityError as exc:
        raise ValidationError("Event already has a lottery session.") from exc

    logger.info("Created lottery session %s for event %s", lottery.id, event_id)
    return lottery


@_returns_result
def set_session_status(
    session: Session, lottery_session_id: int, new_status: str, actor_id: int
) -> LotterySession:
    """Move a session forward in its lifecycle.

    Only strictly forward moves are accepted; ``selecting`` may be skipped.
    Moving to ``completed`` closes the session with whatever is selected at
    that moment and stamps ``completed_at``.
    """

    engine = SelectionEngine(session)
    lottery = engine.load_owned_session(lottery_session_id, actor_id, refresh=True)
    if new_status not in SESSION_STATUSES:
        raise ValidationError(f"Unknown session status '{new_status}'.")
    if lottery.is_completed:
        raise AlreadyCompletedError()

    current = SESSION_STATUSES.index(lottery.status)
    if SESSION_STATUSES.index(new_status) <= current:
        raise ValidationError(
            f"Cannot move a session from '{lottery.status}' to '{new_status}'."
        )

    if new_status == "completed":
        result = select_winners_procedure(
            session, lottery.id, [], actor_id, None, now=utcnow()
        )
        if not result.success:
            if result.message == "already completed":
                raise AlreadyCompletedError()
            raise ValidationError(result.message)
        return engine.load_session(lottery.id, refresh=True)

    lottery.status = new_status
    session.flush()
    logger.info("Lottery session %s moved to %s", lottery.id, new_status)
    return lottery


@_returns_result
def get_lottery_session(
    session: Session, event_id: int
) -> Optional[LotterySession]:
    return LotterySession.get_by_event_id(session, event_id)


@_returns_result
def update_weight_config(
    session: Session,
    lottery_session_id: int,
    actor_id: int,
    weight_config: WeightConfig,
    *,
    registry: Optional[WeightMethodRegistry] = None,
) -> LotterySession:
    """Replace the weighting of a session that is not yet completed."""

    lottery = SelectionEngine(session).load_owned_session(
        lottery_session_id, actor_id, refresh=True
    )
    if lottery.is_completed:
        raise AlreadyCompletedError()
    _validate_weight_config(weight_config, registry)
    lottery.apply_weight_config(weight_config)
    session.flush()
    return lottery


# -------- Entry Registry --------
def _check_entry_window(lottery: LotterySession, current: datetime) -> None:
    # window first: a closed window wins over any status
    if not as_utc(lottery.entry_start) <= current <= as_utc(lottery.entry_end):
        raise WindowClosedError("The entry window is closed.")
    if lottery.status != "accepting":
        raise WindowClosedError()


def _validate_entry_fields(
    session: Session,
    lottery: LotterySession,
    preferred_provider_id: Optional[int],
    cheki_unsigned_count: int,
    cheki_signed_count: int,
) -> None:
    if preferred_provider_id is not None:
        if not lottery.model_selection_enabled:
            raise ValidationError("This lottery does not accept a preferred provider.")
        if session.get(User, preferred_provider_id) is None:
            raise NotFoundError("Preferred provider not found.")
    if cheki_unsigned_count < 0 or cheki_signed_count < 0:
        raise ValidationError("Cheki counts must not be negative.")
    if (cheki_unsigned_count or cheki_signed_count) and not lottery.cheki_selection_enabled:
        raise ValidationError("This lottery does not accept cheki requests.")


def _check_slot_available(
    session: Session,
    lottery: LotterySession,
    applicant_id: int,
    slot: str,
    *,
    exclude_entry_id: Optional[int] = None,
) -> None:
    """Reject a second entry in ``slot`` and a slot that is already full."""

    existing = select(LotteryEntry.id).where(
        LotteryEntry.session_id == lottery.id,
        LotteryEntry.applicant_id == applicant_id,
        LotteryEntry.slot_ref == slot,
    )
    if exclude_entry_id is not None:
        existing = existing.where(LotteryEntry.id != exclude_entry_id)
    if session.scalar(existing) is not None:
        raise DuplicateEntryError()

    if lottery.max_entries_per_slot is None:
        return
    taken = select(func.count(LotteryEntry.id)).where(
        LotteryEntry.session_id == lottery.id,
        LotteryEntry.slot_ref == slot,
        LotteryEntry.status == "applied",
    )
    if exclude_entry_id is not None:
        taken = taken.where(LotteryEntry.id != exclude_entry_id)
    if (session.scalar(taken) or 0) >= lottery.max_entries_per_slot:
        raise ValidationError("This slot has reached its entry limit.")


def _load_own_entry(
    session: Session, entry_id: int, applicant_id: int
) -> LotteryEntry:
    entry = session.scalar(
        select(LotteryEntry)
        .where(LotteryEntry.id == entry_id)
        .execution_options(populate_existing=True)
    )
    if entry is None:
        raise NotFoundError("Entry not found.")
    if entry.applicant_id != applicant_id:
        raise AuthorizationError("Only the applicant may change this entry.")
    return entry


def _check_entry_editable(
    lottery: LotterySession, entry: LotteryEntry, current: datetime
) -> None:
    if lottery.is_completed:
        raise AlreadyCompletedError(
            "The lottery has already been drawn; entries can no longer change."
        )
    _check_entry_window(lottery, current)
    if entry.status != "applied":
        raise ValidationError("Only entries in applied status can be changed.")


@_returns_result
def submit_entry(
    session: Session,
    lottery_session_id: int,
    applicant_id: int,
    *,
    message: Optional[str] = None,
    slot_ref: Optional[str] = None,
    preferred_provider_id: Optional[int] = None,
    cheki_unsigned_count: int = 0,
    cheki_signed_count: int = 0,
    now: Optional[datetime] = None,
) -> LotteryEntry:
    """Register an entry for ``applicant_id``.

    Parameters
    ----------
    session : Session
        Active SQLAlchemy session.
    lottery_session_id : int
        Target session.
    applicant_id : int
        Applicant submitting the entry.
    message : Optional[str]
        Free-text message to the organizer.
    slot_ref : Optional[str]
        Slot within the session; ``None`` for a session-wide entry.
    preferred_provider_id : Optional[int]
        Only accepted when model selection is enabled for the session.
    cheki_unsigned_count, cheki_signed_count : int
        Only non-zero when cheki selection is enabled for the session.
    now : Optional[datetime]
        Submission time; defaults to the current UTC time.

    Returns
    -------
    OperationResult[LotteryEntry]
        The new ``applied`` entry, or a failure with code ``not_found``,
        ``window_closed``, ``duplicate_entry`` or ``validation_error``.
    """

    current = as_utc(now) or utcnow()
    lottery = SelectionEngine(session).load_session(lottery_session_id, refresh=True)
    _check_entry_window(lottery, current)

    if session.get(User, applicant_id) is None:
        raise NotFoundError("Applicant not found.")
    _validate_entry_fields(
        session, lottery, preferred_provider_id, cheki_unsigned_count, cheki_signed_count
    )
    slot = slot_ref or SESSION_WIDE_SLOT
    _check_slot_available(session, lottery, applicant_id, slot)

    entry = LotteryEntry(
        session_id=lottery.id,
        applicant_id=applicant_id,
        slot_ref=slot,
        message=message,
        preferred_provider_id=preferred_provider_id,
        cheki_unsigned_count=cheki_unsigned_count,
        cheki_signed_count=cheki_signed_count,
        submitted_at=current,
    )
    try:
        with session.begin_nested():
            session.add(entry)
            session.flush()
    except IntegrityError as exc:
        raise DuplicateEntryError() from exc

    logger.info(
        "Applicant %s entered lottery session %s (slot %r)",
        applicant_id,
        lottery.id,
        entry.slot,
    )
    return entry


@_returns_result
def update_entry(
    session: Session,
    entry_id: int,
    applicant_id: int,
    *,
    message: Optional[str] = None,
    slot_ref: Optional[str] = None,
    preferred_provider_id: Optional[int] = None,
    cheki_unsigned_count: int = 0,
    cheki_signed_count: int = 0,
    now: Optional[datetime] = None,
) -> LotteryEntry:
    """Replace the details of an ``applied`` entry while entries are open.

    Every field is overwritten with the given value, as if the entry were
    submitted again, but ``submitted_at`` keeps the original submission time.
    The same window, field and slot rules as :func:`submit_entry` apply.

    Returns
    -------
    OperationResult[LotteryEntry]
        The updated entry, or a failure with code ``not_found``,
        ``unauthorized``, ``already_completed``, ``window_closed``,
        ``duplicate_entry`` or ``validation_error``.
    """

    current = as_utc(now) or utcnow()
    entry = _load_own_entry(session, entry_id, applicant_id)
    lottery = SelectionEngine(session).load_session(entry.session_id, refresh=True)
    _check_entry_editable(lottery, entry, current)
    _validate_entry_fields(
        session, lottery, preferred_provider_id, cheki_unsigned_count, cheki_signed_count
    )
    slot = slot_ref or SESSION_WIDE_SLOT
    _check_slot_available(
        session, lottery, applicant_id, slot, exclude_entry_id=entry.id
    )

    try:
        with session.begin_nested():
            entry.slot_ref = slot
            entry.message = message
            entry.preferred_provider_id = preferred_provider_id
            entry.cheki_unsigned_count = cheki_unsigned_count
            entry.cheki_signed_count = cheki_signed_count
            session.flush()
    except IntegrityError as exc:
        raise DuplicateEntryError() from exc

    logger.info("Applicant %s updated entry %s", applicant_id, entry.id)
    return entry


@_returns_result
def withdraw_entry(
    session: Session,
    entry_id: int,
    applicant_id: int,
    *,
    now: Optional[datetime] = None,
) -> int:
    """Delete an ``applied`` entry while entries are open; returns its id."""

    current = as_utc(now) or utcnow()
    entry = _load_own_entry(session, entry_id, applicant_id)
    lottery = SelectionEngine(session).load_session(entry.session_id, refresh=True)
    _check_entry_editable(lottery, entry, current)

    with session.begin_nested():
        session.delete(entry)
        session.flush()

    logger.info(
        "Applicant %s withdrew entry %s from lottery session %s",
        applicant_id,
        entry_id,
        lottery.id,
    )
    return entry_id


@_returns_result
def list_entries(
    session: Session,
    lottery_session_id: int,
    requester_id: int,
    *,
    registry: Optional[WeightMethodRegistry] = None,
):
    """Return every entry of a session with its freshly computed weight.

    Only the organizer may list entries. The weight cache on each entry is
    refreshed opportunistically; a failed write-back does not fail the call.
    """

    engine = SelectionEngine(session, registry=registry)
    lottery = engine.load_owned_session(lottery_session_id, requester_id, refresh=True)
    views = engine.weighted_entries(lottery)
    engine.refresh_weight_cache(lottery, views)
    return views


@_returns_result
def get_applicant_entries(
    session: Session, lottery_session_id: int, applicant_id: int
) -> list[LotteryEntry]:
    SelectionEngine(session).load_session(lottery_session_id)
    return list(
        session.scalars(
            select(LotteryEntry)
            .where(
                LotteryEntry.session_id == lottery_session_id,
                LotteryEntry.applicant_id == applicant_id,
            )
            .order_by(LotteryEntry.submitted_at.asc(), LotteryEntry.id.asc())
        ).all()
    )


@_returns_result
def get_entry_statistics(
    session: Session, lottery_session_id: int, requester_id: int
) -> EntryStatistics:
    """Summarize the entries of a session for its organizer."""

    engine = SelectionEngine(session)
    lottery = engine.load_owned_session(lottery_session_id, requester_id)
    entries = engine.entries_for(lottery.id)

    providers = Counter(
        entry.preferred_provider_id
        for entry in entries
        if entry.preferred_provider_id is not None
    )
    return EntryStatistics(
        total_entries=len(entries),
        total_applicants=len({entry.applicant_id for entry in entries}),
        entries_by_slot=dict(Counter(entry.slot for entry in entries)),
        entries_by_status=dict(Counter(entry.status for entry in entries)),
        preferred_provider_popularity=dict(providers.most_common()),
        cheki_unsigned_total=sum(entry.cheki_unsigned_count for entry in entries),
        cheki_signed_total=sum(entry.cheki_signed_count for entry in entries),
    )


# -------- Selection --------
@_returns_result
def select_winners(
    session: Session,
    lottery_session_id: int,
    actor_id: int,
    entry_ids: Iterable[int],
    reason: Optional[str] = None,
):
    """Manually select winners and complete the session.

    Returns
    -------
    OperationResult[SelectionOutcome]
        ``selected_count`` on success. Failures carry ``unauthorized``,
        ``already_completed``, ``validation_error`` or ``persistence_error``.
    """

    return SelectionEngine(session).select_winners(
        lottery_session_id, actor_id, entry_ids, reason
    )


@_returns_result
def undo_selection(
    session: Session,
    lottery_session_id: int,
    actor_id: int,
    entry_ids: Iterable[int],
    reason: Optional[str] = None,
):
    """Return selected entries to ``applied`` and record the correction."""

    return SelectionEngine(session).undo_selection(
        lottery_session_id, actor_id, entry_ids, reason
    )


@_returns_result
def get_selection_history(
    session: Session, lottery_session_id: int, requester_id: int
) -> list[SelectionRecord]:
    """Return the select/undo records of a session, oldest first."""

    SelectionEngine(session).load_owned_session(lottery_session_id, requester_id)
    return list(
        session.scalars(
            select(SelectionRecord)
            .where(SelectionRecord.session_id == lottery_session_id)
            .order_by(SelectionRecord.occurred_at.asc(), SelectionRecord.id.asc())
        ).all()
    )


@_returns_result
def get_lottery_winners(
    session: Session, lottery_session_id: int, requester_id: int
) -> list[SlotWinners]:
    """Return the selected entries of a session grouped by slot.

    Only the organizer may read the winners. Slots are ordered by reference
    with session-wide winners first; winners within a slot keep submission
    order. ``won_at`` is the time of the entry's latest ``select`` record.
    """

    SelectionEngine(session).load_owned_session(lottery_session_id, requester_id)
    provider = aliased(User)
    won_at = (
        select(func.max(SelectionRecord.occurred_at))
        .where(
            SelectionRecord.entry_id == LotteryEntry.id,
            SelectionRecord.action == "select",
        )
        .correlate(LotteryEntry)
        .scalar_subquery()
    )
    rows = session.execute(
        select(LotteryEntry, User.nickname, provider.nickname, won_at)
        .join(User, LotteryEntry.applicant_id == User.id)
        .outerjoin(provider, LotteryEntry.preferred_provider_id == provider.id)
        .where(
            LotteryEntry.session_id == lottery_session_id,
            LotteryEntry.status == "selected",
        )
        .order_by(
            LotteryEntry.slot_ref.asc(),
            LotteryEntry.submitted_at.asc(),
            LotteryEntry.id.asc(),
        )
    ).all()

    grouped: list[SlotWinners] = []
    for slot_ref, slot_rows in groupby(rows, key=lambda row: row[0].slot_ref):
        winners = [
            WinnerView(
                entry_id=entry.id,
                applicant_id=entry.applicant_id,
                applicant_nickname=nickname,
                preferred_provider_id=entry.preferred_provider_id,
                preferred_provider_nickname=provider_nickname,
                cheki_unsigned_count=entry.cheki_unsigned_count,
                cheki_signed_count=entry.cheki_signed_count,
                won_at=as_utc(selected_at),
            )
            for entry, nickname, provider_nickname, selected_at in slot_rows
        ]
        grouped.append(SlotWinners(slot=slot_ref or None, winners=winners))
    return grouped


auto_select_overdue = _returns_result(automation.auto_select_overdue)


@_returns_result
def get_pending_selections(
    session: Session,
    owner_id: int,
    within_days: int = 3,
    now: Optional[datetime] = None,
) -> list[PendingSelection]:
    """List the organizer's open sessions whose deadline is near or past.

    Parameters
    ----------
    session : Session
        Active SQLAlchemy session.
    owner_id : int
        Organizer whose events are inspected.
    within_days : int, default: 3
        Include sessions whose deadline falls within this many days.
    now : Optional[datetime]
        Reference time; defaults to the current UTC time.

    Returns
    -------
    OperationResult[list[PendingSelection]]
        Rows ordered by deadline. Overdue sessions have ``is_overdue`` set
        and a non-positive ``days_remaining``.
    """

    if within_days < 0:
        raise ValidationError("within_days must not be negative.")
    current = as_utc(now) or utcnow()
    horizon = current + timedelta(days=within_days)

    rows = session.execute(
        select(LotterySession, Event)
        .join(Event, LotterySession.event_id == Event.id)
        .where(
            Event.organizer_id == owner_id,
            LotterySession.status != "completed",
            LotterySession.selection_deadline <= horizon,
        )
        .order_by(LotterySession.selection_deadline.asc(), LotterySession.id.asc())
    ).all()

    pending: list[PendingSelection] = []
    for lottery, event in rows:
        deadline = as_utc(lottery.selection_deadline)
        remaining = (deadline - current).total_seconds() / 86400
        pending.append(
            PendingSelection(
                lottery_session_id=lottery.id,
                event_id=event.id,
                event_title=event.title,
                deadline=deadline,
                status=lottery.status,
                max_winners=lottery.max_winners,
                is_overdue=deadline < current,
                days_remaining=math.ceil(remaining),
            )
        )
    return pending


__all__ = [
    "auto_select_overdue",
    "create_lottery_session",
    "get_applicant_entries",
    "get_entry_statistics",
    "get_lottery_session",
    "get_lottery_winners",
    "get_pending_selections",
    "get_selection_history",
    "list_entries",
    "select_winners",
    "set_session_status",
    "submit_entry",
    "undo_selection",
    "update_entry",
    "update_weight_config",
    "withdraw_entry",
]
