"""Selection engine: ranking, manual selection, undo and deadline resolution."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..db.utils import as_utc, utcnow
from ..models import LotteryEntry, LotterySession
from .errors import (
    AlreadyCompletedError,
    AuthorizationError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from .procedures import (
    AUTO_SELECTION_REASON,
    select_winners_procedure,
    undo_selection_procedure,
)
from .ranking import fresh_weights, rank_entries
from .types import (
    EntryView,
    ProcedureResult,
    SelectionOutcome,
    SweepSessionResult,
    UndoOutcome,
)
from .weights import WeightMethodRegistry

logger = logging.getLogger(__name__)


def _raise_for_procedure(result: ProcedureResult) -> None:
    """Translate a failed procedure result into the matching domain error."""

    if result.success:
        return
    if result.message == "already completed":
        raise AlreadyCompletedError()
    if result.message == "lottery session not found":
        raise NotFoundError("Lottery session not found.")
    if result.message == "entries changed concurrently":
        raise PersistenceError(result.message)
    raise ValidationError(result.message)


class SelectionEngine:
    """Engine that ranks entries and commits selection decisions."""

    def __init__(
        self,
        session: Session,
        *,
        registry: Optional[WeightMethodRegistry] = None,
    ) -> None:
        """Create a selection engine bound to a SQLAlchemy session.

        Parameters
        ----------
        session : Session
            Active SQLAlchemy session used for lookups and persistence.
        registry : Optional[WeightMethodRegistry], default: None
            Weight method registry. Typically omitted, in which case the
            default registry is used.
        """

        self._session = session
        self._registry = registry

    # -------- lookups --------
    def load_session(
        self, lottery_session_id: int, *, refresh: bool = False
    ) -> LotterySession:
        """Return the lottery session or raise :class:`NotFoundError`."""

        stmt = select(LotterySession).where(LotterySession.id == lottery_session_id)
        if refresh:
            stmt = stmt.execution_options(populate_existing=True)
        lottery = self._session.scalar(stmt)
        if lottery is None:
            raise NotFoundError("Lottery session not found.")
        return lottery

    def load_owned_session(
        self, lottery_session_id: int, actor_id: int, *, refresh: bool = False
    ) -> LotterySession:
        lottery = self.load_session(lottery_session_id, refresh=refresh)
        if lottery.owner_id != actor_id:
            raise AuthorizationError()
        return lottery

    def entries_for(self, lottery_session_id: int) -> list[LotteryEntry]:
        """Return every entry of a session in submission order."""

        stmt = select(LotteryEntry).where(LotteryEntry.session_id == lottery_session_id)
        stmt = stmt.order_by(LotteryEntry.submitted_at.asc(), LotteryEntry.id.asc())
        return list(
            self._session.scalars(
                stmt.execution_options(populate_existing=True)
            ).all()
        )

    # -------- weights --------
    def weighted_entries(self, lottery: LotterySession) -> list[EntryView]:
        """Return every entry with a freshly computed weight."""

        entries = self.entries_for(lottery.id)
        weights = fresh_weights(entries, lottery.weight_config, registry=self._registry)
        return [EntryView(entry=entry, weight=weights[entry.id]) for entry in entries]

    def refresh_weight_cache(
        self, lottery: LotterySession, views: Sequence[EntryView]
    ) -> int:
        """Write fresh weights back to ``LotteryEntry.weight``.

        Best effort: completed sessions are left untouched and a database
        error only rolls back the cache write.
        """

        if lottery.is_completed or not lottery.weight_enabled:
            return 0
        stale = [view for view in views if view.entry.weight != view.weight]
        if not stale:
            return 0
        try:
            with self._session.begin_nested():
                for view in stale:
                    view.entry.weight = view.weight
        except SQLAlchemyError:
            logger.warning(
                "Could not cache weights for lottery session %s", lottery.id, exc_info=True
            )
            return 0
        return len(stale)

    # -------- manual selection --------
    def select_winners(
        self,
        lottery_session_id: int,
        actor_id: int,
        entry_ids: Iterable[int],
        reason: Optional[str] = None,
        *,
        now: Optional[datetime] = None,
    ) -> SelectionOutcome:
        """Select ``entry_ids`` as winners and complete the session.

        Parameters
        ----------
        lottery_session_id : int
            Session to resolve.
        actor_id : int
            Organizer performing the selection.
        entry_ids : Iterable[int]
            Entries to select. Must be non-empty, free of duplicates, belong
            to the session and be in ``applied`` status.
        reason : Optional[str], default: None
            Reason stored on the selection records.

        Returns
        -------
        SelectionOutcome
            Number of entries selected.

        Raises
        ------
        NotFoundError, AuthorizationError, AlreadyCompletedError, ValidationError
            When the request is rejected before any write.
        PersistenceError
            When the atomic commit fails.
        """

        ids = list(entry_ids)
        lottery = self.load_owned_session(lottery_session_id, actor_id, refresh=True)
        if lottery.is_completed:
            raise AlreadyCompletedError()
        if not ids:
            raise ValidationError("At least one entry must be selected.")
        if len(set(ids)) != len(ids):
            raise ValidationError("Entry ids must not contain duplicates.")

        entries = {entry.id: entry for entry in self.entries_for(lottery.id)}
        unknown = sorted(entry_id for entry_id in ids if entry_id not in entries)
        if unknown:
            raise ValidationError(f"Entries do not belong to this session: {unknown}")
        not_applied = sorted(
            entry_id for entry_id in ids if entries[entry_id].status != "applied"
        )
        if not_applied:
            raise ValidationError(f"Entries are not in applied status: {not_applied}")
        already_selected = sum(1 for e in entries.values() if e.status == "selected")
        if already_selected + len(ids) > lottery.max_winners:
            raise ValidationError(
                f"At most {lottery.max_winners} winners may be selected."
            )

        result = self._commit_selection(
            lottery.id, ids, actor_id, reason, automated=False, now=now
        )
        _raise_for_procedure(result)
        logger.info(
            "Selected %s winners for lottery session %s", result.count, lottery.id
        )
        return SelectionOutcome(selected_count=result.count, message=result.message)

    def undo_selection(
        self,
        lottery_session_id: int,
        actor_id: int,
        entry_ids: Iterable[int],
        reason: Optional[str] = None,
        *,
        now: Optional[datetime] = None,
    ) -> UndoOutcome:
        """Revert selected entries to ``applied``; the session stays completed."""

        ids = list(entry_ids)
        lottery = self.load_owned_session(lottery_session_id, actor_id, refresh=True)
        if not ids:
            raise ValidationError("At least one entry must be given.")
        if len(set(ids)) != len(ids):
            raise ValidationError("Entry ids must not contain duplicates.")

        try:
            result = undo_selection_procedure(
                self._session, lottery.id, ids, actor_id, reason, now=now
            )
        except SQLAlchemyError as exc:
            raise PersistenceError(str(exc)) from exc
        _raise_for_procedure(result)
        logger.info(
            "Reverted %s selections for lottery session %s", result.count, lottery.id
        )
        return UndoOutcome(reverted_count=result.count, message=result.message)

    # -------- deadline resolution --------
    def resolve_overdue(
        self,
        lottery_session_id: int,
        *,
        now: Optional[datetime] = None,
        actor_id: Optional[int] = None,
    ) -> SweepSessionResult:
        """Automatically select winners for one overdue session.

        Reading, ranking and writing all happen in the caller's transaction
        and the final write is conditional on the session not being completed,
        so a concurrent resolution turns this call into a no-op.

        Parameters
        ----------
        lottery_session_id : int
            Session to resolve.
        now : Optional[datetime], default: None
            Reference time for the deadline check.
        actor_id : Optional[int], default: None
            When given, only a session owned by this user is resolved and the
            user is recorded as the actor. ``None`` runs as the system
            principal.
        """

        current = as_utc(now) or utcnow()
        lottery = self.load_session(lottery_session_id, refresh=True)
        owner_id = lottery.owner_id
        event_id = lottery.event_id
        title = lottery.event.title

        def _result(outcome: str, **kwargs) -> SweepSessionResult:
            return SweepSessionResult(
                lottery_session_id=lottery_session_id,
                outcome=outcome,
                owner_id=owner_id,
                event_id=event_id,
                event_title=title,
                **kwargs,
            )

        if lottery.is_completed:
            return _result("already_completed")
        if actor_id is not None and owner_id != actor_id:
            return _result("skipped", error="not_owner")
        if as_utc(lottery.selection_deadline) >= current:
            return _result("skipped", error="not_overdue")

        entries = self.entries_for(lottery.id)
        winners = rank_entries(
            entries,
            lottery.weight_config,
            limit=lottery.max_winners,
            registry=self._registry,
        )
        winner_ids = [entry.id for entry in winners]
        result = self._commit_selection(
            lottery.id,
            winner_ids,
            actor_id,
            AUTO_SELECTION_REASON,
            automated=True,
            now=current,
        )
        if not result.success and result.message == "already completed":
            return _result("already_completed")
        _raise_for_procedure(result)

        if not winner_ids:
            return _result("completed_empty")
        return _result(
            "selected",
            selected_count=result.count,
            entry_ids=tuple(winner_ids),
        )

    def _commit_selection(
        self,
        lottery_session_id: int,
        entry_ids: list[int],
        actor_id: Optional[int],
        reason: Optional[str],
        *,
        automated: bool,
        now: Optional[datetime],
    ) -> ProcedureResult:
        try:
            return select_winners_procedure(
                self._session,
                lottery_session_id,
                entry_ids,
                actor_id,
                reason,
                automated=automated,
                now=now,
            )
        except SQLAlchemyError as exc:
            raise PersistenceError(str(exc)) from exc


__all__ = ["SelectionEngine"]
