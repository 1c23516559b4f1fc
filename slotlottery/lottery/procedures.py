"""Atomic persistence procedures for committing and reverting selections.

Each procedure runs inside a SAVEPOINT on the caller's transaction and either
applies all of its writes or none of them. Business failures (unknown
session, already completed, stale entry states) are reported through
:class:`~slotlottery.lottery.types.ProcedureResult` instead of exceptions;
only database errors propagate.
"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from ..db.utils import utcnow
from ..models import LotteryEntry, LotterySession, SelectionRecord
from .types import ProcedureResult

AUTO_SELECTION_REASON = "deadline exceeded, automatic selection"


class _ProcedureAbort(Exception):
    """Raised inside the savepoint to roll it back with a business message."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


def _unique_ids(entry_ids: Iterable[int]) -> list[int]:
    return list(dict.fromkeys(int(entry_id) for entry_id in entry_ids))


def _load_entries(
    session: Session, lottery_session_id: int, entry_ids: list[int]
) -> list[LotteryEntry]:
    if not entry_ids:
        return []
    stmt = select(LotteryEntry).where(
        LotteryEntry.session_id == lottery_session_id,
        LotteryEntry.id.in_(entry_ids),
    ).execution_options(populate_existing=True)
    return list(session.scalars(stmt).all())


def _append_records(
    session: Session,
    *,
    lottery_session_id: int,
    entry_ids: list[int],
    actor_id: Optional[int],
    action: str,
    reason: Optional[str],
    automated: bool,
    occurred_at: datetime,
) -> None:
    session.add_all(
        [
            SelectionRecord(
                session_id=lottery_session_id,
                entry_id=entry_id,
                actor_id=actor_id,
                automated=automated,
                action=action,
                reason=reason,
                occurred_at=occurred_at,
            )
            for entry_id in entry_ids
        ]
    )


def select_winners_procedure(
    session: Session,
    lottery_session_id: int,
    entry_ids: Iterable[int],
    actor_id: Optional[int],
    reason: Optional[str],
    *,
    automated: bool = False,
    now: Optional[datetime] = None,
) -> ProcedureResult:
    """Mark ``entry_ids`` as selected and complete the session in one unit.

    The session row is claimed first with a conditional update
    (``status != 'completed'``). A concurrent caller that loses the race sees
    zero affected rows and gets ``success=False`` with ``"already completed"``
    without writing anything. An empty ``entry_ids`` completes the session
    with zero winners.

    Parameters
    ----------
    session : Session
        Session whose current transaction hosts the savepoint.
    lottery_session_id : int
        Session to resolve.
    entry_ids : Iterable[int]
        Entries to select; each must belong to the session and be ``applied``.
    actor_id : Optional[int]
        User recorded on the selection records; ``None`` for the system.
    reason : Optional[str]
        Free-text reason stored on every record.
    automated : bool, default: False
        Flag stored on the records to tell sweep selections apart.
    now : Optional[datetime], default: None
        Timestamp for the writes; defaults to the current UTC time.

    Returns
    -------
    ProcedureResult
        ``count`` is the number of entries selected.
    """

    ids = _unique_ids(entry_ids)
    stamp = now or utcnow()
    try:
        with session.begin_nested():
            claimed = session.execute(
                update(LotterySession)
                .where(
                    LotterySession.id == lottery_session_id,
                    LotterySession.status != "completed",
                )
                .values(status="completed", completed_at=stamp, updated_at=stamp)
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount == 0:
                exists = session.scalar(
                    select(LotterySession.id).where(
                        LotterySession.id == lottery_session_id
                    )
                )
                if exists is None:
                    raise _ProcedureAbort("lottery session not found")
                raise _ProcedureAbort("already completed")

            max_winners = session.scalar(
                select(LotterySession.max_winners).where(
                    LotterySession.id == lottery_session_id
                )
            )
            entries = _load_entries(session, lottery_session_id, ids)
            if len(entries) != len(ids):
                raise _ProcedureAbort("some entries do not belong to this session")
            not_applied = sorted(e.id for e in entries if e.status != "applied")
            if not_applied:
                raise _ProcedureAbort(f"entries are not in applied status: {not_applied}")

            already_selected = session.scalar(
                select(func.count(LotteryEntry.id)).where(
                    LotteryEntry.session_id == lottery_session_id,
                    LotteryEntry.status == "selected",
                )
            )
            if (already_selected or 0) + len(ids) > (max_winners or 0):
                raise _ProcedureAbort(
                    f"selection exceeds max winners ({max_winners})"
                )

            if ids:
                changed = session.execute(
                    update(LotteryEntry)
                    .where(
                        LotteryEntry.session_id == lottery_session_id,
                        LotteryEntry.id.in_(ids),
                        LotteryEntry.status == "applied",
                    )
                    .values(status="selected", updated_at=stamp)
                    .execution_options(synchronize_session=False)
                )
                if changed.rowcount != len(ids):
                    raise _ProcedureAbort("entries changed concurrently")

                _append_records(
                    session,
                    lottery_session_id=lottery_session_id,
                    entry_ids=ids,
                    actor_id=actor_id,
                    action="select",
                    reason=reason,
                    automated=automated,
                    occurred_at=stamp,
                )
            session.flush()
    except _ProcedureAbort as abort:
        return ProcedureResult(success=False, message=abort.message)
    finally:
        # bulk updates bypass the identity map; reload on next access
        session.expire_all()

    return ProcedureResult(
        success=True, message=f"selected {len(ids)} entries", count=len(ids)
    )


def undo_selection_procedure(
    session: Session,
    lottery_session_id: int,
    entry_ids: Iterable[int],
    actor_id: Optional[int],
    reason: Optional[str],
    *,
    now: Optional[datetime] = None,
) -> ProcedureResult:
    """Return ``selected`` entries to ``applied`` and append ``undo`` records.

    The session status is left untouched. Touching ``updated_at`` on the
    session row serializes the undo against a concurrent selection.
    """

    ids = _unique_ids(entry_ids)
    stamp = now or utcnow()
    try:
        with session.begin_nested():
            touched = session.execute(
                update(LotterySession)
                .where(LotterySession.id == lottery_session_id)
                .values(updated_at=stamp)
                .execution_options(synchronize_session=False)
            )
            if touched.rowcount == 0:
                raise _ProcedureAbort("lottery session not found")

            entries = _load_entries(session, lottery_session_id, ids)
            if len(entries) != len(ids):
                raise _ProcedureAbort("some entries do not belong to this session")
            not_selected = sorted(e.id for e in entries if e.status != "selected")
            if not_selected:
                raise _ProcedureAbort(
                    f"entries are not in selected status: {not_selected}"
                )

            changed = session.execute(
                update(LotteryEntry)
                .where(
                    LotteryEntry.session_id == lottery_session_id,
                    LotteryEntry.id.in_(ids),
                    LotteryEntry.status == "selected",
                )
                .values(status="applied", updated_at=stamp)
                .execution_options(synchronize_session=False)
            )
            if changed.rowcount != len(ids):
                raise _ProcedureAbort("entries changed concurrently")

            _append_records(
                session,
                lottery_session_id=lottery_session_id,
                entry_ids=ids,
                actor_id=actor_id,
                action="undo",
                reason=reason,
                automated=False,
                occurred_at=stamp,
            )
            session.flush()
    except _ProcedureAbort as abort:
        return ProcedureResult(success=False, message=abort.message)
    finally:
        # bulk updates bypass the identity map; reload on next access
        session.expire_all()

    return ProcedureResult(
        success=True, message=f"reverted {len(ids)} entries", count=len(ids)
    )


__all__ = [
    "AUTO_SELECTION_REASON",
    "select_winners_procedure",
    "undo_selection_procedure",
]
