"""Deadline sweep that resolves overdue lottery sessions automatically.

The sweep is meant to be invoked periodically by an external scheduler (see
``scripts/run_sweep.py``). Each session is resolved in its own transaction so
that one failing session never blocks the others.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import replace
from datetime import datetime
from typing import Callable, Optional

from dotenv import load_dotenv
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from ..db.utils import as_utc, utcnow
from ..models import LotterySession
from ..notifications import (
    AUTO_SELECTION_TEMPLATE,
    LoggingNotifier,
    NotificationDispatcher,
    dispatch_safely,
)
from .engine import SelectionEngine
from .errors import LotteryError, PersistenceError, ValidationError
from .types import SweepReport, SweepSessionResult
from .weights import WeightMethodRegistry

load_dotenv()

logger = logging.getLogger(__name__)


def _sweep_settings(
    max_attempts: Optional[int], retry_backoff: Optional[float]
) -> tuple[int, float]:
    attempts = (
        max_attempts
        if max_attempts is not None
        else int(os.getenv("SWEEP_MAX_ATTEMPTS", "3"))
    )
    backoff = (
        retry_backoff
        if retry_backoff is not None
        else float(os.getenv("SWEEP_RETRY_BACKOFF_SECONDS", "0.5"))
    )
    if attempts < 1:
        raise ValidationError("max_attempts must be at least 1")
    if backoff < 0:
        raise ValidationError("retry_backoff must be non-negative")
    return attempts, backoff


def find_overdue_sessions(
    session_factory: sessionmaker, now: datetime
) -> list[int]:
    """Return ids of sessions whose deadline passed without completion."""

    with session_factory() as session:
        return list(
            session.scalars(
                select(LotterySession.id)
                .where(
                    LotterySession.status != "completed",
                    LotterySession.selection_deadline < now,
                )
                .order_by(LotterySession.selection_deadline.asc(), LotterySession.id.asc())
            ).all()
        )


def _resolve_with_retry(
    session_factory: sessionmaker,
    lottery_session_id: int,
    *,
    now: datetime,
    actor_id: Optional[int],
    registry: Optional[WeightMethodRegistry],
    max_attempts: int,
    retry_backoff: float,
    sleep: Callable[[float], None],
) -> SweepSessionResult:
    attempt = 0
    while True:
        attempt += 1
        try:
            with session_factory.begin() as session:
                engine = SelectionEngine(session, registry=registry)
                result = engine.resolve_overdue(
                    lottery_session_id, now=now, actor_id=actor_id
                )
            return replace(result, attempts=attempt)
        except (PersistenceError, SQLAlchemyError) as exc:
            if attempt >= max_attempts:
                logger.exception(
                    "Giving up on lottery session %s after %s attempts",
                    lottery_session_id,
                    attempt,
                )
                return SweepSessionResult(
                    lottery_session_id=lottery_session_id,
                    outcome="failed",
                    error=str(exc),
                    attempts=attempt,
                )
            logger.warning(
                "Attempt %s for lottery session %s failed: %s; retrying",
                attempt,
                lottery_session_id,
                exc,
            )
            sleep(retry_backoff * attempt)
        except LotteryError as exc:
            logger.error(
                "Lottery session %s could not be resolved: %s",
                lottery_session_id,
                exc.message,
            )
            return SweepSessionResult(
                lottery_session_id=lottery_session_id,
                outcome="failed",
                error=exc.code,
                attempts=attempt,
            )
        except Exception as exc:
            logger.exception(
                "Unexpected error while resolving lottery session %s",
                lottery_session_id,
            )
            return SweepSessionResult(
                lottery_session_id=lottery_session_id,
                outcome="failed",
                error=str(exc),
                attempts=attempt,
            )


def auto_select_overdue(
    session_factory: sessionmaker,
    now: Optional[datetime] = None,
    *,
    lottery_session_id: Optional[int] = None,
    actor_id: Optional[int] = None,
    notifier: Optional[NotificationDispatcher] = None,
    max_attempts: Optional[int] = None,
    retry_backoff: Optional[float] = None,
    registry: Optional[WeightMethodRegistry] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> SweepReport:
    """Select winners for every session whose selection deadline has passed.

    Parameters
    ----------
    session_factory : sessionmaker
        Factory used to open one transaction per session.
    now : Optional[datetime], default: None
        Reference time; defaults to the current UTC time.
    lottery_session_id : Optional[int], default: None
        Restrict the sweep to a single session.
    actor_id : Optional[int], default: None
        Organizer on whose behalf the sweep runs. Sessions owned by someone
        else are reported as skipped. ``None`` runs as the system principal
        over all sessions.
    notifier : Optional[NotificationDispatcher], default: None
        Sink for the organizer notice; a :class:`LoggingNotifier` when
        omitted.
    max_attempts : Optional[int], default: None
        Attempts per session on persistence errors. Falls back to the
        ``SWEEP_MAX_ATTEMPTS`` environment variable (3).
    retry_backoff : Optional[float], default: None
        Seconds multiplied by the attempt number between retries. Falls back
        to ``SWEEP_RETRY_BACKOFF_SECONDS`` (0.5).
    registry : Optional[WeightMethodRegistry], default: None
        Weight registry override.
    sleep : Callable[[float], None], default: time.sleep
        Used between retries.

    Returns
    -------
    SweepReport
        One result per examined session, in deadline order.
    """

    current = as_utc(now) or utcnow()
    attempts, backoff = _sweep_settings(max_attempts, retry_backoff)
    sink = notifier if notifier is not None else LoggingNotifier()

    if lottery_session_id is not None:
        candidates = [lottery_session_id]
    else:
        candidates = find_overdue_sessions(session_factory, current)
    logger.info("Deadline sweep found %s candidate sessions", len(candidates))

    results: list[SweepSessionResult] = []
    for sid in candidates:
        result = _resolve_with_retry(
            session_factory,
            sid,
            now=current,
            actor_id=actor_id,
            registry=registry,
            max_attempts=attempts,
            retry_backoff=backoff,
            sleep=sleep,
        )
        results.append(result)

        if result.outcome == "skipped":
            logger.warning("Skipped lottery session %s (%s)", sid, result.error)
        elif result.processed:
            logger.info(
                "Lottery session %s resolved automatically with %s winners",
                sid,
                result.selected_count,
            )
        if result.outcome == "selected" and result.owner_id is not None:
            dispatch_safely(
                sink,
                result.owner_id,
                AUTO_SELECTION_TEMPLATE,
                {
                    "lottery_session_id": sid,
                    "event_id": result.event_id,
                    "event_title": result.event_title,
                    "selected_count": result.selected_count,
                },
            )

    report = SweepReport(results=results)
    logger.info(
        "Deadline sweep finished: %s processed, %s failed",
        report.processed_count,
        report.failed_count,
    )
    return report


__all__ = ["auto_select_overdue", "find_overdue_sessions"]
