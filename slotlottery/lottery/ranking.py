"""Ranking helpers shared by entry listing and automatic selection."""

from __future__ import annotations

from collections import Counter
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Iterable, Optional, Sequence

from ..db.utils import as_utc
from .types import WeightConfig
from .weights import WeightMethodRegistry, compute_weight

if TYPE_CHECKING:
    from ..models import LotteryEntry

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def applied_counts_by_applicant(entries: Iterable["LotteryEntry"]) -> Counter:
    """Count ``applied`` entries per applicant across all slots."""

    return Counter(entry.applicant_id for entry in entries if entry.status == "applied")


def fresh_weights(
    entries: Sequence["LotteryEntry"],
    config: WeightConfig,
    *,
    registry: Optional[WeightMethodRegistry] = None,
) -> dict[int, Optional[float]]:
    """Return ``{entry.id: weight}`` computed from scratch.

    ``entries`` must contain every entry of the session so that per-applicant
    counts are complete. Only ``applied`` entries get a weight; the others,
    and every entry when weights are disabled, map to ``None``.
    The cached ``LotteryEntry.weight`` column is never consulted.
    """

    if not config.enabled:
        return {entry.id: None for entry in entries}

    counts = applied_counts_by_applicant(entries)
    return {
        entry.id: compute_weight(
            config.method,
            config.multiplier,
            counts.get(entry.applicant_id, 0),
            registry=registry,
        )
        if entry.status == "applied"
        else None
        for entry in entries
    }


def _submitted_key(entry: "LotteryEntry") -> datetime:
    return as_utc(entry.submitted_at) or _EPOCH


def rank_entries(
    entries: Sequence["LotteryEntry"],
    config: WeightConfig,
    *,
    limit: Optional[int] = None,
    registry: Optional[WeightMethodRegistry] = None,
) -> list["LotteryEntry"]:
    """Order ``applied`` entries for automatic selection.

    With weights enabled the order is weight descending, then submission time
    ascending; otherwise submission time ascending only. The entry id breaks
    any remaining tie so the ranking is deterministic.

    Parameters
    ----------
    entries : Sequence[LotteryEntry]
        All entries of the session. Only ``applied`` ones are ranked, but the
        others are still needed to count slots per applicant.
    config : WeightConfig
        Session weighting configuration.
    limit : Optional[int], default: None
        Return at most ``limit`` entries.
    registry : Optional[WeightMethodRegistry], default: None
        Weight registry override.
    """

    if limit is not None and limit < 0:
        raise ValueError("limit must be non-negative when provided")

    candidates = [entry for entry in entries if entry.status == "applied"]
    if config.enabled:
        weights = fresh_weights(entries, config, registry=registry)
        ranked = sorted(
            candidates,
            key=lambda entry: (
                -float(weights[entry.id] or 0.0),
                _submitted_key(entry),
                entry.id or 0,
            ),
        )
    else:
        ranked = sorted(
            candidates,
            key=lambda entry: (_submitted_key(entry), entry.id or 0),
        )

    if limit is None:
        return ranked
    return ranked[:limit]


__all__ = [
    "applied_counts_by_applicant",
    "fresh_weights",
    "rank_entries",
]
