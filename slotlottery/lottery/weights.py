"""Weight formulas used to bias automatic ranking."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, Optional


@dataclass(frozen=True)
class WeightMethod:
    """Definition of a weight formula.

    Attributes
    ----------
    key : str
        Registry key stored in ``LotterySession.weight_method``.
    formula : Callable[[float, int], float]
        Pure callable taking ``(multiplier, total_slots)`` and returning the
        weight. ``total_slots`` is the number of the applicant's ``applied``
        entries in the same session, across slots.
    description : Optional[str]
        Human-readable summary of the formula.
    """

    key: str
    formula: Callable[[float, int], float]
    description: Optional[str] = None

    def compute(self, multiplier: float, total_slots: int) -> float:
        """Return the weight for an applicant with ``total_slots`` entries."""
        if total_slots < 0:
            raise ValueError("total_slots must be non-negative")
        return float(self.formula(float(multiplier), int(total_slots)))


class WeightMethodRegistry:
    """Mutable registry mapping weight method keys to definitions."""

    def __init__(self) -> None:
        self._methods: Dict[str, WeightMethod] = {}

    def register(self, method: WeightMethod, *, replace: bool = False) -> None:
        """Register a weight method under its key.

        Parameters
        ----------
        method : WeightMethod
            Method to add to the registry.
        replace : bool, default: False
            When ``True`` an existing registration with the same key is
            overwritten. Otherwise a duplicate raises :class:`ValueError`.
        """
        if not replace and method.key in self._methods:
            raise ValueError(f"Weight method '{method.key}' is already registered")
        self._methods[method.key] = method

    def get(self, key: str) -> WeightMethod:
        """Return the method registered under ``key``."""
        try:
            return self._methods[key]
        except KeyError as exc:
            raise KeyError(f"Unknown weight method '{key}'") from exc

    def __contains__(self, key: object) -> bool:
        return key in self._methods

    def compute(self, key: str, multiplier: float, total_slots: int) -> float:
        return self.get(key).compute(multiplier, total_slots)

    def available_methods(self) -> Dict[str, WeightMethod]:
        """Return a copy of the registered methods keyed by identifier."""
        return dict(self._methods)


def _linear(multiplier: float, total_slots: int) -> float:
    return total_slots * multiplier


def _bonus(multiplier: float, total_slots: int) -> float:
    return 1.0 + (total_slots - 1) * multiplier


DEFAULT_WEIGHT_REGISTRY = WeightMethodRegistry()
DEFAULT_WEIGHT_REGISTRY.register(
    WeightMethod(
        key="linear",
        formula=_linear,
        description="Number of applied slots times the multiplier.",
    )
)
DEFAULT_WEIGHT_REGISTRY.register(
    WeightMethod(
        key="bonus",
        formula=_bonus,
        description=(
            "1.0 for the first slot plus the multiplier for each additional slot; "
            "every applicant with at least one entry weighs at least 1.0."
        ),
    )
)
# Extension point: deployments swap in their own formula with
# ``DEFAULT_WEIGHT_REGISTRY.register(WeightMethod("custom", ...), replace=True)``.
# Until one is registered it behaves like ``linear``.
DEFAULT_WEIGHT_REGISTRY.register(
    WeightMethod(
        key="custom",
        formula=_linear,
        description="Organizer-specific formula; defaults to the linear formula.",
    )
)


def compute_weight(
    method: str,
    multiplier: float,
    total_slots: int,
    *,
    registry: Optional[WeightMethodRegistry] = None,
) -> float:
    """Compute the weight of an applicant.

    Parameters
    ----------
    method : str
        Weight method key (``"linear"``, ``"bonus"`` or ``"custom"``).
    multiplier : float
        Session multiplier.
    total_slots : int
        Count of the applicant's ``applied`` entries in the session.
    registry : Optional[WeightMethodRegistry], default: None
        Registry override; the default registry is used when omitted.

    Returns
    -------
    float
        The computed weight.

    Raises
    ------
    KeyError
        If ``method`` is not registered.
    """
    active_registry = registry or DEFAULT_WEIGHT_REGISTRY
    return active_registry.compute(method, multiplier, total_slots)


__all__ = [
    "DEFAULT_WEIGHT_REGISTRY",
    "WeightMethod",
    "WeightMethodRegistry",
    "compute_weight",
]
