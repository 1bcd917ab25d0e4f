"""Threshold registry — the ordered set of alert rules an evaluation run uses.

The built-in default set is used whenever no settings are stored: one
CRITICAL out-of-stock rule plus CRITICAL (10%) and HIGH (20%) low-stock
percentage rules.  Storage order is preserved; it never implies priority.
"""

from __future__ import annotations

import logging
import threading
from typing import Iterable, Sequence

from stockalert.auth.permissions import SettingsGuard
from stockalert.middleware.exceptions import SettingsValidationError
from stockalert.schemas.alerts import (
    Actor,
    Severity,
    Threshold,
    ThresholdConditions,
    ThresholdType,
)

logger = logging.getLogger(__name__)


DEFAULT_THRESHOLDS: tuple[Threshold, ...] = (
    Threshold(
        id="critical-out-of-stock",
        type=ThresholdType.OUT_OF_STOCK,
        name="Stock Habis",
        description="Product sudah habis",
        threshold_value=0,
        severity=Severity.CRITICAL,
        conditions=ThresholdConditions(
            check_percentage=False, check_absolute=True, absolute_value=0,
        ),
    ),
    Threshold(
        id="critical-low-stock",
        type=ThresholdType.LOW_STOCK,
        name="Stock Kritikal",
        description="Stock tersisa kurang dari 10%",
        threshold_value=10,
        severity=Severity.CRITICAL,
        conditions=ThresholdConditions(check_percentage=True),
    ),
    Threshold(
        id="high-low-stock",
        type=ThresholdType.LOW_STOCK,
        name="Stock Rendah",
        description="Stock tersisa kurang dari 20%",
        threshold_value=20,
        severity=Severity.HIGH,
        conditions=ThresholdConditions(check_percentage=True),
    ),
)


def validate_thresholds(thresholds: Sequence[Threshold]) -> list[str]:
    """Return the problems that make a threshold set unusable (empty = valid)."""
    problems: list[str] = []
    if not thresholds:
        return ["threshold set must not be empty"]

    seen: set[str] = set()
    for t in thresholds:
        if t.id in seen:
            problems.append(f"{t.id}: duplicate threshold id")
        seen.add(t.id)

        cond = t.conditions
        if cond.check_absolute and cond.absolute_value is None:
            problems.append(f"{t.id}: checkAbsolute requires absoluteValue")
        if cond.absolute_value is not None and cond.absolute_value < 0:
            problems.append(f"{t.id}: absoluteValue must not be negative")
        if t.threshold_value < 0:
            problems.append(f"{t.id}: thresholdValue must not be negative")
        if t.type == ThresholdType.LOW_STOCK and not (
            cond.check_percentage or cond.check_absolute
        ):
            problems.append(f"{t.id}: low_stock rule has no condition enabled")
        if t.type == ThresholdType.OVERSTOCKED and not cond.check_percentage:
            problems.append(f"{t.id}: overstocked rule requires checkPercentage")

    return problems


class ThresholdRegistry:
    def __init__(
        self,
        thresholds: Iterable[Threshold] | None = None,
        guard: SettingsGuard | None = None,
    ):
        initial = tuple(thresholds) if thresholds is not None else DEFAULT_THRESHOLDS
        self.validate(initial)
        self._thresholds: tuple[Threshold, ...] = initial
        self._guard = guard
        self._lock = threading.Lock()

    @property
    def thresholds(self) -> tuple[Threshold, ...]:
        return self._thresholds

    def active_thresholds(self) -> list[Threshold]:
        """Enabled thresholds, in stored order."""
        return [t for t in self._thresholds if t.enabled]

    @staticmethod
    def validate(thresholds: Sequence[Threshold]) -> None:
        problems = validate_thresholds(thresholds)
        if problems:
            raise SettingsValidationError(problems)

    def replace(self, new_thresholds: Iterable[Threshold], actor: Actor) -> tuple[Threshold, ...]:
        """Swap in a complete new set.  Nothing changes unless every check passes."""
        if self._guard is not None:
            self._guard.require(actor.role, "thresholds.replace")

        candidate = tuple(new_thresholds)
        self.validate(candidate)

        with self._lock:
            self._thresholds = candidate

        logger.info(
            "Thresholds replaced by %s (%s): %d rules, %d enabled",
            actor.id, actor.role, len(candidate), sum(1 for t in candidate if t.enabled),
        )
        return candidate
