"""Alert evaluator — turns an inventory snapshot into new AutoAlert records.

For each item:
    1. normalize stock into (current, maximum) once
    2. percentage = current / maximum * 100   (0 when maximum <= 0)
    3. test every enabled threshold
         out_of_stock   current == 0
         low_stock      (checkPercentage and pct <= value)
                        or (checkAbsolute and current <= absoluteValue)
         overstocked    checkPercentage and pct >= value
    4. skip the item if it already has an open alert, whatever fired
    5. keep the single highest-severity threshold and append the alert

A malformed item raises EvaluationError during normalization; it is logged
and skipped, the run carries on with the remaining items.
"""

from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Sequence

from pydantic import ValidationError

from stockalert.middleware.exceptions import EvaluationError
from stockalert.schemas.alerts import (
    AutoAlert,
    InventoryItemSnapshot,
    NotificationPolicy,
    Severity,
    Threshold,
    ThresholdType,
)
from stockalert.services.alert_store import AlertStore
from stockalert.services.events import CRITICAL
from stockalert.services.priority import resolve_priority

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Normalization ────────────────────────────────────────────

@dataclass(frozen=True)
class NormalizedItem:
    product_id: str
    name: str
    code: str
    current_stock: float
    max_stock: float

    @property
    def percentage(self) -> float:
        if self.max_stock > 0:
            return self.current_stock / self.max_stock * 100
        return 0.0


def _number(value: Any, item_id: str | None, label: str) -> float | None:
    """A finite int/float, None for absent, EvaluationError for anything else."""
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise EvaluationError(item_id, f"{label} is not numeric: {value!r}")
    if not math.isfinite(value):
        raise EvaluationError(item_id, f"{label} is not finite: {value!r}")
    return value


def normalize_item(raw: InventoryItemSnapshot | dict[str, Any]) -> NormalizedItem:
    """Resolve a snapshot item's stock shape into plain numbers.

    ``stock`` may be a bare number or an object carrying ``current`` /
    ``maximum``.  A missing maximum falls back to ``maxStock`` and then to
    ``max(minStock, 2 * current)``.
    """
    if isinstance(raw, InventoryItemSnapshot):
        item = raw
    else:
        raw_id = raw.get("id") if isinstance(raw, dict) else None
        try:
            item = InventoryItemSnapshot.model_validate(raw)
        except ValidationError as exc:
            raise EvaluationError(
                None if raw_id is None else str(raw_id),
                f"malformed snapshot item ({exc.error_count()} errors)",
            ) from exc

    item_id = item.id
    stock = item.stock
    min_stock = _number(item.min_stock, item_id, "minStock") or 0
    declared_max = _number(item.max_stock, item_id, "maxStock")

    if stock is None:
        raise EvaluationError(item_id, "stock is missing")

    if isinstance(stock, dict):
        current = _number(stock.get("current"), item_id, "stock.current") or 0
        maximum = _number(stock.get("maximum"), item_id, "stock.maximum")
        if not maximum:
            maximum = declared_max
    else:
        current = _number(stock, item_id, "stock")
        maximum = declared_max

    if maximum is None:
        maximum = max(min_stock, 2 * current)

    return NormalizedItem(
        product_id=item_id,
        name=item.name or item_id,
        code=item.code or item_id,
        current_stock=current,
        max_stock=maximum,
    )


# ── Threshold tests & messages ───────────────────────────────

def _fmt(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return f"{value:g}"


def threshold_fires(threshold: Threshold, item: NormalizedItem) -> bool:
    current = item.current_stock
    pct = item.percentage
    cond = threshold.conditions

    if threshold.type == ThresholdType.OUT_OF_STOCK:
        return current == 0

    if threshold.type == ThresholdType.LOW_STOCK:
        if cond.check_percentage and pct <= threshold.threshold_value:
            return True
        return (
            cond.check_absolute
            and cond.absolute_value is not None
            and current <= cond.absolute_value
        )

    if threshold.type == ThresholdType.OVERSTOCKED:
        return cond.check_percentage and pct >= threshold.threshold_value

    return False


def build_message(threshold: Threshold, item: NormalizedItem) -> str:
    name = item.name
    stock = _fmt(item.current_stock)
    pct = item.percentage

    if threshold.type == ThresholdType.OUT_OF_STOCK:
        return f"{name} sudah habis!"

    if threshold.type == ThresholdType.LOW_STOCK:
        by_percentage = (
            threshold.conditions.check_percentage and pct <= threshold.threshold_value
        )
        if by_percentage:
            return f"{name} stock rendah! Tersisa {stock} ({pct:.1f}%)"
        return f"{name} stock rendah! Tersisa {stock} unit"

    return f"{name} overstocked! Stock: {stock} ({pct:.1f}%)"


# ── Evaluator ────────────────────────────────────────────────

@dataclass
class EvaluationResult:
    alerts: list[AutoAlert] = field(default_factory=list)
    evaluated: int = 0
    skipped: int = 0      # malformed items
    suppressed: int = 0   # fired, but an open alert already exists

    def by_severity(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for a in self.alerts:
            counts[a.severity.value] = counts.get(a.severity.value, 0) + 1
        return counts

    def by_type(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for a in self.alerts:
            counts[a.type.value] = counts.get(a.type.value, 0) + 1
        return counts


class AlertEvaluator:
    def __init__(
        self,
        store: AlertStore,
        now: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self._now = now

    def evaluate(
        self,
        items: Iterable[InventoryItemSnapshot | dict[str, Any]],
        thresholds: Sequence[Threshold],
        notifications: NotificationPolicy,
    ) -> EvaluationResult:
        result = EvaluationResult()
        seen: set[str] = set()
        active = [t for t in thresholds if t.enabled]

        for raw in items:
            try:
                item = normalize_item(raw)
            except EvaluationError as exc:
                result.skipped += 1
                logger.warning("Skipping inventory item: %s", exc.message)
                continue

            # A product listed twice in one snapshot is evaluated once
            if item.product_id in seen:
                continue
            seen.add(item.product_id)
            result.evaluated += 1

            fired = [t for t in active if threshold_fires(t, item)]
            if not fired:
                continue

            if self.store.has_open_alert(item.product_id):
                result.suppressed += 1
                logger.debug(
                    "Product %s already has an open alert; %d thresholds suppressed",
                    item.product_id, len(fired),
                )
                continue

            winner = resolve_priority(fired)
            alert = AutoAlert(
                id=str(uuid.uuid4()),
                product_id=item.product_id,
                product_name=item.name,
                product_code=item.code,
                type=winner.type,
                severity=winner.severity,
                message=build_message(winner, item),
                current_stock=item.current_stock,
                total_stock=item.max_stock,
                percentage=round(item.percentage, 1),
                threshold=winner.threshold_value,
                threshold_id=winner.id,
                timestamp=self._now(),
            )

            if not self.store.append(alert):
                # An open alert appeared between the check and the append
                result.suppressed += 1
                continue
            result.alerts.append(alert)

            if winner.severity == Severity.CRITICAL and notifications.in_app:
                self.store.events.publish(CRITICAL, [alert])

        return result
