"""Alert store — bounded collection of AutoAlert records.

Lifecycle of a record:  created (open) → acknowledged → evicted

  - Capacity eviction removes the oldest records by timestamp once the store
    exceeds its bound, whatever their acknowledgement state.
  - Age eviction removes acknowledged records only.

The Deduplicator keeps a productId → open alert index that is updated on
every append / acknowledge / eviction, so "does this product already have an
open alert?" never needs a scan and stays consistent with the store.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Callable, Iterable

from stockalert.middleware.exceptions import AlertNotFoundError
from stockalert.schemas.alerts import AlertStats, AutoAlert, Severity
from stockalert.services.events import ACKNOWLEDGED, APPENDED, EVICTED, EventBus

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 100


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Deduplicator:
    def __init__(self):
        self._open: dict[str, AutoAlert] = {}

    def has_open_alert(self, product_id: str) -> bool:
        return product_id in self._open

    def open_alert(self, product_id: str) -> AutoAlert | None:
        return self._open.get(product_id)

    def track(self, alert: AutoAlert) -> None:
        if not alert.acknowledged:
            self._open[alert.product_id] = alert

    def release(self, alert: AutoAlert) -> None:
        current = self._open.get(alert.product_id)
        if current is not None and current.id == alert.id:
            del self._open[alert.product_id]

    def clear(self) -> None:
        self._open.clear()

    def __len__(self) -> int:
        return len(self._open)


class AlertStore:
    def __init__(
        self,
        capacity: int = DEFAULT_CAPACITY,
        events: EventBus | None = None,
        now: Callable[[], datetime] = _utcnow,
    ):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self.events = events or EventBus()
        self.dedup = Deduplicator()
        self._now = now
        # Insertion ordered; acknowledge replaces a value in place
        self._alerts: dict[str, AutoAlert] = {}
        self._lock = threading.Lock()

    # ── Reads ────────────────────────────────────────────────

    def __len__(self) -> int:
        return len(self._alerts)

    def get(self, alert_id: str) -> AutoAlert | None:
        return self._alerts.get(alert_id)

    def has_open_alert(self, product_id: str) -> bool:
        return self.dedup.has_open_alert(product_id)

    def list_alerts(self) -> list[AutoAlert]:
        with self._lock:
            return list(self._alerts.values())

    def list_unacknowledged(self, severity: Severity | None = None) -> list[AutoAlert]:
        with self._lock:
            return [
                a for a in self._alerts.values()
                if not a.acknowledged and (severity is None or a.severity == severity)
            ]

    def stats(self) -> AlertStats:
        """Recomputed from current contents on every call."""
        with self._lock:
            alerts = list(self._alerts.values())

        unacknowledged = [a for a in alerts if not a.acknowledged]
        by_severity = {s: 0 for s in Severity}
        for a in unacknowledged:
            by_severity[a.severity] += 1

        return AlertStats(
            total=len(alerts),
            unacknowledged=len(unacknowledged),
            critical=by_severity[Severity.CRITICAL],
            high=by_severity[Severity.HIGH],
            medium=by_severity[Severity.MEDIUM],
            low=by_severity[Severity.LOW],
        )

    # ── Mutations ────────────────────────────────────────────

    def append(self, alert: AutoAlert) -> bool:
        """Add an alert, evicting the oldest records beyond capacity.

        Returns False (and stores nothing) when the product already has an
        open alert, so there is never more than one per product.
        """
        with self._lock:
            if not alert.acknowledged and self.dedup.has_open_alert(alert.product_id):
                logger.debug(
                    "Refusing duplicate open alert for product %s", alert.product_id
                )
                return False
            if alert.id in self._alerts:
                raise ValueError(f"Alert id already stored: {alert.id}")

            self._alerts[alert.id] = alert
            self.dedup.track(alert)
            evicted = self._evict_over_capacity()

        self.events.publish(APPENDED, [alert])
        if evicted:
            logger.info("Alert store over capacity (%d): evicted %d", self.capacity, len(evicted))
            self.events.publish(EVICTED, evicted)
        return True

    def acknowledge(
        self,
        alert_id: str,
        actor_id: str,
        at: datetime | None = None,
    ) -> AutoAlert:
        """Mark an alert acknowledged.  Acknowledging twice returns the record unchanged."""
        with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None:
                raise AlertNotFoundError(alert_id)
            if alert.acknowledged:
                return alert

            updated = alert.model_copy(update={
                "acknowledged": True,
                "acknowledged_by": actor_id,
                "acknowledged_at": at or self._now(),
            })
            self._alerts[alert_id] = updated
            self.dedup.release(alert)

        self.events.publish(ACKNOWLEDGED, [updated])
        return updated

    def evict_acknowledged_older_than(self, cutoff: datetime) -> list[AutoAlert]:
        """Remove acknowledged alerts with acknowledgedAt < cutoff.  Open alerts stay."""
        with self._lock:
            evicted = [
                a for a in self._alerts.values()
                if a.acknowledged
                and a.acknowledged_at is not None
                and a.acknowledged_at < cutoff
            ]
            for a in evicted:
                del self._alerts[a.id]

        if evicted:
            self.events.publish(EVICTED, evicted)
        return evicted

    def load(self, alerts: Iterable[AutoAlert]) -> None:
        """Replace the contents with previously persisted records.

        Older open duplicates for a product are dropped so the one-open-alert
        invariant holds; the list is then cut to capacity.
        """
        ordered = sorted(alerts, key=lambda a: a.timestamp)
        latest_open: dict[str, str] = {}
        for a in ordered:
            if not a.acknowledged:
                latest_open[a.product_id] = a.id

        kept = [
            a for a in ordered
            if a.acknowledged or latest_open.get(a.product_id) == a.id
        ]
        dropped = len(ordered) - len(kept)
        if dropped:
            logger.warning("Dropped %d duplicate open alerts while loading", dropped)

        with self._lock:
            self._alerts = {a.id: a for a in kept}
            self.dedup.clear()
            for a in self._alerts.values():
                self.dedup.track(a)
            evicted = self._evict_over_capacity()
        if evicted:
            logger.info("Loaded alerts exceed capacity: evicted %d", len(evicted))

    # ── Internals ────────────────────────────────────────────

    def _evict_over_capacity(self) -> list[AutoAlert]:
        """Caller holds the lock."""
        evicted: list[AutoAlert] = []
        while len(self._alerts) > self.capacity:
            # min() keeps the first of equal timestamps, i.e. insertion order
            oldest = min(self._alerts.values(), key=lambda a: a.timestamp)
            del self._alerts[oldest.id]
            self.dedup.release(oldest)
            evicted.append(oldest)
        return evicted
