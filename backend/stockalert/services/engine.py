"""Alert engine — the operations exposed to the rest of the console.

    generate_alerts(snapshot)          debounced evaluation run
    acknowledge_alert(alert_id, actor) open → acknowledged
    update_settings(partial, actor)    guarded, all-or-nothing
    get_stats() / list_alerts() / get_settings()
    subscribe(callback)                store change + critical notifications
    run_cleanup()                      age-based eviction of acknowledged alerts

Only one evaluation pass runs at a time: the debouncer admits a run and
stamps its time before the pass starts, then the pass holds the run lock.
Acknowledgement and stats go straight to the store and interleave freely.

Persistence failures never fail an operation.  The affected record is kept
dirty and written again on the next mutating call.  If the stored records
could not be read at startup, nothing is written until a later load()
succeeds, so the defaults in memory never replace what is stored.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable

from stockalert.auth.permissions import SettingsGuard
from stockalert.config import settings as app_settings
from stockalert.middleware.exceptions import PersistenceError
from stockalert.schemas.alerts import (
    Actor,
    AlertSettings,
    AlertStats,
    AutoAlert,
    InventoryItemSnapshot,
    RunSummary,
    Severity,
    SettingsUpdate,
)
from stockalert.services.alert_store import AlertStore
from stockalert.services.evaluator import AlertEvaluator
from stockalert.services.events import EventBus, Subscriber
from stockalert.services.persistence import (
    ALERTS_RECORD,
    SETTINGS_RECORD,
    MemoryStateBackend,
    StateRepository,
    create_backend,
)
from stockalert.services.scheduler import Debouncer
from stockalert.services.thresholds import (
    DEFAULT_THRESHOLDS,
    ThresholdRegistry,
    validate_thresholds,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def default_settings(
    owner_id: str | None = None,
    role: str = "superadmin",
    now: datetime | None = None,
) -> AlertSettings:
    now = now or _utcnow()
    return AlertSettings(
        id=f"settings-{uuid.uuid4()}",
        owner_id=owner_id,
        role=role,
        thresholds=list(DEFAULT_THRESHOLDS),
        created_at=now,
        updated_at=now,
    )


class AlertEngine:
    def __init__(
        self,
        repository: StateRepository | None = None,
        *,
        capacity: int | None = None,
        min_interval: float | None = None,
        guard: SettingsGuard | None = None,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = _utcnow,
    ):
        self.repository = repository or StateRepository(MemoryStateBackend())
        self.guard = guard or SettingsGuard()
        self.events = EventBus()
        self.store = AlertStore(
            capacity=capacity or app_settings.alert_store_capacity,
            events=self.events,
            now=now,
        )
        self.registry = ThresholdRegistry(guard=self.guard)
        self.evaluator = AlertEvaluator(self.store, now=now)
        self.debouncer = Debouncer(
            app_settings.evaluation_min_interval_seconds if min_interval is None else min_interval,
            clock=clock,
        )
        self._now = now
        self._settings = default_settings(now=now())
        self._run_lock = asyncio.Lock()
        self._save_lock = asyncio.Lock()
        self._dirty: set[str] = set()
        self._load_failed = False
        self.persistence_degraded = False

        # Any store change means the alerts record needs writing
        self.events.subscribe(self._on_store_event)

    @classmethod
    def from_settings(cls, **kwargs) -> "AlertEngine":
        repository = StateRepository(create_backend(), prefix=app_settings.state_key_prefix)
        return cls(repository, **kwargs)

    # ── Startup / shutdown ───────────────────────────────────

    @property
    def load_failed(self) -> bool:
        return self._load_failed

    async def load(self) -> None:
        """Load both records.

        A missing or corrupt record falls back to defaults, which are then
        written.  A backend that cannot be read leaves the engine on
        in-memory state with saving suspended; calling load() again once the
        backend is back merges what was produced in memory meanwhile.
        """
        try:
            stored_settings = await self.repository.load_settings()
            stored_alerts = await self.repository.load_alerts()
        except PersistenceError as e:
            self.persistence_degraded = True
            if self._load_failed:
                logger.warning("Alert state still unreadable: %s", e.message)
                return
            self._load_failed = True
            logger.warning("Could not read alert state, running in memory without saving: %s", e.message)
            self._settings = default_settings(now=self._now())
            self.registry = ThresholdRegistry(self._settings.thresholds, guard=self.guard)
            self.store.load([])
            return

        recovering = self._load_failed
        carried_alerts = self.store.list_alerts() if recovering else []
        # Settings changed while the backend was unreadable win over the stored copy
        keep_settings = recovering and SETTINGS_RECORD in self._dirty
        self._load_failed = False
        self.persistence_degraded = False
        self._dirty.clear()

        if stored_settings is not None:
            problems = validate_thresholds(stored_settings.thresholds)
            if problems:
                logger.warning("Stored thresholds are invalid, using defaults: %s", problems)
                stored_settings = None

        if keep_settings:
            self._dirty.add(SETTINGS_RECORD)
        elif stored_settings is None:
            self._settings = default_settings(now=self._now())
            self._dirty.add(SETTINGS_RECORD)
        else:
            self._settings = stored_settings
        self.registry = ThresholdRegistry(self._settings.thresholds, guard=self.guard)

        self.store.load([*(stored_alerts or []), *carried_alerts])
        if carried_alerts:
            self._dirty.add(ALERTS_RECORD)
            logger.info("Merged %d alerts raised while alert state was unreadable", len(carried_alerts))
        logger.info(
            "Alert engine loaded: %d thresholds, %d alerts (%d open)",
            len(self.registry.thresholds), len(self.store), len(self.store.dedup),
        )
        await self._flush()

    async def close(self) -> None:
        await self._flush()
        await self.events.drain()
        await self.repository.backend.close()

    # ── Evaluation ───────────────────────────────────────────

    async def generate_alerts(
        self,
        snapshot: Iterable[InventoryItemSnapshot | dict[str, Any]],
        *,
        force: bool = False,
        actor: Actor | None = None,
    ) -> RunSummary:
        """Evaluate a snapshot unless a run was admitted within the debounce window.

        ``force`` bypasses the window; when an actor is given it must hold
        ``evaluation.force``.
        """
        if force and actor is not None:
            self.guard.require(actor.role, "evaluation.force")

        run_id = str(uuid.uuid4())
        if not self.debouncer.admit(force=force):
            logger.debug("Evaluation run rejected by debounce window")
            return RunSummary(run_id=run_id, ran_at=self._now(), admitted=False)

        items = list(snapshot)
        async with self._run_lock:
            logger.info("Evaluation run %s admitted: %d items", run_id, len(items))
            result = self.evaluator.evaluate(
                items,
                self.registry.active_thresholds(),
                self._settings.notifications,
            )
            await self._flush()

        by_severity = result.by_severity()
        logger.info(
            "Evaluation run %s: %d new alerts (critical=%d, high=%d), %d suppressed, %d skipped",
            run_id,
            len(result.alerts),
            by_severity.get(Severity.CRITICAL.value, 0),
            by_severity.get(Severity.HIGH.value, 0),
            result.suppressed,
            result.skipped,
        )
        return RunSummary(
            run_id=run_id,
            ran_at=self._now(),
            admitted=True,
            evaluated=result.evaluated,
            skipped=result.skipped,
            suppressed=result.suppressed,
            total_alerts=len(result.alerts),
            by_severity=by_severity,
            by_type=result.by_type(),
        )

    # ── Acknowledgement ──────────────────────────────────────

    async def acknowledge_alert(self, alert_id: str, actor_id: str) -> AutoAlert:
        alert = self.store.acknowledge(alert_id, actor_id)
        await self._flush()
        return alert

    # ── Settings ─────────────────────────────────────────────

    def get_settings(self) -> AlertSettings:
        return self._settings

    async def update_settings(self, update: SettingsUpdate, actor: Actor) -> AlertSettings:
        """Apply a partial update.  Either every section applies or nothing does."""
        actions = []
        if update.thresholds is not None:
            actions.append("thresholds.replace")
        if update.notifications is not None:
            actions.append("notifications.update")
        if update.auto_acknowledge is not None:
            actions.append("auto_acknowledge.update")
        if not actions:
            return self._settings

        for action in actions:
            self.guard.require(actor.role, action)
        if update.thresholds is not None:
            self.registry.validate(update.thresholds)

        # Checks passed; from here nothing can fail
        changes: dict[str, Any] = {
            "owner_id": actor.id,
            "role": actor.role,
            "updated_at": self._now(),
        }
        if update.thresholds is not None:
            changes["thresholds"] = list(self.registry.replace(update.thresholds, actor))
        if update.notifications is not None:
            changes["notifications"] = update.notifications
        if update.auto_acknowledge is not None:
            changes["auto_acknowledge"] = update.auto_acknowledge

        self._settings = self._settings.model_copy(update=changes)
        logger.info("Alert settings updated by %s (%s): %s", actor.id, actor.role, ", ".join(actions))

        self._dirty.add(SETTINGS_RECORD)
        await self._flush()
        return self._settings

    # ── Reads ────────────────────────────────────────────────

    def get_stats(self) -> AlertStats:
        return self.store.stats()

    def list_alerts(
        self,
        severity: Severity | None = None,
        unacknowledged_only: bool = False,
    ) -> list[AutoAlert]:
        if unacknowledged_only:
            return self.store.list_unacknowledged(severity)
        alerts = self.store.list_alerts()
        if severity is not None:
            alerts = [a for a in alerts if a.severity == severity]
        return alerts

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        return self.events.subscribe(callback)

    # ── Cleanup ──────────────────────────────────────────────

    async def run_cleanup(
        self,
        now: datetime | None = None,
        *,
        force: bool = False,
        actor: Actor | None = None,
    ) -> int:
        """Evict acknowledged alerts older than ``autoAcknowledge.afterHours``.

        Runs only while auto-acknowledge is enabled unless ``force`` is set.
        """
        if actor is not None:
            self.guard.require(actor.role, "alerts.cleanup")

        policy = self._settings.auto_acknowledge
        if not policy.enabled and not force:
            return 0

        cutoff = (now or self._now()) - timedelta(hours=policy.after_hours)
        evicted = self.store.evict_acknowledged_older_than(cutoff)
        if evicted:
            logger.info("Cleanup evicted %d acknowledged alerts older than %s", len(evicted), cutoff.isoformat())
        await self._flush()
        return len(evicted)

    # ── Persistence ──────────────────────────────────────────

    def _on_store_event(self, event) -> None:
        self._dirty.add(ALERTS_RECORD)

    async def _flush(self) -> None:
        """Write dirty records.  Failures are logged and retried next time."""
        async with self._save_lock:
            if self._load_failed or not self._dirty:
                return
            pending = set(self._dirty)
            self._dirty.clear()
            try:
                if SETTINGS_RECORD in pending:
                    await self.repository.save_settings(self._settings)
                    pending.discard(SETTINGS_RECORD)
                if ALERTS_RECORD in pending:
                    await self.repository.save_alerts(self.store.list_alerts())
                    pending.discard(ALERTS_RECORD)
            except PersistenceError as e:
                self._dirty |= pending
                self.persistence_degraded = True
                logger.warning("Alert state not persisted, keeping it in memory: %s", e.message)
                return
            self.persistence_degraded = False
