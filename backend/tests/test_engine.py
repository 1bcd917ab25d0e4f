"""Engine-level tests: settings updates, persistence round trips, cleanup, subscribers."""

import pytest

from stockalert.auth.permissions import SettingsGuard
from stockalert.middleware.exceptions import (
    PermissionDeniedError,
    PersistenceError,
    SettingsValidationError,
)
from stockalert.schemas.alerts import (
    AutoAcknowledgePolicy,
    NotificationPolicy,
    Severity,
    SettingsUpdate,
    Threshold,
    ThresholdConditions,
    ThresholdType,
)
from stockalert.services.engine import AlertEngine
from stockalert.services.persistence import MemoryStateBackend, StateRepository
from stockalert.services.scheduler import AlertScheduler
from stockalert.services.thresholds import DEFAULT_THRESHOLDS

from conftest import FakeMonotonic, T0


class FlakyBackend(MemoryStateBackend):
    """Memory backend whose writes can be switched off."""

    def __init__(self):
        super().__init__()
        self.failing = False
        self.writes = 0

    async def save(self, key: str, value: str) -> None:
        if self.failing:
            raise PersistenceError("backend offline")
        self.writes += 1
        await super().save(key, value)


class UnreadableBackend(MemoryStateBackend):
    """Memory backend whose reads can be switched off."""

    def __init__(self):
        super().__init__()
        self.reads_failing = False

    async def load(self, key: str) -> str | None:
        if self.reads_failing:
            raise PersistenceError("connection reset")
        return await super().load(key)


def _overstock_rule() -> Threshold:
    return Threshold(
        id="overstock-90",
        type=ThresholdType.OVERSTOCKED,
        name="Overstock",
        threshold_value=90,
        severity=Severity.MEDIUM,
        conditions=ThresholdConditions(check_percentage=True),
    )


async def _new_engine(repository, **kwargs) -> AlertEngine:
    engine = AlertEngine(repository, capacity=100, min_interval=30, clock=FakeMonotonic(), **kwargs)
    await engine.load()
    return engine


@pytest.mark.asyncio
class TestSettingsUpdates:
    async def test_defaults_after_first_load(self, engine):
        settings = engine.get_settings()
        assert settings.thresholds == list(DEFAULT_THRESHOLDS)
        assert settings.notifications == NotificationPolicy()
        assert settings.auto_acknowledge.enabled is False
        assert settings.auto_acknowledge.after_hours == 24

    async def test_unprivileged_update_denied_and_state_unchanged(self, engine, staff):
        before = engine.get_settings()

        with pytest.raises(PermissionDeniedError):
            await engine.update_settings(
                SettingsUpdate(notifications=NotificationPolicy(email=True)), staff,
            )

        assert engine.get_settings() == before

    async def test_mixed_update_denied_as_a_whole(self, repository, admin):
        engine = await _new_engine(repository, guard=SettingsGuard({"nobody"}))

        with pytest.raises(PermissionDeniedError):
            await engine.update_settings(
                SettingsUpdate(
                    thresholds=[_overstock_rule()],
                    notifications=NotificationPolicy(sound=False),
                ),
                admin,
            )

        assert engine.get_settings().notifications.sound is True
        assert engine.registry.thresholds == DEFAULT_THRESHOLDS

    async def test_invalid_thresholds_leave_every_section_untouched(self, engine, admin):
        bad = Threshold(
            id="abs",
            type=ThresholdType.LOW_STOCK,
            name="Absolute",
            threshold_value=0,
            severity=Severity.HIGH,
            conditions=ThresholdConditions(check_absolute=True),
        )

        with pytest.raises(SettingsValidationError) as exc_info:
            await engine.update_settings(
                SettingsUpdate(thresholds=[bad], notifications=NotificationPolicy(email=True)),
                admin,
            )

        assert exc_info.value.details["problems"] == ["abs: checkAbsolute requires absoluteValue"]
        assert engine.get_settings().notifications.email is False
        assert engine.get_settings().thresholds == list(DEFAULT_THRESHOLDS)

    async def test_partial_update_touches_only_given_section(self, engine, admin, wall_clock):
        before = engine.get_settings()
        wall_clock.advance(minutes=5)

        after = await engine.update_settings(
            SettingsUpdate(auto_acknowledge=AutoAcknowledgePolicy(enabled=True, after_hours=12)),
            admin,
        )

        assert after.auto_acknowledge.enabled is True
        assert after.auto_acknowledge.after_hours == 12
        assert after.thresholds == before.thresholds
        assert after.notifications == before.notifications
        assert after.created_at == before.created_at
        assert after.updated_at == T0.replace(minute=5)
        assert after.owner_id == admin.id
        assert after.role == admin.role

    async def test_empty_update_is_a_noop(self, engine, staff):
        assert await engine.update_settings(SettingsUpdate(), staff) == engine.get_settings()

    async def test_new_thresholds_used_by_next_run(self, engine, admin):
        await engine.update_settings(SettingsUpdate(thresholds=[_overstock_rule()]), admin)

        summary = await engine.generate_alerts(
            [{"id": "p1", "stock": 0}, {"id": "p2", "stock": 95, "maxStock": 100}]
        )

        assert summary.total_alerts == 1
        assert summary.by_type == {"overstocked": 1}
        assert engine.list_alerts()[0].product_id == "p2"

    async def test_forced_run_requires_privilege(self, engine, staff, admin):
        await engine.generate_alerts([])

        with pytest.raises(PermissionDeniedError):
            await engine.generate_alerts([{"id": "p1", "stock": 0}], force=True, actor=staff)

        summary = await engine.generate_alerts([{"id": "p1", "stock": 0}], force=True, actor=admin)
        assert summary.admitted and summary.total_alerts == 1


@pytest.mark.asyncio
@pytest.mark.persistence
class TestPersistenceRoundTrip:
    async def test_settings_survive_restart(self, engine, repository, admin):
        updated = await engine.update_settings(
            SettingsUpdate(
                thresholds=[_overstock_rule()],
                notifications=NotificationPolicy(email=True, sound=False),
            ),
            admin,
        )

        restarted = await _new_engine(repository)

        assert restarted.get_settings() == updated
        assert [t.id for t in restarted.registry.thresholds] == ["overstock-90"]

    async def test_alerts_and_dedup_survive_restart(self, engine, repository, admin):
        await engine.generate_alerts([{"id": "p1", "stock": 0}, {"id": "p2", "stock": 0}])
        acked = engine.list_alerts()[0]
        await engine.acknowledge_alert(acked.id, admin.id)

        restarted = await _new_engine(repository)

        assert {a.id for a in restarted.list_alerts()} == {a.id for a in engine.list_alerts()}
        assert restarted.store.has_open_alert("p2")
        assert not restarted.store.has_open_alert(acked.product_id)

        summary = await restarted.generate_alerts([{"id": "p2", "stock": 0}])
        assert summary.suppressed == 1

    async def test_keys_use_prefix(self, engine, backend):
        assert "test:alert_settings" in backend.records
        await engine.generate_alerts([{"id": "p1", "stock": 0}])
        assert "test:auto_alerts" in backend.records

    async def test_invalid_stored_thresholds_fall_back_to_defaults(self, engine, backend, repository):
        raw = backend.records["test:alert_settings"]
        backend.records["test:alert_settings"] = raw.replace(
            '"checkPercentage":true', '"checkPercentage":false'
        )

        restarted = await _new_engine(repository)

        assert restarted.registry.thresholds == DEFAULT_THRESHOLDS

    async def test_write_failure_degrades_then_retries(self, admin):
        backend = FlakyBackend()
        engine = await _new_engine(StateRepository(backend, prefix="flaky"))
        backend.failing = True

        summary = await engine.generate_alerts([{"id": "p1", "stock": 0}])

        assert summary.total_alerts == 1
        assert engine.persistence_degraded is True
        assert "flaky:auto_alerts" not in backend.records

        backend.failing = False
        await engine.update_settings(
            SettingsUpdate(notifications=NotificationPolicy(email=True)), admin,
        )

        assert engine.persistence_degraded is False
        assert "flaky:auto_alerts" in backend.records
        assert '"email":true' in backend.records["flaky:alert_settings"]

    async def test_load_failure_runs_in_memory(self):
        class BrokenBackend(MemoryStateBackend):
            async def load(self, key):
                raise PersistenceError("no route to host")

            async def save(self, key, value):
                raise PersistenceError("no route to host")

        engine = await _new_engine(StateRepository(BrokenBackend()))

        assert engine.persistence_degraded is True
        assert engine.registry.thresholds == DEFAULT_THRESHOLDS
        summary = await engine.generate_alerts([{"id": "p1", "stock": 0}])
        assert summary.total_alerts == 1

    async def _stored_state(self, admin):
        """Backend holding customized settings and one open alert for p1."""
        backend = UnreadableBackend()
        repository = StateRepository(backend, prefix="site")
        first = await _new_engine(repository)
        await first.update_settings(
            SettingsUpdate(auto_acknowledge=AutoAcknowledgePolicy(enabled=True, after_hours=5)),
            admin,
        )
        await first.generate_alerts([{"id": "p1", "stock": 0}])
        return backend, repository, first

    async def test_unreadable_state_is_never_overwritten(self, admin):
        backend, repository, _ = await self._stored_state(admin)
        stored = dict(backend.records)
        backend.reads_failing = True

        engine = await _new_engine(repository)
        await engine.generate_alerts([{"id": "p1", "stock": 0}, {"id": "p2", "stock": 0}])
        await engine.acknowledge_alert(engine.list_alerts()[0].id, admin.id)
        await engine.update_settings(
            SettingsUpdate(notifications=NotificationPolicy(email=True)), admin,
        )
        await engine.close()

        assert engine.load_failed is True
        assert engine.persistence_degraded is True
        assert backend.records == stored

    async def test_reload_after_outage_merges_alerts(self, admin):
        backend, repository, first = await self._stored_state(admin)
        stored_settings = first.get_settings()
        backend.reads_failing = True
        engine = await _new_engine(repository)
        await engine.generate_alerts([{"id": "p2", "stock": 0}])

        backend.reads_failing = False
        await engine.load()

        assert engine.load_failed is False
        assert engine.persistence_degraded is False
        assert engine.get_settings() == stored_settings
        assert {a.product_id for a in engine.list_alerts()} == {"p1", "p2"}
        assert engine.store.has_open_alert("p1")
        assert '"productId":"p2"' in backend.records["site:auto_alerts"]
        assert '"productId":"p1"' in backend.records["site:auto_alerts"]

    async def test_settings_changed_during_outage_survive_reload(self, admin):
        backend, repository, _ = await self._stored_state(admin)
        backend.reads_failing = True
        engine = await _new_engine(repository)
        changed = await engine.update_settings(
            SettingsUpdate(notifications=NotificationPolicy(sound=False)), admin,
        )

        backend.reads_failing = False
        await engine.load()

        assert engine.get_settings() == changed
        assert '"sound":false' in backend.records["site:alert_settings"]

    async def test_cleanup_tick_retries_failed_load(self, admin):
        backend, repository, _ = await self._stored_state(admin)
        backend.reads_failing = True
        engine = await _new_engine(repository)
        scheduler = AlertScheduler(engine, cleanup_interval=3600)

        await scheduler.cleanup_tick()
        assert engine.load_failed is True

        backend.reads_failing = False
        await scheduler.cleanup_tick()

        assert engine.load_failed is False
        assert engine.persistence_degraded is False
        assert engine.get_settings().auto_acknowledge.after_hours == 5


@pytest.mark.asyncio
class TestCleanup:
    async def _acknowledged_alert(self, engine, admin):
        await engine.generate_alerts([{"id": "p1", "stock": 0}])
        alert = engine.list_alerts()[0]
        await engine.acknowledge_alert(alert.id, admin.id)
        return alert

    async def test_disabled_policy_skips_cleanup(self, engine, admin, wall_clock):
        await self._acknowledged_alert(engine, admin)
        wall_clock.advance(hours=100)

        assert await engine.run_cleanup() == 0
        assert engine.get_stats().total == 1

    async def test_forced_cleanup_uses_after_hours(self, engine, admin, wall_clock):
        await self._acknowledged_alert(engine, admin)

        wall_clock.advance(hours=23)
        assert await engine.run_cleanup(force=True) == 0

        wall_clock.advance(hours=2)
        assert await engine.run_cleanup(force=True) == 1
        assert engine.get_stats().total == 0

    async def test_enabled_policy_evicts_old_acknowledged_only(self, engine, admin, wall_clock):
        await engine.update_settings(
            SettingsUpdate(auto_acknowledge=AutoAcknowledgePolicy(enabled=True, after_hours=6)),
            admin,
        )
        await self._acknowledged_alert(engine, admin)
        await engine.generate_alerts([{"id": "p2", "stock": 0}], force=True)
        wall_clock.advance(hours=7)

        assert await engine.run_cleanup() == 1
        assert [a.product_id for a in engine.list_alerts()] == ["p2"]

    async def test_manual_cleanup_requires_privilege(self, engine, staff):
        with pytest.raises(PermissionDeniedError):
            await engine.run_cleanup(force=True, actor=staff)


@pytest.mark.asyncio
class TestReadsAndSubscribers:
    async def test_stats_follow_acknowledgement(self, engine, admin):
        await engine.generate_alerts([
            {"id": "p1", "stock": 0},
            {"id": "p2", "stock": 8, "maxStock": 50},
        ])
        critical = engine.list_alerts(severity=Severity.CRITICAL)[0]

        await engine.acknowledge_alert(critical.id, admin.id)
        stats = engine.get_stats()

        assert (stats.total, stats.unacknowledged, stats.critical, stats.high) == (2, 1, 0, 1)
        assert len(engine.list_alerts(unacknowledged_only=True)) == 1

    async def test_subscriber_sees_critical_and_can_unsubscribe(self, engine):
        seen = []
        unsubscribe = engine.subscribe(lambda event: seen.append(event.kind))

        await engine.generate_alerts([{"id": "p1", "stock": 0}])
        unsubscribe()
        await engine.generate_alerts([{"id": "p2", "stock": 0}], force=True)

        assert seen == ["appended", "critical"]

    async def test_async_subscriber_scheduled(self, engine):
        seen = []

        async def on_event(event):
            seen.append(event.kind)

        engine.subscribe(on_event)
        await engine.generate_alerts([{"id": "p1", "stock": 8, "maxStock": 50}])
        await engine.events.drain()

        assert seen == ["appended"]
