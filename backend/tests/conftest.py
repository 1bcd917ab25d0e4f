"""Pytest configuration and fixtures for stock alert engine tests.

Provides fake clocks, an engine over an in-memory state backend, actors,
bearer tokens and an HTTP client bound to the FastAPI app.
"""

import uuid
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from stockalert.auth.deps import get_engine
from stockalert.auth.jwt import create_access_token
from stockalert.auth.permissions import SettingsGuard
from stockalert.main import app
from stockalert.schemas.alerts import Actor, AutoAlert, Severity, ThresholdType
from stockalert.services.engine import AlertEngine
from stockalert.services.persistence import MemoryStateBackend, StateRepository

T0 = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)


# ── Clocks ───────────────────────────────────────────────────────

class FakeMonotonic:
    """Stand-in for time.monotonic()."""

    def __init__(self, start: float = 1000.0):
        self.value = start

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


class FakeWallClock:
    """Stand-in for datetime.now(timezone.utc)."""

    def __init__(self, start: datetime = T0):
        self.value = start

    def __call__(self) -> datetime:
        return self.value

    def advance(self, **kwargs) -> None:
        self.value += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeMonotonic:
    return FakeMonotonic()


@pytest.fixture
def wall_clock() -> FakeWallClock:
    return FakeWallClock()


# ── Engine ───────────────────────────────────────────────────────

@pytest.fixture
def guard() -> SettingsGuard:
    return SettingsGuard({"superadmin", "admin"})


@pytest.fixture
def backend() -> MemoryStateBackend:
    return MemoryStateBackend()


@pytest.fixture
def repository(backend: MemoryStateBackend) -> StateRepository:
    return StateRepository(backend, prefix="test")


@pytest_asyncio.fixture
async def engine(repository, guard, clock, wall_clock) -> AsyncGenerator[AlertEngine, None]:
    """Loaded engine: default settings, empty store, 30s debounce window."""
    eng = AlertEngine(
        repository,
        capacity=100,
        min_interval=30,
        guard=guard,
        clock=clock,
        now=wall_clock,
    )
    await eng.load()
    yield eng
    await eng.events.drain()


# ── Actors ───────────────────────────────────────────────────────

@pytest.fixture
def admin() -> Actor:
    return Actor(id="user-admin", role="superadmin")


@pytest.fixture
def staff() -> Actor:
    return Actor(id="user-staff", role="user")


@pytest.fixture
def make_alert():
    """Factory for AutoAlert records with sensible defaults."""

    def _make(
        product_id: str = "p1",
        severity: Severity = Severity.HIGH,
        timestamp: datetime = T0,
        **overrides,
    ) -> AutoAlert:
        fields = dict(
            id=str(uuid.uuid4()),
            product_id=product_id,
            product_name=f"Product {product_id}",
            product_code=product_id.upper(),
            type=ThresholdType.LOW_STOCK,
            severity=severity,
            message=f"Product {product_id} stock rendah!",
            current_stock=5,
            total_stock=50,
            percentage=10.0,
            threshold=20,
            threshold_id="high-low-stock",
            timestamp=timestamp,
        )
        fields.update(overrides)
        return AutoAlert(**fields)

    return _make


# ── HTTP ─────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def client(engine: AlertEngine) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client with the test engine injected (lifespan is not run)."""
    app.dependency_overrides[get_engine] = lambda: engine
    app.state.engine = engine

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c

    app.dependency_overrides.clear()
    del app.state.engine


@pytest.fixture
def admin_headers(admin: Actor) -> dict:
    return {"Authorization": f"Bearer {create_access_token(admin.id, admin.role)}"}


@pytest.fixture
def staff_headers(staff: Actor) -> dict:
    return {"Authorization": f"Bearer {create_access_token(staff.id, staff.role)}"}


# ── Test Markers ─────────────────────────────────────────────────

def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "api: HTTP endpoint tests")
    config.addinivalue_line("markers", "persistence: State backend tests")
    config.addinivalue_line("markers", "slow: Slow tests")
