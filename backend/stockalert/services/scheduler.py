"""Evaluation debounce and background loops.

Debouncer:
    admit() lets a run through when it is the first run, when at least
    ``min_interval`` seconds passed since the last admitted run, or when the
    caller forces it.  The admission timestamp is set under the same lock
    as the check, so a second trigger during a long run is rejected.

AlertScheduler runs two independent asyncio loops:
    - cleanup, every ``cleanup_interval_seconds`` (default hourly),
      never throttled by the debounce window; also retries loading the
      stored state when it could not be read at startup
    - evaluation, every ``evaluation_interval_seconds``, only when a
      snapshot provider is configured (0 disables it)

Usage:
    In main.py:

        from stockalert.services.scheduler import lifespan
        app = FastAPI(lifespan=lifespan, ...)

    To evaluate on a timer, set ``app.state.snapshot_provider`` to an
    async callable returning the current inventory snapshot before startup.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from fastapi import FastAPI

from stockalert.config import settings

if TYPE_CHECKING:
    from stockalert.services.engine import AlertEngine

logger = logging.getLogger("stockalert.scheduler")

SnapshotProvider = Callable[[], Awaitable[list[Any]]]


class Debouncer:
    def __init__(self, min_interval: float, clock: Callable[[], float] = time.monotonic):
        if min_interval < 0:
            raise ValueError("min_interval must not be negative")
        self.min_interval = min_interval
        self._clock = clock
        self._last_admitted: float | None = None
        self._lock = threading.Lock()

    @property
    def last_admitted(self) -> float | None:
        return self._last_admitted

    def admit(self, now: float | None = None, force: bool = False) -> bool:
        with self._lock:
            now = self._clock() if now is None else now
            if (
                force
                or self._last_admitted is None
                or now - self._last_admitted >= self.min_interval
            ):
                self._last_admitted = now
                return True
            return False


class AlertScheduler:
    def __init__(
        self,
        engine: "AlertEngine",
        cleanup_interval: float | None = None,
        evaluation_interval: float | None = None,
        snapshot_provider: SnapshotProvider | None = None,
    ):
        self.engine = engine
        self.cleanup_interval = cleanup_interval or settings.cleanup_interval_seconds
        self.evaluation_interval = (
            settings.evaluation_interval_seconds
            if evaluation_interval is None
            else evaluation_interval
        )
        self.snapshot_provider = snapshot_provider
        self._tasks: list[asyncio.Task] = []

    async def cleanup_tick(self) -> int:
        try:
            if self.engine.load_failed:
                await self.engine.load()
            return await self.engine.run_cleanup()
        except Exception:
            logger.exception("Unhandled error in alert cleanup")
            return 0

    async def evaluation_tick(self) -> None:
        if self.snapshot_provider is None:
            return
        try:
            snapshot = await self.snapshot_provider()
            await self.engine.generate_alerts(snapshot)
        except Exception:
            logger.exception("Unhandled error in scheduled evaluation")

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval)
            await self.cleanup_tick()

    async def _evaluation_loop(self) -> None:
        while True:
            await asyncio.sleep(self.evaluation_interval)
            await self.evaluation_tick()

    def start(self) -> None:
        self._tasks.append(asyncio.create_task(self._cleanup_loop()))
        if self.snapshot_provider is not None and self.evaluation_interval > 0:
            self._tasks.append(asyncio.create_task(self._evaluation_loop()))
        logger.info(
            "Alert scheduler started (cleanup every %.0fs, evaluation %s)",
            self.cleanup_interval,
            f"every {self.evaluation_interval:.0f}s" if len(self._tasks) > 1 else "on demand",
        )

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        logger.info("Alert scheduler stopped")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI lifespan: load the engine and start the loops, stop them on shutdown."""
    from stockalert.services.engine import AlertEngine  # deferred to avoid circular

    engine = getattr(app.state, "engine", None) or AlertEngine.from_settings()
    await engine.load()
    app.state.engine = engine

    scheduler = AlertScheduler(
        engine,
        snapshot_provider=getattr(app.state, "snapshot_provider", None),
    )
    scheduler.start()
    try:
        yield
    finally:
        await scheduler.stop()
        await engine.close()
