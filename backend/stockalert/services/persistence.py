"""State persistence — key-value backends and the engine's record repository.

Backends store opaque strings under a key:
    MemoryStateBackend  process-local dict (default, tests)
    RedisStateBackend   redis.asyncio, shared between instances
    SqlStateBackend     a single ``state_records`` table via async SQLAlchemy

Backend failures surface as PersistenceError.  StateRepository maps the two
logical records to JSON; a record that doesn't parse is logged and treated as
absent so startup falls back to defaults instead of failing.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

import redis.asyncio as redis
from pydantic import TypeAdapter, ValidationError
from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from stockalert.config import settings
from stockalert.database import Base, create_session_factory, create_state_engine
from stockalert.middleware.exceptions import PersistenceError
from stockalert.models.state_record import StateRecord
from stockalert.schemas.alerts import AlertSettings, AutoAlert

logger = logging.getLogger(__name__)

SETTINGS_RECORD = "alert_settings"
ALERTS_RECORD = "auto_alerts"

_alert_list = TypeAdapter(list[AutoAlert])


# ── Backends ─────────────────────────────────────────────────

class StateBackend:
    """Interface every backend implements."""

    async def load(self, key: str) -> str | None:
        raise NotImplementedError

    async def save(self, key: str, value: str) -> None:
        raise NotImplementedError

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


class MemoryStateBackend(StateBackend):
    def __init__(self, records: dict[str, str] | None = None):
        self.records: dict[str, str] = dict(records or {})

    async def load(self, key: str) -> str | None:
        return self.records.get(key)

    async def save(self, key: str, value: str) -> None:
        self.records[key] = value


class RedisStateBackend(StateBackend):
    def __init__(self, url: str | None = None, client: Optional[redis.Redis] = None):
        self._url = url or settings.redis_url
        self._client = client

    def _get_client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.from_url(
                self._url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._client

    async def load(self, key: str) -> str | None:
        try:
            return await self._get_client().get(key)
        except UnicodeDecodeError as e:
            # Not UTF-8: treated like a record that fails to parse
            logger.warning("Discarding undecodable %s record: %s", key, e)
            return None
        except redis.RedisError as e:
            raise PersistenceError(f"Redis read failed for {key}: {e}") from e

    async def save(self, key: str, value: str) -> None:
        try:
            await self._get_client().set(key, value)
        except redis.RedisError as e:
            raise PersistenceError(f"Redis write failed for {key}: {e}") from e

    async def ping(self) -> bool:
        try:
            return bool(await self._get_client().ping())
        except redis.RedisError as e:
            raise PersistenceError(f"Redis unreachable: {e}") from e

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class SqlStateBackend(StateBackend):
    def __init__(self, url: str | None = None, engine: AsyncEngine | None = None):
        self._engine = engine or create_state_engine(url)
        self._session_factory = create_session_factory(self._engine)
        self._table_ready = False

    async def _ensure_table(self) -> None:
        if self._table_ready:
            return
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all, checkfirst=True)
        self._table_ready = True

    async def load(self, key: str) -> str | None:
        try:
            await self._ensure_table()
            async with self._session_factory() as session:
                result = await session.execute(
                    select(StateRecord.payload).where(StateRecord.key == key)
                )
                return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Database read failed for {key}: {e}") from e

    async def save(self, key: str, value: str) -> None:
        try:
            await self._ensure_table()
            async with self._session_factory() as session:
                async with session.begin():
                    record = await session.get(StateRecord, key)
                    if record is None:
                        session.add(StateRecord(key=key, payload=value))
                    else:
                        record.payload = value
                        record.updated_at = datetime.now(timezone.utc)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Database write failed for {key}: {e}") from e

    async def ping(self) -> bool:
        try:
            async with self._engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            raise PersistenceError(f"Database unreachable: {e}") from e

    async def close(self) -> None:
        await self._engine.dispose()


def create_backend(kind: str | None = None) -> StateBackend:
    kind = (kind or settings.state_backend).lower()
    if kind == "memory":
        return MemoryStateBackend()
    if kind == "redis":
        return RedisStateBackend()
    if kind == "database":
        return SqlStateBackend()
    raise ValueError(f"Unknown state backend: {kind!r}")


# ── Repository ───────────────────────────────────────────────

class StateRepository:
    def __init__(self, backend: StateBackend, prefix: str | None = None):
        self.backend = backend
        self.prefix = prefix or settings.state_key_prefix

    def key(self, record: str) -> str:
        return f"{self.prefix}:{record}"

    async def load_settings(self) -> AlertSettings | None:
        key = self.key(SETTINGS_RECORD)
        raw = await self.backend.load(key)
        if raw is None:
            return None
        try:
            return AlertSettings.model_validate_json(raw)
        except ValidationError as e:
            logger.warning("Discarding unreadable %s record (%d errors)", key, e.error_count())
            return None

    async def load_alerts(self) -> list[AutoAlert] | None:
        key = self.key(ALERTS_RECORD)
        raw = await self.backend.load(key)
        if raw is None:
            return None
        try:
            return _alert_list.validate_json(raw)
        except ValidationError as e:
            logger.warning("Discarding unreadable %s record (%d errors)", key, e.error_count())
            return None

    async def save_settings(self, alert_settings: AlertSettings) -> None:
        await self.backend.save(
            self.key(SETTINGS_RECORD),
            alert_settings.model_dump_json(by_alias=True),
        )

    async def save_alerts(self, alerts: list[AutoAlert]) -> None:
        await self.backend.save(
            self.key(ALERTS_RECORD),
            _alert_list.dump_json(alerts, by_alias=True).decode(),
        )
