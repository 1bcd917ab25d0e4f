"""Async SQLAlchemy engine factory and declarative base.

Only the ``database`` state backend touches SQL; the engine is created on
first use so the memory and Redis backends never need a driver installed.
"""

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from stockalert.config import settings


class Base(DeclarativeBase):
    pass


def create_state_engine(url: str | None = None, echo: bool | None = None) -> AsyncEngine:
    url = url or settings.database_url
    kwargs = {"echo": settings.debug if echo is None else echo}
    # SQLite (tests, single-node installs) doesn't take pool sizing
    if not url.startswith("sqlite"):
        kwargs.update(pool_size=5, max_overflow=5)
    return create_async_engine(url, **kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
