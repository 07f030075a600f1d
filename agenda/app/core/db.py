"""Async SQLAlchemy database helpers.

Single authoritative module providing:
    * make_engine / make_session_factory (explicit construction for DI)
    * get_engine / get_session_factory (process defaults)
    * init_db(force=..., engine=...)
    * _reset_engine_for_tests (used in test isolation)
"""

from __future__ import annotations

import os

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from ..domain.models import Base


DATABASE_URL_ENV = "DATABASE_URL"
DEFAULT_URL = "postgresql+asyncpg://agenda:change_me@db:5432/agenda"

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _make_engine(url: str) -> AsyncEngine:
    """Create an async engine."""
    return create_async_engine(url, echo=False, pool_pre_ping=url.startswith("postgresql"))


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


def get_engine() -> AsyncEngine:
    global _engine, _session_factory
    if _engine is None:
        url = os.getenv(DATABASE_URL_ENV, DEFAULT_URL)
        _engine = _make_engine(url)
        _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    get_engine()
    assert _session_factory is not None
    return _session_factory


async def init_db(force: bool = False, engine: AsyncEngine | None = None) -> None:
    """Create the schema straight from metadata (dev / tests; production uses alembic)."""
    eng = engine or get_engine()
    async with eng.begin() as conn:
        if force:
            await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)


def _reset_engine_for_tests() -> None:
    """Reset engine references (fast, synchronous)."""
    global _engine, _session_factory
    _engine = None
    _session_factory = None


__all__ = [
    "make_session_factory",
    "get_engine",
    "get_session_factory",
    "init_db",
    "_reset_engine_for_tests",
]
