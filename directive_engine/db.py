"""Database engine and session utilities for async SQLAlchemy.

This module centralizes engine/session creation so that the stores, the
runner and the operator scripts share a single, lazily initialized async
engine. It also handles common URL quirks (``postgres://`` vs
``postgresql://``) and provides a simple ``asynccontextmanager`` for sessions.

How to use:
- Call ``get_engine()`` once to initialize the engine (optional; ``get_session``
  will also initialize it on first use).
- Use ``get_session()`` as an async context manager for DB work:

    Example:
        >>> from directive_engine.db import get_session
        >>> async with get_session() as session:
        ...     await session.execute(text("SELECT 1"))
        ...     await session.commit()

- Tests call ``configure_engine("sqlite+aiosqlite://")`` and ``init_models()``
  to run against an in-memory database.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from directive_engine.config import Settings


_engine: Any = None
_session_factory: Any = None


def normalize_database_url(db_url: str) -> str:
    """Return ``db_url`` with an async driver prefix.

    Example:
        >>> normalize_database_url("postgres://u:p@h/db")
        'postgresql+asyncpg://u:p@h/db'
        >>> normalize_database_url("sqlite:///./local.db")
        'sqlite+aiosqlite:///./local.db'
    """
    if db_url.startswith("postgresql://"):
        return db_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if db_url.startswith("postgres://"):
        return db_url.replace("postgres://", "postgresql+asyncpg://", 1)
    if db_url.startswith("sqlite://"):
        return db_url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return db_url


def configure_engine(db_url: str | None = None, *, echo: bool | None = None) -> AsyncEngine:
    """Create (or replace) the process-wide engine for ``db_url``.

    In-memory SQLite URLs get a ``StaticPool`` so every session sees the
    same database.
    """
    global _engine, _session_factory
    settings = Settings()
    url = normalize_database_url(db_url or settings.database_url)
    kwargs: dict[str, Any] = {"echo": settings.database_echo if echo is None else echo}
    if url.startswith("sqlite+aiosqlite://"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if url in {"sqlite+aiosqlite://", "sqlite+aiosqlite:///:memory:"}:
            kwargs["poolclass"] = StaticPool
    else:
        kwargs["pool_pre_ping"] = True
    _engine = create_async_engine(url, **kwargs)
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
    return _engine


def get_engine() -> AsyncEngine:
    """Return the process-wide async SQLAlchemy engine, creating it if needed."""
    if _engine is None:
        configure_engine()
    return _engine


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    """Yield an async SQLAlchemy session bound to the shared engine.

    Sessions are created with ``expire_on_commit=False`` so returned ORM rows
    stay readable after commit.
    """
    if _session_factory is None:
        get_engine()
    assert _session_factory is not None
    async with _session_factory() as session:
        yield session


async def init_models() -> None:
    """Create the ``signals`` and ``directives`` tables if they do not exist."""
    from directive_engine.orm_models import Base

    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engine() -> None:
    """Dispose the shared engine (used at shutdown and between tests)."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None
