"""Async SQLAlchemy engine and session factory for the sync engine tables.

Provides:
- SyncBase: Declarative base for all engine tables (crm_* and the host contacts table)
- get_engine(): Lazily-created async engine singleton
- get_session(): Async generator yielding an AsyncSession (session_factory pattern)
- Connection checkout event that applies the configured lock_timeout so no
  transaction waits on a row lock indefinitely
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from src.crm_sync.config import get_settings

# ── Module-level engine (lazy init) ────────────────────────────────────────

_engine: AsyncEngine | None = None


def get_engine() -> AsyncEngine:
    """Get or create the async engine singleton."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_async_engine(
            settings.DATABASE_URL,
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=10,
            echo=False,
        )
        lock_timeout_ms = settings.DB_LOCK_TIMEOUT_MS

        @event.listens_for(_engine.sync_engine, "checkout")
        def apply_lock_timeout(dbapi_conn: Any, connection_record: Any, connection_proxy: Any) -> None:
            cursor = dbapi_conn.cursor()
            cursor.execute(f"SET lock_timeout = {int(lock_timeout_ms)}")
            cursor.close()

    return _engine


# ── Declarative Base ────────────────────────────────────────────────────────


class SyncBase(DeclarativeBase):
    """Base class for engine models.

    Tenant isolation is enforced by the host database (RLS); every table
    still carries tenant_id or hangs off a tenant-scoped connection row.
    """


# ── Session Factory ─────────────────────────────────────────────────────────


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an AsyncSession bound to the engine."""
    engine = get_engine()
    async with AsyncSession(engine, expire_on_commit=False) as session:
        yield session


# ── Database Initialization ─────────────────────────────────────────────────


async def init_db() -> None:
    """Create engine tables if they don't exist (dev convenience; prod uses alembic)."""
    # Import models so they register on SyncBase.metadata
    from src.crm_sync import models  # noqa: F401

    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(SyncBase.metadata.create_all)


async def close_db() -> None:
    """Dispose of the engine and close all connections."""
    global _engine
    if _engine:
        await _engine.dispose()
        _engine = None
