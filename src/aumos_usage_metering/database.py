"""Declarative base, tenant mixin, and async session management."""

import uuid
from collections.abc import AsyncGenerator
from datetime import datetime, timezone

from sqlalchemy import DateTime, String, Uuid
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Declarative base shared by every met_ table."""


class TenantModel(Base):
    """Abstract base supplying id, tenant_id, created_at, and updated_at."""

    __abstract__ = True

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utc_now, onupdate=_utc_now
    )


def init_database(database_url: str, echo: bool = False, **engine_kwargs: object) -> async_sessionmaker[AsyncSession]:
    """Create the process-wide async engine and session factory.

    Args:
        database_url: SQLAlchemy async URL.
        echo: Log emitted SQL.
        **engine_kwargs: Extra arguments for create_async_engine.

    Returns:
        The session factory bound to the new engine.
    """
    global _engine, _session_factory
    _engine = create_async_engine(database_url, echo=echo, **engine_kwargs)
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
    return _session_factory


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the session factory created by init_database()."""
    if _session_factory is None:
        raise RuntimeError("init_database() was not called")
    return _session_factory


async def dispose_database() -> None:
    """Dispose the engine on shutdown."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding a session per request.

    Services own their commit boundaries; anything left uncommitted when
    the request ends is rolled back.
    """
    async with get_session_factory()() as session:
        yield session
