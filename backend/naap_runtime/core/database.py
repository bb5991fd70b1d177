"""
NaaP Runtime - Database Connection
==================================

Async engine, the shared session factory, and transactional session
scopes for request handlers and background components.
"""

from collections.abc import AsyncGenerator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Any, Callable

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from naap_runtime.core.config import settings

# Anything that opens a session: AsyncSessionLocal, or a test sessionmaker
SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]


class Base(DeclarativeBase):
    """Declarative base for runtime tables."""


# ==========================================================================
# Engine
# ==========================================================================

def _engine_options() -> dict[str, Any]:
    options: dict[str, Any] = {"echo": settings.DATABASE_ECHO}
    if settings.is_sqlite:
        # aiosqlite runs the connection on a worker thread
        options["connect_args"] = {"check_same_thread": False}
    else:
        options.update(
            pool_size=settings.DATABASE_POOL_SIZE,
            max_overflow=settings.DATABASE_MAX_OVERFLOW,
            pool_pre_ping=True,
        )
    return options


def create_engine() -> AsyncEngine:
    return create_async_engine(str(settings.DATABASE_URL), **_engine_options())


engine = create_engine()

AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


# ==========================================================================
# Session Scopes
# ==========================================================================

@asynccontextmanager
async def get_db_session(
    factory: SessionFactory = AsyncSessionLocal,
) -> AsyncGenerator[AsyncSession, None]:
    """
    Open a session that commits on clean exit and rolls back on error.

    Used directly for startup work, and by get_db for request handlers.
    """
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: one transactional session per request."""
    async with get_db_session() as session:
        yield session


# ==========================================================================
# Lifecycle
# ==========================================================================

async def init_db() -> None:
    """Create any missing tables."""
    from naap_runtime.core import models  # noqa: F401  (registers mappings)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    await engine.dispose()
