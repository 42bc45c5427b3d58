"""
Database session management for SQLAlchemy with async support

Supports the FastAPI app (explicit init in lifespan), Celery tasks and
standalone scripts (lazy init from DATABASE_URL).
"""
import asyncio
import os
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)


def to_async_url(database_url: str) -> str:
    """Convert postgresql:// to postgresql+asyncpg://"""
    if database_url.startswith("postgresql://"):
        return database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return database_url


class DatabaseSessionManager:
    """Manage database connections and sessions"""

    def __init__(self):
        self._engine: Optional[AsyncEngine] = None
        self._sessionmaker = None
        self._init_lock = asyncio.Lock()

    @property
    def initialized(self) -> bool:
        """Check if session manager is initialized"""
        return self._sessionmaker is not None

    async def init(self, database_url: str, **engine_kwargs):
        """Initialize database engine and session maker"""
        if self.initialized:
            return

        async with self._init_lock:  # Double-checked locking
            if self.initialized:
                return

            default_kwargs = {
                "echo": False,
                "pool_size": 10,
                "max_overflow": 10,
                "pool_pre_ping": True,
                "pool_recycle": 3600,
            }
            default_kwargs.update(engine_kwargs)

            self._engine = create_async_engine(to_async_url(database_url), **default_kwargs)

            self._sessionmaker = async_sessionmaker(
                bind=self._engine,
                class_=AsyncSession,
                expire_on_commit=False,
                autoflush=False,
            )

    async def close(self):
        """Close database connections"""
        if self._engine is None:
            return
        await self._engine.dispose()
        self._engine = None
        self._sessionmaker = None

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Context manager for database sessions"""
        if not self.initialized:
            raise RuntimeError("DatabaseSessionManager not initialized")

        async with self._sessionmaker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise


# Global session manager instance
sessionmanager = DatabaseSessionManager()


# ---- Lazy auto-init for standalone scripts ----------------------------------------------

async def _ensure_initialized():
    """
    Ensure database session manager is initialized.

    Lets scripts and worker tasks run without an explicit init() call by
    reading DATABASE_URL (or the DB_* settings) from the environment.
    Disable in production with DB_LAZY_INIT=0.
    """
    if sessionmanager.initialized:
        return

    if os.getenv("DB_LAZY_INIT", "1") not in {"1", "true", "True"}:
        raise RuntimeError(
            "Database lazy init disabled and session manager not initialized. "
            "Call sessionmanager.init(DATABASE_URL) explicitly in startup."
        )

    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        from packages.common.config import get_settings
        database_url = get_settings().database_url

    echo = os.getenv("SQL_ECHO", "0") in {"1", "true", "True"}
    await sessionmanager.init(database_url, echo=echo)


# Dependency for FastAPI and standalone scripts
async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Get database session (works in FastAPI and standalone scripts).

    In FastAPI: Expects sessionmanager.init() called during startup.
    In scripts: Auto-initializes if not already initialized.
    """
    await _ensure_initialized()
    async with sessionmanager.session() as session:
        yield session
