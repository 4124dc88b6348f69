"""
Async SQLAlchemy session management

The API initializes the manager during startup; the Celery worker and
standalone scripts fall back to lazy initialization from DATABASE_URL.
"""
import asyncio
import os
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)


def _to_async_url(database_url: str) -> str:
    """Swap the sync postgres driver prefix for asyncpg"""
    if database_url.startswith("postgresql://"):
        return database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return database_url


class DatabaseSessionManager:
    """Own the async engine and hand out transactional sessions"""

    def __init__(self):
        self._engine = None
        self._sessionmaker = None
        self._init_lock = asyncio.Lock()

    @property
    def initialized(self) -> bool:
        return self._sessionmaker is not None

    async def init(self, database_url: str, **engine_kwargs):
        """Create the engine and session factory (idempotent)"""
        if self.initialized:
            return

        async with self._init_lock:
            if self.initialized:
                return

            database_url = _to_async_url(database_url)

            default_kwargs = {"echo": False, "pool_pre_ping": True}
            if database_url.startswith("postgresql"):
                default_kwargs.update({
                    "pool_size": 10,
                    "max_overflow": 10,
                    "pool_recycle": 3600,
                })
            default_kwargs.update(engine_kwargs)

            self._engine = create_async_engine(database_url, **default_kwargs)
            self._sessionmaker = async_sessionmaker(
                bind=self._engine,
                class_=AsyncSession,
                expire_on_commit=False,
                autoflush=False,
            )

    async def close(self):
        """Dispose of pooled connections"""
        if self._engine is None:
            return
        await self._engine.dispose()
        self._engine = None
        self._sessionmaker = None

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Session that commits on success and rolls back on error"""
        if not self.initialized:
            await _ensure_initialized()

        async with self._sessionmaker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise


# Global session manager instance
sessionmanager = DatabaseSessionManager()


async def _ensure_initialized():
    """
    Lazily initialize from DATABASE_URL.

    Disabled with DB_LAZY_INIT=0 for deployments that must call init() explicitly.
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
        raise RuntimeError(
            "DATABASE_URL environment variable not set for lazy database initialization"
        )

    echo = os.getenv("SQL_ECHO", "0") in {"1", "true", "True"}
    await sessionmanager.init(database_url, echo=echo)


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding a transactional session"""
    async with sessionmanager.session() as session:
        yield session
