"""Async database engine for the chat store.

Kept free of feature imports; table metadata is handed in by the caller.
"""
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy import MetaData, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)


class DatabaseResource:
    """Engine and sessionmaker owned by the DI container.

    ``init`` is awaited from the app lifespan, ``shutdown`` disposes the pool.
    """

    def __init__(self, database_url: str, pool_recycle: int = 3600):
        self.database_url = database_url
        self.pool_recycle = pool_recycle
        self.engine: Optional[AsyncEngine] = None
        self.sessionmaker: Optional[async_sessionmaker[AsyncSession]] = None

    async def init(self) -> "DatabaseResource":
        self.engine = create_async_engine(
            self.database_url,
            pool_pre_ping=True,
            pool_recycle=self.pool_recycle,
        )
        self.sessionmaker = async_sessionmaker(self.engine, expire_on_commit=False)
        return self

    @property
    def is_initialized(self) -> bool:
        return self.sessionmaker is not None

    def _require_engine(self) -> AsyncEngine:
        if self.engine is None:
            raise RuntimeError("Database not initialized. Call init() first.")
        return self.engine

    @asynccontextmanager
    async def session_scope(self, write: bool = False) -> AsyncIterator[AsyncSession]:
        """Yield a short-lived session; ``write`` wraps it in a transaction."""
        self._require_engine()
        async with self.sessionmaker() as session:
            if write:
                async with session.begin():
                    yield session
            else:
                yield session

    async def ping(self) -> bool:
        async with self._require_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True

    async def create_schema(self, metadata: MetaData) -> None:
        """Create tables missing from the database; existing ones are left alone."""
        async with self._require_engine().begin() as conn:
            await conn.run_sync(metadata.create_all)

    async def shutdown(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()
        self.engine = None
        self.sessionmaker = None
