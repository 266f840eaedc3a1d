"""Async engine for the conversation store.

SQLite URLs (tests, single-user installs) get SQLAlchemy's default pool;
PostgreSQL gets a sized pool from settings.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from tether.config import Settings
from tether.storage.models import Base


class Database:
    def __init__(self, settings: Settings) -> None:
        pool: dict[str, int] = {}
        if not settings.database_url.startswith("sqlite"):
            pool = {"pool_size": settings.db_pool_size, "max_overflow": settings.db_max_overflow}
        self.url = settings.database_url
        self.engine = create_async_engine(self.url, echo=settings.log_level == "debug", **pool)
        self.session_factory = async_sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)

    async def connect(self) -> None:
        """Open the pool and create the conversation tables if missing."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def disconnect(self) -> None:
        await self.engine.dispose()

    async def ping(self) -> None:
        """Round-trip a trivial query; raises on connectivity failure."""
        async with self.session() as session:
            await session.execute(text("SELECT 1"))

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with self.session_factory() as session:
            yield session

    async def __aenter__(self) -> "Database":
        await self.connect()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.disconnect()
