"""
Database Session Management - Async SQLAlchemy engine and session factory.

The Database object is created at startup, handed to request handlers and
batch jobs, and disposed on shutdown. There is no module-level engine.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import Request
from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from chatcredits.config import Settings


class Database:
    """Owns one async engine and its session factory."""

    def __init__(self, settings: Settings, engine: AsyncEngine | None = None) -> None:
        self.engine = engine or create_async_engine(
            settings.database_url,
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_timeout=settings.database_pool_timeout,
            pool_recycle=settings.database_pool_recycle,
            echo=settings.log_level == "DEBUG",
        )
        self.session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """
        Get an async database session.

        Usage:
            async with db.session() as session:
                await session.execute(...)
                await session.commit()
        """
        async with self.session_factory() as session:
            try:
                yield session
            finally:
                await session.close()

    async def ping(self) -> bool:
        """Check database connectivity."""
        async with self.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True

    async def dispose(self) -> None:
        """Close all pooled connections (for graceful shutdown)."""
        await self.engine.dispose()


def get_database(request: Request) -> Database:
    """FastAPI dependency returning the Database created in the app lifespan."""
    return request.app.state.database


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency for a request-scoped database session.

    Usage:
        @app.post("/endpoint")
        async def endpoint(db: AsyncSession = Depends(get_db)):
            ...
    """
    database: Database = request.app.state.database
    async with database.session() as session:
        yield session
