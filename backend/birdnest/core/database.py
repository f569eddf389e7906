"""
Async SQLAlchemy access for users, posts and hashtags.

The app factory builds one ``Database`` per process and publishes it on
``app.state.database``. Startup calls ``sync_schema`` to create any missing
tables; rows survive restarts unless ``force`` is set. Routes receive a
unit-of-work session through ``get_db``:

    @router.get("/")
    async def timeline(db: AsyncSession = Depends(get_db)):
        posts = (await db.execute(select(Post))).scalars().all()
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, AsyncIterator

from fastapi import Request
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from backend.birdnest.core.config import Settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


class Database:
    """Engine and session factory for one database URL."""

    def __init__(self, url: str, *, echo: bool = False):
        self.url = url
        self.engine = create_async_engine(url, echo=echo, future=True)
        self.session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "Database":
        return cls(settings.DATABASE_URL, echo=settings.DATABASE_ECHO)

    async def sync_schema(self, force: bool = False) -> None:
        """
        Create tables for every declared model.

        With ``force=False`` existing tables and rows are left alone, so the
        call is safe to repeat on every start.
        """
        import backend.birdnest.models  # noqa: F401  registers the tables

        async with self.engine.begin() as conn:
            if force:
                await conn.run_sync(Base.metadata.drop_all)
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database schema synced (force=%s)", force)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Unit of work: commit on success, roll back on error."""
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def dispose(self) -> None:
        """Close pooled connections; called once on shutdown."""
        await self.engine.dispose()
        logger.info("Database pool disposed")


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Per-request session, committed when the handler returns."""
    database: Database = request.app.state.database
    async with database.session() as session:
        yield session
