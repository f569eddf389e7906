"""
Application lifespan — startup gating and shutdown.

The lifespan completes before uvicorn binds its socket, so nothing is
served until the startup policy below has been satisfied:

    • cache connect and schema sync run concurrently
    • schema sync failure  → fatal (SchemaSyncError)
    • cache failure        → fatal when sessions live in redis,
                             otherwise a warning; sessions stay in memory
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from backend.birdnest.core.cache import CacheClient
from backend.birdnest.core.config import Settings
from backend.birdnest.core.database import Database
from backend.birdnest.core.errors import CacheConnectionError, SchemaSyncError

logger = logging.getLogger(__name__)


async def _sync_schema(database: Database) -> None:
    try:
        await database.sync_schema(force=False)
    except Exception as e:
        logger.error("Database connection failed: %s", e)
        raise SchemaSyncError(str(e)) from e
    logger.info("Database connected")


async def start_dependencies(settings: Settings, cache: CacheClient, database: Database) -> None:
    """Connect the cache and sync the schema, applying the failure policy."""
    cache_result, schema_result = await asyncio.gather(
        cache.connect(),
        _sync_schema(database),
        return_exceptions=True,
    )

    if isinstance(schema_result, BaseException):
        raise schema_result

    if isinstance(cache_result, BaseException):
        if not isinstance(cache_result, CacheConnectionError):
            cache_result = CacheConnectionError(cache.url, str(cache_result))
        if settings.SESSION_STORE == "redis":
            raise cache_result
        logger.warning("%s; continuing with in-memory sessions", cache_result)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage startup and shutdown events."""
    settings: Settings = app.state.settings
    logger.info(
        "Starting %s v%s [%s]",
        settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT.value,
    )

    await start_dependencies(settings, app.state.cache, app.state.database)
    settings.UPLOAD_DIR.mkdir(parents=True, exist_ok=True)
    logger.info("Ready; listening on port %d", settings.PORT)

    yield

    await app.state.cache.close()
    await app.state.database.dispose()
    logger.info("Shutting down %s", settings.APP_NAME)
