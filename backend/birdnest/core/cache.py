"""
Redis cache layer — one shared async Redis connection per process.

Provides:
    • Explicit connect / close lifecycle (no lazy global client)
    • JSON serialisation helpers with TTL
    • TTL refresh for session records

The handle is constructed by the app factory and passed to whoever needs
it (the redis session store), so tests can hand in a fake client.

Usage:
    cache = CacheClient.from_settings(settings)
    await cache.connect()
    await cache.set_json("sess:abc", {"views": 1}, ttl=600)
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from backend.birdnest.core.config import Settings
from backend.birdnest.core.errors import CacheConnectionError

logger = logging.getLogger(__name__)


class CacheClient:
    """Thin owner of a ``redis.asyncio.Redis`` handle."""

    def __init__(self, client: aioredis.Redis, *, url: str = ""):
        self._client = client
        self.url = url
        self.connected = False

    @classmethod
    def from_settings(cls, settings: Settings) -> "CacheClient":
        password = settings.REDIS_PASSWORD.get_secret_value() if settings.REDIS_PASSWORD else None
        client = aioredis.Redis(
            host=settings.REDIS_HOST,
            port=settings.REDIS_PORT,
            password=password,
            encoding="utf-8",
            decode_responses=True,
        )
        return cls(client, url=settings.redis_url)

    @property
    def client(self) -> aioredis.Redis:
        return self._client

    async def connect(self) -> None:
        """Open the connection and verify it with PING."""
        try:
            await self._client.ping()
        except (RedisError, OSError) as e:
            logger.error("Redis connect failed: %s (%s)", self.url, e)
            raise CacheConnectionError(self.url, str(e)) from e
        self.connected = True
        logger.info("Redis connected: %s", self.url)

    async def get_json(self, key: str) -> Optional[Any]:
        """Get a JSON value by key. Returns None on miss."""
        raw = await self._client.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    async def set_json(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        """Set a JSON value with optional TTL (seconds)."""
        serialised = json.dumps(value, default=str)
        await self._client.set(key, serialised, ex=ttl)

    async def delete(self, key: str) -> None:
        await self._client.delete(key)

    async def expire(self, key: str, ttl: int) -> None:
        await self._client.expire(key, ttl)

    async def close(self) -> None:
        """Close Redis connection."""
        if self.connected:
            await self._client.aclose()
            self.connected = False
            logger.info("Redis connection closed")
