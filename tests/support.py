"""
Test helpers: settings pointing at a throwaway sqlite database, a fake
Redis handle, and shortcuts for the join / login forms.
"""

from __future__ import annotations

import asyncio
import re
from pathlib import Path
from typing import Any, Awaitable, Callable
from unittest.mock import AsyncMock

from fastapi.testclient import TestClient
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.ext.asyncio import AsyncSession

from backend.birdnest.core.cache import CacheClient
from backend.birdnest.core.config import Settings
from backend.birdnest.core.database import Database

SECRET = "test-cookie-secret"


def make_settings(tmp_path: Path, **overrides: Any) -> Settings:
    values: dict = {
        "COOKIE_SECRET": SECRET,
        "NODE_ENV": "development",
        "DATABASE_URL": f"sqlite+aiosqlite:///{tmp_path / 'birdnest.db'}",
        "UPLOAD_DIR": tmp_path / "uploads",
        "BCRYPT_ROUNDS": 4,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def fake_cache(fail: bool = False) -> CacheClient:
    client = AsyncMock()
    if fail:
        client.ping.side_effect = RedisConnectionError("Connection refused")
    return CacheClient(client, url="redis://fake:6379")


def join(client: TestClient, email: str, nick: str, password: str = "hunter22"):
    return client.post(
        "/auth/join",
        data={"email": email, "nick": nick, "password": password},
        follow_redirects=False,
    )


def login(client: TestClient, email: str, password: str = "hunter22"):
    return client.post(
        "/auth/login",
        data={"email": email, "password": password},
        follow_redirects=False,
    )


def session_cookie(response, name: str = "birdnest.sid") -> str:
    """The Set-Cookie header for the session cookie, or ''."""
    for header in response.headers.get_list("set-cookie"):
        if header.startswith(f"{name}="):
            return header
    return ""


def cookie_value(header: str, name: str = "birdnest.sid") -> str:
    match = re.match(rf"{re.escape(name)}=([^;]*)", header)
    return match.group(1) if match else ""


def query_db(settings: Settings, work: Callable[[AsyncSession], Awaitable[Any]]) -> Any:
    """Run ``work`` against the app's database on a private engine."""

    async def scenario():
        database = Database(settings.DATABASE_URL)
        try:
            async with database.session() as db:
                return await work(db)
        finally:
            await database.dispose()

    return asyncio.run(scenario())
