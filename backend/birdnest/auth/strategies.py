"""
Credential strategies and password hashing.

bcrypt work runs in the threadpool so hashing never stalls the event loop.
"""

from __future__ import annotations

from typing import Any, Dict

import bcrypt
from fastapi import Request
from sqlalchemy import select
from starlette.concurrency import run_in_threadpool

from backend.birdnest.auth.authenticator import AuthResult, Strategy
from backend.birdnest.core.database import Database
from backend.birdnest.models import User


async def hash_password(password: str, rounds: int = 12) -> str:
    hashed = await run_in_threadpool(
        bcrypt.hashpw, password.encode("utf-8"), bcrypt.gensalt(rounds=rounds),
    )
    return hashed.decode("utf-8")


async def verify_password(password: str, hashed: str) -> bool:
    return await run_in_threadpool(
        bcrypt.checkpw, password.encode("utf-8"), hashed.encode("utf-8"),
    )


class LocalStrategy(Strategy):
    """Email + password against locally registered users."""

    name = "local"

    def __init__(self, database: Database):
        self.database = database

    async def verify(self, request: Request, credentials: Dict[str, Any]) -> AuthResult:
        email = str(credentials.get("email") or "")
        password = str(credentials.get("password") or "")
        if not email or not password:
            return AuthResult(message="Missing credentials")

        async with self.database.session() as db:
            result = await db.execute(
                select(User).where(User.email == email, User.provider == "local")
            )
            user = result.scalar_one_or_none()

        if user is None:
            return AuthResult(message="Not a registered user")
        if not user.password or not await verify_password(password, user.password):
            return AuthResult(message="Password does not match")
        return AuthResult(user=user)
