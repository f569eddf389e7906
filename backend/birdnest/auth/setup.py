"""Authenticator wiring: identity hooks and the enabled strategies."""

from __future__ import annotations

from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import selectinload

from backend.birdnest.auth.authenticator import Authenticator
from backend.birdnest.auth.strategies import LocalStrategy
from backend.birdnest.core.database import Database
from backend.birdnest.models import User


def configure_auth(database: Database) -> Authenticator:
    authenticator = Authenticator()

    @authenticator.serializer
    async def serialize_user(user: User) -> int:
        return user.id

    @authenticator.deserializer
    async def deserialize_user(user_id: int) -> Optional[User]:
        async with database.session() as db:
            result = await db.execute(
                select(User)
                .where(User.id == int(user_id))
                .options(selectinload(User.followers), selectinload(User.followings))
            )
            return result.scalar_one_or_none()

    authenticator.use(LocalStrategy(database))
    return authenticator
