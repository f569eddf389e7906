"""
User routes (mounted at /user): follow another user.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from backend.birdnest.auth.guards import require_login
from backend.birdnest.core.database import get_db
from backend.birdnest.core.errors import BadRequestError, NotFoundError
from backend.birdnest.models import User

router = APIRouter(tags=["users"])


@router.post("/{user_id}/follow", dependencies=[Depends(require_login)])
async def follow(user_id: int, request: Request, db: AsyncSession = Depends(get_db)):
    me_id = request.state.user.id
    if user_id == me_id:
        raise BadRequestError("You cannot follow yourself")

    result = await db.execute(
        select(User).where(User.id == me_id).options(selectinload(User.followings))
    )
    me = result.scalar_one_or_none()
    target = await db.get(User, user_id)
    if me is None or target is None:
        raise NotFoundError("User", id=user_id)

    if all(u.id != target.id for u in me.followings):
        me.followings.append(target)
    await db.commit()
    return PlainTextResponse("success")
