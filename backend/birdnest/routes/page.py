"""
Page routes (mounted at /): timeline, profile, join form, hashtag search.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import RedirectResponse
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from backend.birdnest.auth.guards import require_anonymous, require_login
from backend.birdnest.core.database import get_db
from backend.birdnest.core.templating import render
from backend.birdnest.models import Hashtag, Post

router = APIRouter(tags=["pages"])


@router.get("/profile", dependencies=[Depends(require_login)])
async def profile(request: Request):
    return render(request, "profile.html", {"title": "My profile - Birdnest"})


@router.get("/join", dependencies=[Depends(require_anonymous)])
async def join(request: Request, error: str = ""):
    return render(request, "join.html", {"title": "Join - Birdnest", "join_error": error})


@router.get("/")
async def timeline(
    request: Request,
    login_error: str = Query(default="", alias="loginError"),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(Post)
        .options(selectinload(Post.user))
        .order_by(Post.created_at.desc(), Post.id.desc())
    )
    return render(request, "main.html", {
        "title": "Birdnest",
        "twits": result.scalars().all(),
        "login_error": login_error,
    })


@router.get("/hashtag")
async def hashtag(
    request: Request,
    hashtag: str = Query(default=""),
    db: AsyncSession = Depends(get_db),
):
    if not hashtag:
        return RedirectResponse("/", status_code=303)

    result = await db.execute(
        select(Post)
        .join(Post.hashtags)
        .where(Hashtag.title == hashtag.lower())
        .options(selectinload(Post.user))
        .order_by(Post.created_at.desc(), Post.id.desc())
    )
    return render(request, "main.html", {
        "title": f"#{hashtag} - Birdnest",
        "twits": result.scalars().all(),
    })
