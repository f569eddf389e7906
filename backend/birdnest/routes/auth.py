"""
Credential routes (mounted at /auth): join, login, logout.
"""

from __future__ import annotations

from urllib.parse import quote

from fastapi import APIRouter, Depends, Request
from fastapi.responses import RedirectResponse
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.birdnest.auth.guards import require_anonymous, require_login
from backend.birdnest.auth.strategies import hash_password
from backend.birdnest.core.database import get_db
from backend.birdnest.core.errors import BadRequestError
from backend.birdnest.models import User

router = APIRouter(tags=["auth"])


@router.post("/join", dependencies=[Depends(require_anonymous)])
async def join(request: Request, db: AsyncSession = Depends(get_db)):
    body = request.state.body
    email = str(body.get("email") or "").strip()
    nick = str(body.get("nick") or "").strip()
    password = str(body.get("password") or "")
    if not email or not nick or not password:
        raise BadRequestError("email, nick and password are required")

    existing = await db.execute(select(User).where(User.email == email))
    if existing.scalar_one_or_none() is not None:
        return RedirectResponse("/join?error=exist", status_code=303)

    rounds = request.app.state.settings.BCRYPT_ROUNDS
    db.add(User(email=email, nick=nick, password=await hash_password(password, rounds)))
    await db.commit()
    return RedirectResponse("/", status_code=303)


@router.post("/login", dependencies=[Depends(require_anonymous)])
async def login(request: Request):
    authenticator = request.state.auth
    result = await authenticator.authenticate("local", request)
    if not result.ok:
        return RedirectResponse(f"/?loginError={quote(result.message or '')}", status_code=303)
    await authenticator.login(request, result.user)
    return RedirectResponse("/", status_code=303)


@router.get("/logout", dependencies=[Depends(require_login)])
async def logout(request: Request):
    await request.state.auth.logout(request)
    request.state.session.destroy()
    return RedirectResponse("/", status_code=303)
