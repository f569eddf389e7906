"""Route guards, used as FastAPI dependencies."""

from __future__ import annotations

from typing import Any

from fastapi import Request

from backend.birdnest.core.errors import ForbiddenError


async def require_login(request: Request) -> Any:
    user = getattr(request.state, "user", None)
    if user is None:
        raise ForbiddenError("Login required")
    return user


async def require_anonymous(request: Request) -> None:
    if getattr(request.state, "user", None) is not None:
        raise ForbiddenError("Already logged in")
