"""
Jinja2 view rendering.

Every view receives the current identity (``user``) plus follow counts
through a context processor, so route handlers only pass what is specific
to their page. Templates reload on change outside production.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, Optional

from fastapi import Request
from fastapi.templating import Jinja2Templates
from starlette.responses import Response

if TYPE_CHECKING:
    from backend.birdnest.core.config import Settings


def _loaded(obj: Any, attribute: str) -> list:
    # Only relationships already loaded; touching an unloaded one would do IO
    if obj is None:
        return []
    return list(vars(obj).get(attribute) or [])


def view_context(request: Request) -> Dict[str, Any]:
    user = getattr(request.state, "user", None)
    followers = _loaded(user, "followers")
    followings = _loaded(user, "followings")
    return {
        "user": user,
        "follower_count": len(followers),
        "following_count": len(followings),
        "following_ids": [u.id for u in followings],
    }


def create_templates(settings: Settings) -> Jinja2Templates:
    templates = Jinja2Templates(
        directory=str(settings.VIEWS_DIR),
        context_processors=[view_context],
    )
    templates.env.auto_reload = settings.is_development
    return templates


def render(
    request: Request,
    name: str,
    context: Optional[Dict[str, Any]] = None,
    *,
    status_code: int = 200,
) -> Response:
    templates: Jinja2Templates = request.app.state.templates
    return templates.TemplateResponse(
        request, name, context or {}, status_code=status_code,
    )
