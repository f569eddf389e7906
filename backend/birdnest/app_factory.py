"""
Application factory — builds the ASGI app from explicit collaborators.

Everything shared across requests (settings, cache handle, database,
session store, authenticator, templates) is constructed here or passed
in, then published on ``app.state``. Tests hand in fakes; production uses
the defaults derived from settings.
"""

from __future__ import annotations

from typing import Optional, Sequence, Tuple

from fastapi import APIRouter, FastAPI

from backend.birdnest.auth.authenticator import Authenticator
from backend.birdnest.auth.setup import configure_auth
from backend.birdnest.core.cache import CacheClient
from backend.birdnest.core.config import Settings, get_settings
from backend.birdnest.core.database import Database
from backend.birdnest.core.errors import register_error_handlers
from backend.birdnest.core.lifecycle import lifespan
from backend.birdnest.core.pipeline import build_middleware_chain
from backend.birdnest.core.sessions import SessionStore, build_session_store
from backend.birdnest.core.templating import create_templates
from backend.birdnest.routes import auth, page, post, user

# Prefix, router. "" is the site root.
ROUTE_GROUPS: Sequence[Tuple[str, APIRouter]] = (
    ("", page.router),
    ("/auth", auth.router),
    ("/post", post.router),
    ("/user", user.router),
)


def create_app(
    settings: Optional[Settings] = None,
    *,
    cache: Optional[CacheClient] = None,
    database: Optional[Database] = None,
    session_store: Optional[SessionStore] = None,
    authenticator: Optional[Authenticator] = None,
) -> FastAPI:
    # Injected handles are used as given; an empty store is still a store
    if settings is None:
        settings = get_settings()
    if cache is None:
        cache = CacheClient.from_settings(settings)
    if database is None:
        database = Database.from_settings(settings)
    if session_store is None:
        session_store = build_session_store(settings, cache)
    if authenticator is None:
        authenticator = configure_auth(database)

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
        lifespan=lifespan,
        middleware=build_middleware_chain(
            settings,
            session_store=session_store,
            authenticator=authenticator,
        ),
    )

    app.state.settings = settings
    app.state.cache = cache
    app.state.database = database
    app.state.session_store = session_store
    app.state.authenticator = authenticator
    app.state.templates = create_templates(settings)

    register_error_handlers(app)

    for prefix, router in ROUTE_GROUPS:
        app.include_router(router, prefix=prefix)
    answer_head_with_get(app)

    return app


def answer_head_with_get(app: FastAPI) -> None:
    """Let every GET route serve HEAD too; FastAPI routes only match what they declare."""
    for route in app.router.routes:
        methods = getattr(route, "methods", None)
        if methods and "GET" in methods:
            methods.add("HEAD")
