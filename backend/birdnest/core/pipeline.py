"""
Middleware chain — the ordered list of request stages.

Order is load-bearing: each stage relies on what the earlier ones put in
``scope["state"]``. The list is outermost first, as Starlette expects.

    1. access_log           — morgan "combined" in production, "dev" otherwise
    2. security_headers     — deny-by-default headers, CSP not emitted
    3. parameter_pollution  — one value per query / form key
    4. static_assets        — /  → PUBLIC_DIR, /img → UPLOAD_DIR
    5. body_parser          — JSON + flat urlencoded bodies
    6. cookie_parser        — signed cookies verified with COOKIE_SECRET
    7. session              — server-side session from the signed cookie
    8. auth_initialize      — authenticator on the request
    9. auth_session         — logged-in user restored from the session
   10. error_terminal       — renders exceptions escaping the routers
"""

from __future__ import annotations

from typing import List, Tuple

from starlette.middleware import Middleware

from backend.birdnest.auth.authenticator import Authenticator
from backend.birdnest.auth.middleware import AuthInitializeMiddleware, AuthSessionMiddleware
from backend.birdnest.core.config import Settings
from backend.birdnest.core.middleware import (
    AccessLogMiddleware,
    BodyParserMiddleware,
    CookieParserMiddleware,
    ErrorTerminalMiddleware,
    ParameterPollutionMiddleware,
    SecurityHeadersMiddleware,
    StaticAssetsMiddleware,
)
from backend.birdnest.core.sessions import ServerSessionMiddleware, SessionStore

STAGES: Tuple[str, ...] = (
    "access_log",
    "security_headers",
    "parameter_pollution",
    "static_assets",
    "body_parser",
    "cookie_parser",
    "session",
    "auth_initialize",
    "auth_session",
    "error_terminal",
)


def build_middleware_chain(
    settings: Settings,
    *,
    session_store: SessionStore,
    authenticator: Authenticator,
) -> List[Middleware]:
    secret = settings.COOKIE_SECRET.get_secret_value()
    return [
        Middleware(
            AccessLogMiddleware,
            fmt="combined" if settings.is_production else "dev",
        ),
        Middleware(SecurityHeadersMiddleware, content_security_policy=False),
        Middleware(ParameterPollutionMiddleware),
        Middleware(
            StaticAssetsMiddleware,
            mounts=[("/", settings.PUBLIC_DIR), ("/img", settings.UPLOAD_DIR)],
        ),
        Middleware(BodyParserMiddleware, limit=settings.BODY_LIMIT),
        Middleware(CookieParserMiddleware, secret=secret),
        Middleware(
            ServerSessionMiddleware,
            store=session_store,
            secret=secret,
            cookie_name=settings.SESSION_COOKIE_NAME,
            ttl=settings.SESSION_TTL,
            secure=settings.cookie_secure,
            trust_proxy=settings.trust_proxy,
        ),
        Middleware(AuthInitializeMiddleware, authenticator=authenticator),
        Middleware(AuthSessionMiddleware, authenticator=authenticator),
        Middleware(ErrorTerminalMiddleware),
    ]
