"""
Auth request stages.

    AuthInitializeMiddleware — puts the authenticator on the request
    AuthSessionMiddleware    — restores the logged-in user from the session

Both read ``scope["state"]["session"]``, so they must follow the session
stage. A session pointing at a user that no longer exists is cleaned up
and the request continues anonymously.
"""

from __future__ import annotations

import logging

from starlette.types import ASGIApp, Receive, Scope, Send

from backend.birdnest.auth.authenticator import SESSION_KEY, Authenticator
from backend.birdnest.core.middleware import reject_request

logger = logging.getLogger(__name__)


def _require_session(scope: Scope) -> dict:
    state = scope.setdefault("state", {})
    if "session" not in state:
        raise RuntimeError("Auth stages require the session stage to run first")
    return state


class AuthInitializeMiddleware:

    def __init__(self, app: ASGIApp, authenticator: Authenticator):
        self.app = app
        self.authenticator = authenticator

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "http":
            state = _require_session(scope)
            state["auth"] = self.authenticator
            state["user"] = None
        await self.app(scope, receive, send)


class AuthSessionMiddleware:

    def __init__(self, app: ASGIApp, authenticator: Authenticator):
        self.app = app
        self.authenticator = authenticator

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        state = _require_session(scope)
        if "auth" not in state:
            raise RuntimeError("Auth session stage requires auth initialisation first")

        session = state["session"]
        identity = session.get(SESSION_KEY) or {}
        if identity.get("user") is not None:
            try:
                user = await self.authenticator.deserialize(identity["user"])
            except Exception as exc:
                logger.error("Could not restore user %s: %s", identity["user"], exc)
                await reject_request(scope, receive, send, exc)
                return
            if user is None:
                logger.info("Session user %s no longer exists", identity["user"])
                session.pop(SESSION_KEY, None)
            state["user"] = user

        await self.app(scope, receive, send)
