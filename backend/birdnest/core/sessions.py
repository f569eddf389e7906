"""
Server-side sessions — session records, pluggable stores and the ASGI stage
that attaches a session to every request.

Provides:
    • Session            — dict of request-scoped state with change detection
    • SessionStore       — storage contract: get / set / destroy / touch
    • MemorySessionStore — in-process, lost on restart, single instance only
    • RedisSessionStore  — cache-backed, TTL-governed, shared across instances
    • ServerSessionMiddleware — resolves the signed cookie to a record

Save policy:
    • an untouched new session is never stored and gets no cookie
    • an untouched existing session is not rewritten, only its TTL refreshed
    • a modified session is written before the response headers go out, so
      the next request with the same cookie reads the new state
    • a store that fails on read ends the request in the error view; one that
      fails on write is logged and the response is sent unsaved
"""

from __future__ import annotations

import json
import logging
import secrets
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple

from starlette.datastructures import Headers, MutableHeaders
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from backend.birdnest.core.cache import CacheClient
from backend.birdnest.core.config import Settings
from backend.birdnest.core.cookies import build_cookie, sign_cookie_value
from backend.birdnest.core.middleware import reject_request

logger = logging.getLogger(__name__)


def new_session_id() -> str:
    return secrets.token_urlsafe(24)


def _fingerprint(data: Dict[str, Any]) -> str:
    return json.dumps(data, sort_keys=True, default=str)


# ═══════════════════════════════════════════════════════════════════════════
# Session record
# ═══════════════════════════════════════════════════════════════════════════

class Session(dict):
    """
    Request-scoped session state.

    Modification is detected by comparing a serialised snapshot taken at
    load time, so nested mutations count too.
    """

    def __init__(
        self,
        data: Optional[Dict[str, Any]] = None,
        *,
        session_id: Optional[str] = None,
    ):
        super().__init__(data or {})
        self.session_id = session_id
        self.destroyed = False
        self.regenerated = False
        self._origin = _fingerprint(self)

    @property
    def is_new(self) -> bool:
        return self.session_id is None

    @property
    def is_modified(self) -> bool:
        return _fingerprint(self) != self._origin

    def regenerate(self) -> None:
        """Issue a fresh id on save (call on login to prevent fixation)."""
        self.regenerated = True

    def destroy(self) -> None:
        """Drop all state and remove the record from the store."""
        self.clear()
        self.destroyed = True


# ═══════════════════════════════════════════════════════════════════════════
# Stores
# ═══════════════════════════════════════════════════════════════════════════

class SessionStore(ABC):
    """Storage contract used by ServerSessionMiddleware."""

    @abstractmethod
    async def get(self, session_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def set(self, session_id: str, data: Dict[str, Any], ttl: int) -> None:
        ...

    @abstractmethod
    async def destroy(self, session_id: str) -> None:
        ...

    @abstractmethod
    async def touch(self, session_id: str, ttl: int) -> None:
        ...


class MemorySessionStore(SessionStore):
    """Process-local store. Records are kept as JSON to avoid aliasing."""

    def __init__(self) -> None:
        self._records: Dict[str, Tuple[str, float]] = {}

    def __len__(self) -> int:
        return len(self._records)

    async def get(self, session_id: str) -> Optional[Dict[str, Any]]:
        record = self._records.get(session_id)
        if record is None:
            return None
        raw, expires_at = record
        if expires_at <= time.monotonic():
            del self._records[session_id]
            return None
        return json.loads(raw)

    async def set(self, session_id: str, data: Dict[str, Any], ttl: int) -> None:
        now = time.monotonic()
        self._sweep(now)
        self._records[session_id] = (json.dumps(data, default=str), now + ttl)

    def _sweep(self, now: float) -> None:
        # Expired records go on every write, not only when their id is read
        expired = [sid for sid, (_, expires_at) in self._records.items() if expires_at <= now]
        for sid in expired:
            del self._records[sid]

    async def destroy(self, session_id: str) -> None:
        self._records.pop(session_id, None)

    async def touch(self, session_id: str, ttl: int) -> None:
        record = self._records.get(session_id)
        if record is not None:
            self._records[session_id] = (record[0], time.monotonic() + ttl)


class RedisSessionStore(SessionStore):
    """Cache-backed store; every record carries a TTL."""

    def __init__(self, cache: CacheClient, *, prefix: str = "sess:"):
        self.cache = cache
        self.prefix = prefix

    def _key(self, session_id: str) -> str:
        return f"{self.prefix}{session_id}"

    async def get(self, session_id: str) -> Optional[Dict[str, Any]]:
        return await self.cache.get_json(self._key(session_id))

    async def set(self, session_id: str, data: Dict[str, Any], ttl: int) -> None:
        await self.cache.set_json(self._key(session_id), data, ttl=ttl)

    async def destroy(self, session_id: str) -> None:
        await self.cache.delete(self._key(session_id))

    async def touch(self, session_id: str, ttl: int) -> None:
        await self.cache.expire(self._key(session_id), ttl)


# ═══════════════════════════════════════════════════════════════════════════
# Middleware
# ═══════════════════════════════════════════════════════════════════════════

def is_secure_request(scope: Scope, trust_proxy: bool) -> bool:
    """HTTPS either directly or, behind a trusted proxy, via X-Forwarded-Proto."""
    if scope.get("scheme") == "https":
        return True
    if trust_proxy:
        proto = Headers(scope=scope).get("x-forwarded-proto", "")
        return proto.split(",")[0].strip().lower() == "https"
    return False


class ServerSessionMiddleware:
    """
    Attach ``scope["session"]`` from the signed session cookie.

    Reads the verified cookie set produced by the cookie parsing stage,
    so it must sit after CookieParserMiddleware in the chain.
    """

    def __init__(
        self,
        app: ASGIApp,
        *,
        store: SessionStore,
        secret: str,
        cookie_name: str = "birdnest.sid",
        ttl: int = 86400,
        secure: bool = False,
        trust_proxy: bool = False,
    ):
        self.app = app
        self.store = store
        self.secret = secret
        self.cookie_name = cookie_name
        self.ttl = ttl
        self.secure = secure
        self.trust_proxy = trust_proxy

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        state = scope.setdefault("state", {})
        signed_cookies = state.get("signed_cookies")
        if signed_cookies is None:
            raise RuntimeError("Session stage requires the cookie parsing stage to run first")

        cookie_id = signed_cookies.get(self.cookie_name)
        try:
            session = await self._load(cookie_id)
        except Exception as exc:
            logger.error("Session store read failed: %s", exc)
            await reject_request(scope, receive, send, exc)
            return
        scope["session"] = session
        state["session"] = session

        async def send_wrapper(message: Message) -> None:
            if message["type"] == "http.response.start":
                try:
                    await self._commit(scope, session, cookie_id, message)
                except Exception as exc:
                    # The handler already answered; the response goes out unsaved
                    logger.error(
                        "Session store write failed: %s", exc,
                        extra={"session_id": (session.session_id or "")[:8]},
                    )
            await send(message)

        await self.app(scope, receive, send_wrapper)

    async def _load(self, cookie_id: Optional[str]) -> Session:
        if cookie_id:
            data = await self.store.get(cookie_id)
            if data is not None:
                return Session(data, session_id=cookie_id)
            logger.debug("Session %s expired or unknown", cookie_id[:8])
        return Session()

    async def _commit(
        self,
        scope: Scope,
        session: Session,
        cookie_id: Optional[str],
        message: Message,
    ) -> None:
        headers = MutableHeaders(scope=message)

        if session.destroyed:
            if session.session_id:
                await self.store.destroy(session.session_id)
            if cookie_id:
                headers.append("set-cookie", build_cookie(
                    self.cookie_name, "", secure=self.secure, max_age=0,
                ))
            return

        if session.regenerated and session.session_id:
            await self.store.destroy(session.session_id)
            session.session_id = None

        if session.is_modified or session.regenerated:
            if session.session_id is None:
                session.session_id = new_session_id()
            await self.store.set(session.session_id, dict(session), self.ttl)
        elif not session.is_new:
            await self.store.touch(session.session_id, self.ttl)
            return
        else:
            return

        if session.session_id == cookie_id:
            return
        if self.secure and not is_secure_request(scope, self.trust_proxy):
            logger.warning("Connection not secure; session cookie not set")
            return

        headers.append("set-cookie", build_cookie(
            self.cookie_name,
            sign_cookie_value(session.session_id, self.secret),
            secure=self.secure,
        ))


def build_session_store(settings: Settings, cache: CacheClient) -> SessionStore:
    """The configured store: ``memory`` (default) or cache-backed ``redis``."""
    if settings.SESSION_STORE == "redis":
        logger.info("Sessions stored in redis (ttl=%ds)", settings.SESSION_TTL)
        return RedisSessionStore(cache)
    logger.info("Sessions stored in process memory")
    return MemorySessionStore()
