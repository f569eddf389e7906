"""
test_sessions.py — Server-side sessions and their stores.

Covers:
    • Session change detection, regenerate, destroy
    • MemorySessionStore expiry and TTL refresh
    • RedisSessionStore key layout over a fake client
    • ServerSessionMiddleware save policy (no save for untouched sessions,
      touch instead of rewrite, regenerate on login, destroy on logout)
    • Cookie attributes: HttpOnly always, Secure in production, skipped on
      plain HTTP unless a trusted proxy reports HTTPS

Run with:
    pytest tests/test_sessions.py -v
"""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock

import pytest
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse
from starlette.routing import Route
from starlette.testclient import TestClient

from backend.birdnest.app_factory import create_app
from backend.birdnest.core.cache import CacheClient
from backend.birdnest.core.cookies import sign_cookie_value, unsign_cookie_value
from backend.birdnest.core.middleware import CookieParserMiddleware
from backend.birdnest.core.sessions import (
    MemorySessionStore,
    RedisSessionStore,
    ServerSessionMiddleware,
    Session,
    build_session_store,
    is_secure_request,
)

from tests.support import (
    SECRET,
    cookie_value,
    fake_cache,
    join,
    login,
    make_settings,
    session_cookie,
)


async def _count(request: Request):
    request.session["count"] = request.session.get("count", 0) + 1
    return JSONResponse({"count": request.session["count"]})


async def _read(request: Request):
    return JSONResponse(dict(request.session))


async def _login(request: Request):
    request.scope["session"].regenerate()
    request.session["auth"] = {"user": 1}
    return PlainTextResponse("ok")


async def _logout(request: Request):
    request.scope["session"].destroy()
    return PlainTextResponse("bye")


class UnreachableStore(MemorySessionStore):
    """Every read fails the way a dropped redis connection does."""

    async def get(self, session_id):
        raise ConnectionError("session backend unreachable")


class ReadOnlyStore(MemorySessionStore):
    """Reads work; writes fail."""

    async def set(self, session_id, data, ttl):
        raise ConnectionError("session backend read-only")


class CountingStore(MemorySessionStore):
    """Records which writes the middleware performs."""

    def __init__(self) -> None:
        super().__init__()
        self.calls = []

    async def set(self, session_id, data, ttl):
        self.calls.append("set")
        await super().set(session_id, data, ttl)

    async def touch(self, session_id, ttl):
        self.calls.append("touch")
        await super().touch(session_id, ttl)


def _session_app(store, *, secure: bool = False, trust_proxy: bool = False) -> Starlette:
    return Starlette(
        routes=[
            Route("/count", _count),
            Route("/read", _read),
            Route("/login", _login),
            Route("/logout", _logout),
        ],
        middleware=[
            Middleware(CookieParserMiddleware, secret=SECRET),
            Middleware(
                ServerSessionMiddleware,
                store=store,
                secret=SECRET,
                ttl=60,
                secure=secure,
                trust_proxy=trust_proxy,
            ),
        ],
    )


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Session record
# ═══════════════════════════════════════════════════════════════════════════

class TestSession:

    def test_new_session(self):
        session = Session()
        assert session.is_new
        assert not session.is_modified

    def test_loaded_session(self):
        session = Session({"a": 1}, session_id="abc")
        assert not session.is_new
        assert not session.is_modified
        assert session["a"] == 1

    def test_assignment_is_modification(self):
        session = Session({"a": 1}, session_id="abc")
        session["a"] = 2
        assert session.is_modified

    def test_nested_mutation_is_modification(self):
        session = Session({"cart": []}, session_id="abc")
        session["cart"].append("egg")
        assert session.is_modified

    def test_same_value_is_not_modification(self):
        session = Session({"a": 1}, session_id="abc")
        session["a"] = 1
        assert not session.is_modified

    def test_destroy_clears(self):
        session = Session({"a": 1}, session_id="abc")
        session.destroy()
        assert session.destroyed
        assert dict(session) == {}

    def test_regenerate_flag(self):
        session = Session()
        session.regenerate()
        assert session.regenerated


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Stores
# ═══════════════════════════════════════════════════════════════════════════

class TestMemorySessionStore:

    def test_set_get(self):
        store = MemorySessionStore()
        asyncio.run(store.set("abc", {"a": 1}, ttl=60))
        assert asyncio.run(store.get("abc")) == {"a": 1}
        assert len(store) == 1

    def test_get_returns_copy(self):
        store = MemorySessionStore()
        asyncio.run(store.set("abc", {"items": [1]}, ttl=60))
        first = asyncio.run(store.get("abc"))
        first["items"].append(2)
        assert asyncio.run(store.get("abc")) == {"items": [1]}

    def test_missing(self):
        assert asyncio.run(MemorySessionStore().get("nope")) is None

    def test_expired_record_is_dropped(self):
        store = MemorySessionStore()
        asyncio.run(store.set("abc", {"a": 1}, ttl=0))
        assert asyncio.run(store.get("abc")) is None
        assert len(store) == 0

    def test_expired_records_swept_on_write(self):
        store = MemorySessionStore()
        asyncio.run(store.set("abandoned", {"a": 1}, ttl=0))
        asyncio.run(store.set("live", {"b": 2}, ttl=60))
        assert len(store) == 1
        assert asyncio.run(store.get("live")) == {"b": 2}

    def test_touch_extends_expiry(self):
        store = MemorySessionStore()
        asyncio.run(store.set("abc", {"a": 1}, ttl=0))
        asyncio.run(store.touch("abc", ttl=60))
        assert asyncio.run(store.get("abc")) == {"a": 1}

    def test_destroy(self):
        store = MemorySessionStore()
        asyncio.run(store.set("abc", {"a": 1}, ttl=60))
        asyncio.run(store.destroy("abc"))
        asyncio.run(store.destroy("abc"))
        assert asyncio.run(store.get("abc")) is None


class TestRedisSessionStore:

    def _store(self):
        client = AsyncMock()
        return RedisSessionStore(CacheClient(client, url="redis://fake")), client

    def test_set_uses_prefix_and_ttl(self):
        store, client = self._store()
        asyncio.run(store.set("abc", {"a": 1}, ttl=60))
        client.set.assert_awaited_once_with("sess:abc", json.dumps({"a": 1}), ex=60)

    def test_get_decodes(self):
        store, client = self._store()
        client.get.return_value = '{"a": 1}'
        assert asyncio.run(store.get("abc")) == {"a": 1}
        client.get.assert_awaited_once_with("sess:abc")

    def test_get_miss(self):
        store, client = self._store()
        client.get.return_value = None
        assert asyncio.run(store.get("abc")) is None

    def test_touch_and_destroy(self):
        store, client = self._store()
        asyncio.run(store.touch("abc", ttl=30))
        asyncio.run(store.destroy("abc"))
        client.expire.assert_awaited_once_with("sess:abc", 30)
        client.delete.assert_awaited_once_with("sess:abc")


class TestBuildSessionStore:

    def test_memory_by_default(self, tmp_path):
        store = build_session_store(make_settings(tmp_path), fake_cache())
        assert isinstance(store, MemorySessionStore)

    def test_redis(self, tmp_path):
        cache = fake_cache()
        store = build_session_store(make_settings(tmp_path, SESSION_STORE="redis"), cache)
        assert isinstance(store, RedisSessionStore)
        assert store.cache is cache


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Cookies
# ═══════════════════════════════════════════════════════════════════════════

class TestSignedCookies:

    def test_sign_unsign(self):
        signed = sign_cookie_value("abc", SECRET)
        assert signed.startswith("s:abc.")
        assert unsign_cookie_value(signed, SECRET) == "abc"

    def test_wrong_secret(self):
        signed = sign_cookie_value("abc", SECRET)
        assert unsign_cookie_value(signed, "another-secret") is None

    def test_tampered_value(self):
        signed = sign_cookie_value("abc", SECRET)
        assert unsign_cookie_value(signed.replace("abc", "abd"), SECRET) is None

    def test_unsigned_value(self):
        assert unsign_cookie_value("abc", SECRET) is None


class TestSecureRequest:

    def test_https_scheme(self):
        assert is_secure_request({"type": "http", "scheme": "https", "headers": []}, False)

    def test_forwarded_proto_needs_trust(self):
        scope = {"type": "http", "scheme": "http", "headers": [(b"x-forwarded-proto", b"https")]}
        assert not is_secure_request(scope, trust_proxy=False)
        assert is_secure_request(scope, trust_proxy=True)

    def test_forwarded_proto_first_hop(self):
        scope = {"type": "http", "scheme": "http", "headers": [(b"x-forwarded-proto", b"http, https")]}
        assert not is_secure_request(scope, trust_proxy=True)


# ═══════════════════════════════════════════════════════════════════════════
# Section 4: Session middleware
# ═══════════════════════════════════════════════════════════════════════════

class TestServerSessionMiddleware:

    def test_untouched_session_not_saved(self):
        store = MemorySessionStore()
        with TestClient(_session_app(store)) as client:
            response = client.get("/read")
        assert response.json() == {}
        assert session_cookie(response) == ""
        assert len(store) == 0

    def test_modified_session_saved_with_cookie(self):
        store = MemorySessionStore()
        with TestClient(_session_app(store)) as client:
            response = client.get("/count")
        header = session_cookie(response)
        assert header
        assert "HttpOnly" in header
        assert "Secure" not in header
        assert len(store) == 1

    def test_session_survives_requests(self):
        store = MemorySessionStore()
        with TestClient(_session_app(store)) as client:
            client.get("/count")
            second = client.get("/count")
            third = client.get("/read")
        assert second.json() == {"count": 2}
        assert third.json() == {"count": 2}
        # same id, so no new cookie
        assert session_cookie(second) == ""
        assert len(store) == 1

    def test_unmodified_session_is_touched(self):
        store = CountingStore()
        with TestClient(_session_app(store)) as client:
            client.get("/count")
            client.get("/read")
        assert store.calls == ["set", "touch"]

    def test_unknown_session_id_starts_fresh(self):
        store = MemorySessionStore()
        cookie = sign_cookie_value("ghost", SECRET)
        with TestClient(_session_app(store)) as client:
            response = client.get("/read", headers={"cookie": f"birdnest.sid={cookie}"})
        assert response.json() == {}

    def test_tampered_cookie_ignored(self):
        store = MemorySessionStore()
        asyncio.run(store.set("known", {"count": 5}, ttl=60))
        forged = sign_cookie_value("known", "not-the-secret")
        with TestClient(_session_app(store)) as client:
            response = client.get("/read", headers={"cookie": f"birdnest.sid={forged}"})
        assert response.json() == {}

    def test_regenerate_issues_new_id(self):
        store = MemorySessionStore()
        with TestClient(_session_app(store)) as client:
            first = client.get("/count")
            old_id = unsign_cookie_value(cookie_value(session_cookie(first)), SECRET)
            second = client.get("/login")
            new_id = unsign_cookie_value(cookie_value(session_cookie(second)), SECRET)
            data = client.get("/read").json()
        assert new_id and new_id != old_id
        assert asyncio.run(store.get(old_id)) is None
        assert data == {"count": 1, "auth": {"user": 1}}

    def test_destroy_removes_record_and_cookie(self):
        store = MemorySessionStore()
        with TestClient(_session_app(store)) as client:
            client.get("/count")
            response = client.get("/logout")
            after = client.get("/read")
        assert "Max-Age=0" in session_cookie(response)
        assert len(store) == 0
        assert after.json() == {}

    def test_secure_cookie_skipped_on_plain_http(self):
        store = MemorySessionStore()
        app = _session_app(store, secure=True, trust_proxy=True)
        with TestClient(app) as client:
            response = client.get("/count")
        assert session_cookie(response) == ""

    def test_secure_cookie_behind_trusted_proxy(self):
        store = MemorySessionStore()
        app = _session_app(store, secure=True, trust_proxy=True)
        with TestClient(app) as client:
            response = client.get("/count", headers={"x-forwarded-proto": "https"})
        header = session_cookie(response)
        assert "Secure" in header
        assert "HttpOnly" in header

    def test_secure_cookie_on_https(self):
        store = MemorySessionStore()
        app = _session_app(store, secure=True)
        with TestClient(app, base_url="https://testserver") as client:
            response = client.get("/count")
        assert "Secure" in session_cookie(response)

    def test_requires_cookie_parser(self):
        app = Starlette(
            routes=[Route("/read", _read)],
            middleware=[Middleware(ServerSessionMiddleware, store=MemorySessionStore(), secret=SECRET)],
        )
        with TestClient(app) as client:
            with pytest.raises(RuntimeError, match="cookie parsing"):
                client.get("/read")


class TestStoreFaults:
    """Store failures end in the error view, never a bare server error."""

    def test_read_failure_renders_error_view(self, settings):
        app = create_app(settings, cache=fake_cache(), session_store=UnreachableStore())
        cookie = sign_cookie_value("some-session", SECRET)
        with TestClient(app) as client:
            response = client.get("/", headers={"cookie": f"birdnest.sid={cookie}"})
        assert response.status_code == 500
        assert response.headers["content-type"].startswith("text/html")
        assert "session backend unreachable" in response.text

    def test_read_skipped_without_cookie(self, settings):
        app = create_app(settings, cache=fake_cache(), session_store=UnreachableStore())
        with TestClient(app) as client:
            assert client.get("/").status_code == 200

    def test_write_failure_still_answers(self, settings, caplog):
        app = create_app(settings, cache=fake_cache(), session_store=ReadOnlyStore())
        with TestClient(app) as client:
            join(client, "zero@example.com", "zero")
            response = login(client, "zero@example.com")
        assert response.status_code == 303
        assert session_cookie(response) == ""
        assert "Session store write failed" in caplog.text
