"""
Request middleware — the stages every inbound request passes through.

Provides:
    • AccessLogMiddleware          — request id, timing, morgan-style line
    • SecurityHeadersMiddleware    — deny-by-default response headers
    • ParameterPollutionMiddleware — one value per query key
    • StaticAssetsMiddleware       — serves files, short-circuits the chain
    • BodyParserMiddleware         — JSON / urlencoded body into state.body
    • CookieParserMiddleware       — plain + verified signed cookies
    • ErrorTerminalMiddleware      — renders anything a route lets escape

Stages communicate through ``scope["state"]`` (``request.state`` in
handlers). A stage that rejects a request renders the error view itself
instead of calling the next stage.
"""

from __future__ import annotations

import json
import logging
import os
import time
import uuid
from collections import OrderedDict
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union
from urllib.parse import parse_qsl, urlencode

from starlette.datastructures import Headers
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request, cookie_parser
from starlette.responses import Response
from starlette.staticfiles import StaticFiles
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from backend.birdnest.core.cookies import unsign_cookie_value
from backend.birdnest.core.errors import (
    BadRequestError,
    PayloadTooLargeError,
    fault_from_exception,
    render_error,
    request_url,
)
from backend.birdnest.core.logging_config import (
    ACCESS_LOGGER_NAME,
    format_access_line,
    set_request_context,
)

logger = logging.getLogger(__name__)
access_logger = logging.getLogger(ACCESS_LOGGER_NAME)


async def reject_request(scope: Scope, receive: Receive, send: Send, exc: Exception) -> None:
    request = Request(scope, receive)
    response = render_error(request, fault_from_exception(exc, request))
    await response(scope, receive, send)


# ═══════════════════════════════════════════════════════════════════════════
# 1. Access logging
# ═══════════════════════════════════════════════════════════════════════════

class AccessLogMiddleware(BaseHTTPMiddleware):
    """
    Log every request with timing, inject correlation ID.

    ``fmt`` is "combined" (production) or "dev" (local).
    """

    def __init__(self, app: ASGIApp, fmt: str = "dev"):
        super().__init__(app)
        self.fmt = fmt

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex[:16])
        client_ip = request.client.host if request.client else "-"
        url = request_url(request)

        set_request_context(
            request_id=request_id,
            client_ip=client_ip,
            endpoint=request.url.path,
            method=request.method,
        )

        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            duration_ms = (time.perf_counter() - start) * 1000
            access_logger.error(
                format_access_line(
                    self.fmt, method=request.method, url=url, status=500,
                    duration_ms=duration_ms, remote_addr=client_ip,
                ),
                extra={"duration_ms": duration_ms, "status_code": 500},
            )
            set_request_context()
            raise

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = request_id

        access_logger.info(
            format_access_line(
                self.fmt,
                method=request.method,
                url=url,
                status=response.status_code,
                duration_ms=duration_ms,
                content_length=response.headers.get("content-length"),
                remote_addr=client_ip,
                http_version=request.scope.get("http_version", "1.1"),
                referrer=request.headers.get("referer"),
                user_agent=request.headers.get("user-agent"),
            ),
            extra={"duration_ms": duration_ms, "status_code": response.status_code},
        )

        set_request_context()
        return response


# ═══════════════════════════════════════════════════════════════════════════
# 2. Security headers
# ═══════════════════════════════════════════════════════════════════════════

DEFAULT_SECURITY_HEADERS: Dict[str, str] = {
    "X-XSS-Protection": "1; mode=block",
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "SAMEORIGIN",
    "X-DNS-Prefetch-Control": "off",
    "X-Download-Options": "noopen",
    "X-Permitted-Cross-Domain-Policies": "none",
    "Referrer-Policy": "no-referrer",
    "Strict-Transport-Security": "max-age=15552000; includeSubDomains",
    "Cross-Origin-Opener-Policy": "same-origin",
    "Cross-Origin-Resource-Policy": "same-origin",
    "Origin-Agent-Cluster": "?1",
}

DEFAULT_CONTENT_SECURITY_POLICY = (
    "default-src 'self';base-uri 'self';font-src 'self' https: data:;"
    "form-action 'self';frame-ancestors 'self';img-src 'self' data:;"
    "object-src 'none';script-src 'self';script-src-attr 'none';"
    "style-src 'self' https: 'unsafe-inline';upgrade-insecure-requests"
)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Set protective headers on every response, including static files."""

    def __init__(
        self,
        app: ASGIApp,
        headers: Optional[Dict[str, str]] = None,
        content_security_policy: Union[bool, str] = True,
    ):
        super().__init__(app)
        self.headers = dict(DEFAULT_SECURITY_HEADERS if headers is None else headers)
        if content_security_policy:
            self.headers["Content-Security-Policy"] = (
                content_security_policy
                if isinstance(content_security_policy, str)
                else DEFAULT_CONTENT_SECURITY_POLICY
            )

    async def dispatch(self, request: Request, call_next) -> Response:
        response = await call_next(request)
        for name, value in self.headers.items():
            response.headers.setdefault(name, value)
        if "x-powered-by" in response.headers:
            del response.headers["x-powered-by"]
        return response


# ═══════════════════════════════════════════════════════════════════════════
# 3. HTTP parameter pollution guard
# ═══════════════════════════════════════════════════════════════════════════

def collapse_pairs(
    pairs: Iterable[Tuple[str, str]],
    whitelist: Iterable[str] = (),
) -> Tuple["OrderedDict[str, Union[str, List[str]]]", Dict[str, List[str]]]:
    """
    Group key/value pairs, keeping only the last value of a repeated key.

    Whitelisted keys keep every value as a list. Returns the collapsed
    mapping and the original values of every polluted key.
    """
    allowed = set(whitelist)
    grouped: "OrderedDict[str, List[str]]" = OrderedDict()
    for key, value in pairs:
        grouped.setdefault(key, []).append(value)

    collapsed: "OrderedDict[str, Union[str, List[str]]]" = OrderedDict()
    polluted: Dict[str, List[str]] = {}
    for key, values in grouped.items():
        if len(values) == 1:
            collapsed[key] = values[0]
        elif key in allowed:
            collapsed[key] = values
        else:
            collapsed[key] = values[-1]
            polluted[key] = values
    return collapsed, polluted


class ParameterPollutionMiddleware:
    """
    Rewrite the query string so each key appears once.

    The guard also marks the request so the body parsing stage applies the
    same rule to urlencoded form fields.
    """

    def __init__(self, app: ASGIApp, whitelist: Sequence[str] = ()):
        self.app = app
        self.whitelist = tuple(whitelist)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        state = scope.setdefault("state", {})
        state["hpp_whitelist"] = self.whitelist

        raw = scope.get("query_string", b"").decode("latin-1")
        pairs = parse_qsl(raw, keep_blank_values=True)
        collapsed, polluted = collapse_pairs(pairs, self.whitelist)
        state["query_polluted"] = polluted

        if polluted:
            logger.debug("Collapsed polluted query keys: %s", sorted(polluted))
            flat: List[Tuple[str, str]] = []
            for key, value in collapsed.items():
                if isinstance(value, list):
                    flat.extend((key, v) for v in value)
                else:
                    flat.append((key, value))
            scope = dict(scope)
            scope["query_string"] = urlencode(flat).encode("latin-1")

        await self.app(scope, receive, send)


# ═══════════════════════════════════════════════════════════════════════════
# 4. Static assets
# ═══════════════════════════════════════════════════════════════════════════

class StaticAssetsMiddleware:
    """
    Serve files from one or more (url prefix, directory) mounts.

    Mounts are tried in order; a miss falls through to the next stage, a
    hit ends the chain with the file response.
    """

    def __init__(self, app: ASGIApp, mounts: Sequence[Tuple[str, Union[str, Path]]] = ()):
        self.app = app
        self.mounts = [
            (prefix.rstrip("/"), StaticFiles(directory=str(directory), check_dir=False))
            for prefix, directory in mounts
        ]

    @staticmethod
    def _relative_path(path: str, prefix: str) -> Optional[str]:
        if prefix and path != prefix and not path.startswith(prefix + "/"):
            return None
        rest = path[len(prefix):]
        return os.path.normpath(os.path.join(*rest.split("/"))) if rest.strip("/") else None

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or scope["method"] not in ("GET", "HEAD"):
            await self.app(scope, receive, send)
            return

        for prefix, files in self.mounts:
            relative = self._relative_path(scope["path"], prefix)
            if relative is None:
                continue
            try:
                response = await files.get_response(relative, scope)
            except StarletteHTTPException:
                continue
            await response(scope, receive, send)
            return

        await self.app(scope, receive, send)


# ═══════════════════════════════════════════════════════════════════════════
# 5. Body parsing
# ═══════════════════════════════════════════════════════════════════════════

JSON_TYPES = ("application/json",)
FORM_TYPES = ("application/x-www-form-urlencoded",)


def parse_urlencoded(raw: bytes, whitelist: Optional[Sequence[str]] = None) -> Dict[str, Any]:
    """
    Flat urlencoded parsing: values are strings, repeated keys become lists.

    With a pollution whitelist (guard active) repeated keys collapse to
    their last value unless whitelisted.
    """
    pairs = parse_qsl(raw.decode("utf-8", errors="replace"), keep_blank_values=True)
    if whitelist is not None:
        collapsed, _ = collapse_pairs(pairs, whitelist)
        return dict(collapsed)
    body: Dict[str, Any] = {}
    for key, value in pairs:
        if key in body:
            existing = body[key]
            body[key] = existing + [value] if isinstance(existing, list) else [existing, value]
        else:
            body[key] = value
    return body


class BodyParserMiddleware:
    """
    Parse JSON and urlencoded bodies into ``state["body"]``.

    The raw bytes are replayed to downstream consumers, so handlers may
    still read the body themselves. Other content types (multipart
    uploads) pass through untouched with an empty parsed body.
    """

    def __init__(self, app: ASGIApp, limit: int = 100 * 1024):
        self.app = app
        self.limit = limit

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        state = scope.setdefault("state", {})
        state["body"] = {}
        content_type = Headers(scope=scope).get("content-type", "").split(";")[0].strip().lower()
        if content_type not in JSON_TYPES + FORM_TYPES:
            await self.app(scope, receive, send)
            return

        chunks: List[bytes] = []
        size = 0
        more_body = True
        while more_body:
            message = await receive()
            if message["type"] == "http.disconnect":
                return
            chunk = message.get("body", b"")
            size += len(chunk)
            if size > self.limit:
                await reject_request(scope, receive, send, PayloadTooLargeError(self.limit))
                return
            chunks.append(chunk)
            more_body = message.get("more_body", False)
        raw = b"".join(chunks)

        if content_type in JSON_TYPES:
            try:
                state["body"] = json.loads(raw) if raw.strip() else {}
            except ValueError as e:
                await reject_request(scope, receive, send, BadRequestError(f"Malformed JSON body: {e}"))
                return
        else:
            state["body"] = parse_urlencoded(raw, state.get("hpp_whitelist"))

        replayed = False

        async def replay() -> Message:
            nonlocal replayed
            if not replayed:
                replayed = True
                return {"type": "http.request", "body": raw, "more_body": False}
            return await receive()

        await self.app(scope, replay, send)


# ═══════════════════════════════════════════════════════════════════════════
# 6. Cookie parsing
# ═══════════════════════════════════════════════════════════════════════════

class CookieParserMiddleware:
    """
    Split request cookies into ``state["cookies"]`` and verified
    ``state["signed_cookies"]``. Tampered signed cookies are dropped.
    """

    def __init__(self, app: ASGIApp, secret: str):
        self.app = app
        self.secret = secret

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        cookies: Dict[str, str] = {}
        signed: Dict[str, str] = {}
        header = Headers(scope=scope).get("cookie")
        for name, value in (cookie_parser(header) if header else {}).items():
            if value.startswith("s:"):
                unsigned = unsign_cookie_value(value, self.secret)
                if unsigned is None:
                    logger.info("Dropped cookie %r with invalid signature", name)
                    continue
                signed[name] = unsigned
            else:
                cookies[name] = value

        state = scope.setdefault("state", {})
        state["cookies"] = cookies
        state["signed_cookies"] = signed
        await self.app(scope, receive, send)


# ═══════════════════════════════════════════════════════════════════════════
# Error terminal
# ═══════════════════════════════════════════════════════════════════════════

class ErrorTerminalMiddleware:
    """
    Innermost stage: any exception a route lets escape is rendered as the
    error view. HTTP errors are already handled by the registered
    exception handlers and never reach here.
    """

    def __init__(self, app: ASGIApp):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        started = False

        async def send_wrapper(message: Message) -> None:
            nonlocal started
            if message["type"] == "http.response.start":
                started = True
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        except Exception as exc:
            if started:
                raise
            logger.exception("Unhandled exception in %s %s", scope["method"], scope["path"])
            await reject_request(scope, receive, send, exc)
