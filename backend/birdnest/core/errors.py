"""
Centralised error handling — exception hierarchy, fault variants and the
error terminal that renders every failure.

Provides:
    • Exception classes for route handlers (carry an HTTP status)
    • Startup fault classes (configuration, cache, schema sync)
    • Fault variants: NotFound | HandlerFault
    • fault_from_exception() — normalise anything raised into a Fault
    • render_error() — the single exit path, renders views/error.html
    • register_error_handlers() — wires the terminal into FastAPI

Every failure ends up in render_error(): unmatched routes, handler
exceptions and middleware rejections (bad JSON, oversized bodies). The
rendered page always shows the message; the full error structure is only
exposed outside production.

Usage:
    from backend.birdnest.core.errors import NotFoundError
    raise NotFoundError("User", id=user_id)
"""

from __future__ import annotations

import logging
import traceback
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import Response

from backend.birdnest.core.templating import render

logger = logging.getLogger(__name__)

ERROR_VIEW = "error.html"


# ═══════════════════════════════════════════════════════════════════════════
# Exception Hierarchy
# ═══════════════════════════════════════════════════════════════════════════

class BirdnestError(Exception):
    """Base exception for errors raised by route handlers."""

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        *,
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.details = details or {}


class BadRequestError(BirdnestError):
    """Malformed request (400)."""

    def __init__(self, message: str, **details: Any):
        super().__init__(message, status_code=400, details=details)


class UnauthorizedError(BirdnestError):
    """Credentials missing or wrong (401)."""

    def __init__(self, message: str = "Authentication required", **details: Any):
        super().__init__(message, status_code=401, details=details)


class ForbiddenError(BirdnestError):
    """Authenticated state does not allow the action (403)."""

    def __init__(self, message: str, **details: Any):
        super().__init__(message, status_code=403, details=details)


class NotFoundError(BirdnestError):
    """Resource not found (404)."""

    def __init__(self, resource: str, **identifiers: Any):
        super().__init__(
            f"{resource} not found",
            status_code=404,
            details={"resource": resource, **identifiers},
        )


class ConflictError(BirdnestError):
    """Resource already exists (409)."""

    def __init__(self, message: str, **details: Any):
        super().__init__(message, status_code=409, details=details)


class PayloadTooLargeError(BirdnestError):
    """Request body exceeds the configured limit (413)."""

    def __init__(self, limit: int):
        super().__init__(
            f"Request body exceeds {limit} bytes",
            status_code=413,
            details={"limit": limit},
        )


# ── Startup faults ──

class StartupError(Exception):
    """A required dependency could not be prepared; the process must exit."""


class ConfigurationError(StartupError):
    """Environment configuration is missing or invalid."""


class CacheConnectionError(StartupError):
    """The cache server could not be reached."""

    def __init__(self, url: str, message: str = ""):
        super().__init__(f"Cache at {url} unreachable: {message}")
        self.url = url


class SchemaSyncError(StartupError):
    """Schema synchronisation with the database failed."""


# ═══════════════════════════════════════════════════════════════════════════
# Fault variants
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class NotFound:
    """No router matched the request."""

    method: str
    url: str
    status: int = 404

    @property
    def message(self) -> str:
        return f"No router for {self.method} {self.url}"

    @property
    def detail(self) -> Dict[str, Any]:
        return {"status": self.status, "method": self.method, "url": self.url}


@dataclass(frozen=True)
class HandlerFault:
    """A handler (or middleware stage) failed."""

    status: int
    message: str
    detail: Dict[str, Any] = field(default_factory=dict)


Fault = Union[NotFound, HandlerFault]


def request_url(request: Request) -> str:
    """Path plus query string, as the client sent it."""
    query = request.url.query
    return f"{request.url.path}?{query}" if query else request.url.path


def describe_exception(exc: BaseException, status: int) -> Dict[str, Any]:
    """Full structure of an exception, for non-production error pages."""
    return {
        "type": type(exc).__name__,
        "message": str(exc),
        "status": status,
        "details": getattr(exc, "details", {}),
        "stack": traceback.format_exception(type(exc), exc, exc.__traceback__),
    }


def fault_from_exception(exc: BaseException, request: Request) -> Fault:
    """Normalise any raised exception into a Fault variant."""
    if isinstance(exc, StarletteHTTPException):
        # A path served only under other methods is still an unmatched request
        if exc.status_code in (404, 405):
            return NotFound(method=request.method, url=request_url(request))
        message = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
        return HandlerFault(exc.status_code, message, describe_exception(exc, exc.status_code))

    if isinstance(exc, RequestValidationError):
        detail = describe_exception(exc, 422)
        detail["details"] = {"errors": exc.errors()}
        return HandlerFault(422, "Request validation failed", detail)

    if isinstance(exc, BirdnestError):
        return HandlerFault(exc.status_code, exc.message, describe_exception(exc, exc.status_code))

    return HandlerFault(500, str(exc) or type(exc).__name__, describe_exception(exc, 500))


# ═══════════════════════════════════════════════════════════════════════════
# Error terminal
# ═══════════════════════════════════════════════════════════════════════════

def render_error(request: Request, fault: Fault) -> Response:
    """Log the fault and render the generic error view."""
    settings = request.app.state.settings

    if isinstance(fault, NotFound):
        logger.warning(
            "%s", fault.message,
            extra={"status_code": fault.status, "fault": "not_found"},
        )
    else:
        logger.error(
            "Handler fault [%d]: %s", fault.status, fault.message,
            extra={"status_code": fault.status, "fault": "handler"},
        )

    context = {
        "message": fault.message,
        "error": {} if settings.is_production else fault.detail,
    }
    return render(request, ERROR_VIEW, context, status_code=fault.status)


def register_error_handlers(app: FastAPI) -> None:
    """Route framework-raised errors into the error terminal."""

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        return render_error(request, fault_from_exception(exc, request))

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return render_error(request, fault_from_exception(exc, request))

    @app.exception_handler(BirdnestError)
    async def handle_birdnest_error(request: Request, exc: BirdnestError):
        return render_error(request, fault_from_exception(exc, request))
