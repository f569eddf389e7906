"""
Log output for the birdnest server.

Production writes one JSON object per line so a collector can index the
request id, status and session fields. Development writes short coloured
lines tagged with the first characters of the request id. The access-log
stage renders its own morgan-style line ("combined" or "dev") and hands it
to the ``birdnest.access`` logger.

    setup_logging(settings)
    log = get_logger(__name__)
    log.info("session stored", extra={"session_id": sid})
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from backend.birdnest.core.config import Settings

ACCESS_LOGGER_NAME = "birdnest.access"

# Chatty third-party loggers held at WARNING
QUIET_LOGGERS = ("uvicorn.access", "httpx")

_log_context: ContextVar[Dict[str, Any]] = ContextVar("birdnest_log_context", default={})


def set_request_context(**fields: Any) -> None:
    """Bind fields to every record logged while this request runs; no args clears."""
    _log_context.set(dict(fields))


def get_request_context() -> Dict[str, Any]:
    return _log_context.get()


def _exception_summary(record: logging.LogRecord) -> Optional[tuple[str, str]]:
    if not record.exc_info or record.exc_info[1] is None:
        return None
    exc = record.exc_info[1]
    return type(exc).__name__, str(exc)


# ── Production ──

class JSONFormatter(logging.Formatter):
    """One JSON document per record."""

    # Attributes passed through ``extra=`` that are copied when present
    EXTRA_FIELDS = (
        "status_code", "duration_ms", "endpoint", "method",
        "session_id", "user_id", "fault",
    )

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "where": f"{record.module}:{record.funcName}:{record.lineno}",
        }
        context = get_request_context()
        if context:
            entry["context"] = context
        entry.update(
            (name, getattr(record, name))
            for name in self.EXTRA_FIELDS
            if hasattr(record, name)
        )
        summary = _exception_summary(record)
        if summary is not None:
            entry["error"] = {"type": summary[0], "detail": summary[1]}
        return json.dumps(entry, default=str, ensure_ascii=False)


# ── Development ──

class PrettyFormatter(logging.Formatter):
    """``HH:MM:SS LEVEL [reqid] logger: message`` with the level coloured."""

    LEVEL_COLOURS = {
        logging.DEBUG: 36,
        logging.INFO: 32,
        logging.WARNING: 33,
        logging.ERROR: 31,
        logging.CRITICAL: 35,
    }

    def _paint(self, record: logging.LogRecord) -> str:
        code = self.LEVEL_COLOURS.get(record.levelno)
        label = f"{record.levelname:<8}"
        return f"\033[{code}m{label}\033[0m" if code else label

    def format(self, record: logging.LogRecord) -> str:
        parts = [self.formatTime(record, "%H:%M:%S"), self._paint(record)]
        request_id = get_request_context().get("request_id")
        if request_id:
            parts.append(f"[{request_id[:8]}]")
        parts.append(f"{record.name}: {record.getMessage()}")
        line = " ".join(parts)

        summary = _exception_summary(record)
        if summary is not None:
            line += "\n  {}: {}".format(*summary)
        return line


# ── Access lines ──

def format_access_line(
    fmt: str,
    *,
    method: str,
    url: str,
    status: int,
    duration_ms: float,
    content_length: Optional[str] = None,
    remote_addr: str = "-",
    http_version: str = "1.1",
    referrer: Optional[str] = None,
    user_agent: Optional[str] = None,
    when: Optional[datetime] = None,
) -> str:
    """
    Render one access-log line.

    "combined" follows the Apache combined log format; "dev" is the
    short terminal variant used locally.
    """
    length = content_length or "-"
    if fmt != "combined":
        return f"{method} {url} {status} {duration_ms:.3f} ms - {length}"

    stamp = (when or datetime.now(timezone.utc)).strftime("%d/%b/%Y:%H:%M:%S +0000")
    return (
        f'{remote_addr} - - [{stamp}] "{method} {url} HTTP/{http_version}" '
        f'{status} {length} "{referrer or "-"}" "{user_agent or "-"}"'
    )


# ── Wiring ──

def setup_logging(settings: Settings) -> None:
    """Install a single stdout handler on the root logger."""
    formatter: logging.Formatter = JSONFormatter() if settings.is_production else PrettyFormatter()
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    level = logging.getLevelName(settings.LOG_LEVEL.upper())
    root.setLevel(level if isinstance(level, int) else logging.INFO)

    # The access-log stage replaces uvicorn's own access lines
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
