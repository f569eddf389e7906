"""
ASGI application entry point.

Run with:
    uvicorn backend.birdnest.main:app --port 8001

Or, binding to PORT from the environment:
    python -m backend.birdnest.main

Configuration is validated on import; a missing or weak COOKIE_SECRET
stops the process before any socket is bound.
"""

from __future__ import annotations

import uvicorn

from backend.birdnest.app_factory import create_app
from backend.birdnest.core.config import get_settings
from backend.birdnest.core.logging_config import get_logger, setup_logging

settings = get_settings()

# ── Initialise logging ──
setup_logging(settings)
logger = get_logger(__name__)

app = create_app(settings)


def run() -> None:
    """Serve on HOST:PORT; lifespan startup finishes before the bind."""
    logger.info("Serving %s on %s:%d", settings.APP_NAME, settings.HOST, settings.PORT)
    uvicorn.run(
        app,
        host=settings.HOST,
        port=settings.PORT,
        proxy_headers=settings.trust_proxy,
        log_config=None,
    )


if __name__ == "__main__":
    run()
