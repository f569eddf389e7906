"""
Core package — cross-cutting concerns.

Modules:
    config          — environment variables & settings
    logging_config  — structured JSON logging, access lines
    errors          — exception hierarchy, faults & the error view
    cookies         — signed cookie values
    cache           — Redis connection
    database        — async SQLAlchemy engine & schema sync
    sessions        — server-side sessions & their stores
    middleware      — request pipeline stages
    pipeline        — stage ordering
    templating      — Jinja2 views
    lifecycle       — startup gating & shutdown
"""
