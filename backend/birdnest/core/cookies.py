"""
Signed cookie helpers.

Signed values are stored as ``s:<value>.<signature>``; the signature is an
itsdangerous HMAC keyed by COOKIE_SECRET. A value whose signature does not
verify is treated as absent, never as an error.
"""

from __future__ import annotations

from http.cookies import SimpleCookie
from typing import Optional

from itsdangerous import BadSignature, Signer

SIGNED_PREFIX = "s:"
SIGNER_SALT = "birdnest.signed-cookie"


def _signer(secret: str) -> Signer:
    return Signer(secret, salt=SIGNER_SALT)


def sign_cookie_value(value: str, secret: str) -> str:
    return SIGNED_PREFIX + _signer(secret).sign(value).decode("utf-8")


def unsign_cookie_value(raw: str, secret: str) -> Optional[str]:
    """Return the original value, or None if the signature is bad."""
    if not raw.startswith(SIGNED_PREFIX):
        return None
    try:
        return _signer(secret).unsign(raw[len(SIGNED_PREFIX):]).decode("utf-8")
    except BadSignature:
        return None


def build_cookie(
    name: str,
    value: str,
    *,
    secure: bool,
    http_only: bool = True,
    max_age: Optional[int] = None,
    path: str = "/",
    same_site: str = "lax",
) -> str:
    """Render a Set-Cookie header value."""
    cookie: SimpleCookie = SimpleCookie()
    cookie[name] = value
    morsel = cookie[name]
    morsel["path"] = path
    morsel["samesite"] = same_site
    if max_age is not None:
        morsel["max-age"] = max_age
    if http_only:
        morsel["httponly"] = True
    if secure:
        morsel["secure"] = True
    return cookie.output(header="").strip()
