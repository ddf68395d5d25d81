"""
Opaque random tokens and the three cookies of the login flow.

Why: Session ids, state values and XSRF tokens are all the same kind of thing
(unguessable hex strings); the cookies carrying them differ only in their
security attributes. Keeping both here avoids cookie-policy drift between the
login flow and the web adapter.

Security: Cookies are transport artifacts. They hold opaque references only;
the session/state store stays the source of truth.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional
import secrets

from .config import AuthConfig

STATE_COOKIE_NAME = "statecookie"
XSRF_COOKIE_NAME = "xsrf-token"
XSRF_HEADER_NAME = "x-xsrf-token"
FORWARDED_FOR_HEADER = "X-Forwarded-For"

# Sizes in bytes (policy, tune as needed)
SESSION_ID_BYTES = 64
STATE_BYTES = 16
STATE_COOKIE_BYTES = 16
XSRF_TOKEN_BYTES = 32


def random_token(length_in_bytes: int) -> str:
    """Return `length_in_bytes` bytes from the OS CSPRNG, hex encoded."""
    if length_in_bytes <= 0:
        raise ValueError("length_in_bytes must be positive")
    return secrets.token_bytes(length_in_bytes).hex()


@dataclass(frozen=True)
class CookieSpec:
    name: str
    value: str
    http_only: bool
    secure: bool
    same_site: str  # "strict" | "lax"
    path: str = "/"
    max_age: Optional[int] = None

    def to_set_cookie_kwargs(self) -> dict:
        """Keyword arguments for Starlette's `Response.set_cookie`."""
        return {
            "key": self.name,
            "value": self.value,
            "httponly": self.http_only,
            "secure": self.secure,
            "samesite": self.same_site,
            "path": self.path,
            "max_age": self.max_age,
        }


class CookieFactory:
    """Build session, xsrf and state cookies with fresh random content."""

    def __init__(self, config: AuthConfig):
        self.cfg = config

    @property
    def session_cookie_name(self) -> str:
        return self.cfg.cookie_name

    def session_cookie(self) -> CookieSpec:
        return CookieSpec(
            name=self.cfg.cookie_name,
            value=random_token(SESSION_ID_BYTES),
            http_only=True,
            secure=self.cfg.secure_cookies,
            same_site="strict",
            max_age=self.cfg.session_ttl_seconds,
        )

    def xsrf_cookie(self) -> CookieSpec:
        # Not HttpOnly: the frontend must read it to echo it in x-xsrf-token.
        return CookieSpec(
            name=XSRF_COOKIE_NAME,
            value=random_token(XSRF_TOKEN_BYTES),
            http_only=False,
            secure=self.cfg.secure_cookies,
            same_site="lax",
            max_age=self.cfg.session_ttl_seconds,
        )

    def state_cookie(self) -> CookieSpec:
        # Lax: must be sent on the top-level redirect back from the IdP.
        return CookieSpec(
            name=STATE_COOKIE_NAME,
            value=random_token(STATE_COOKIE_BYTES),
            http_only=True,
            secure=self.cfg.secure_cookies,
            same_site="lax",
            max_age=self.cfg.state_ttl_seconds,
        )

    def expired(self, name: str, *, http_only: bool = True, same_site: str = "lax") -> CookieSpec:
        """Return a cookie that makes the browser drop `name`."""
        return CookieSpec(
            name=name,
            value="",
            http_only=http_only,
            secure=self.cfg.secure_cookies,
            same_site=same_site,
            max_age=0,
        )


__all__ = [
    "STATE_COOKIE_NAME",
    "XSRF_COOKIE_NAME",
    "XSRF_HEADER_NAME",
    "FORWARDED_FOR_HEADER",
    "SESSION_ID_BYTES",
    "STATE_BYTES",
    "STATE_COOKIE_BYTES",
    "XSRF_TOKEN_BYTES",
    "random_token",
    "CookieSpec",
    "CookieFactory",
]
