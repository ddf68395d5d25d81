"""
Per-request guards: session authentication and double-submit CSRF check.

Both guards work on a framework-agnostic `RequestContext`; the web adapter
builds one from the incoming request. Both are read-only with respect to the
stores.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Generic, Iterable, Mapping, Optional, TypeVar
from urllib.parse import urlparse
import hmac

from .config import AuthConfig
from .cookies import FORWARDED_FOR_HEADER, XSRF_COOKIE_NAME, XSRF_HEADER_NAME
from .errors import LookupFailure, ProtocolViolation
from .events import AuthObserver, LoggingObserver
from .stores import SessionStore
from .tokens import OidcAuthenticatedUser

U = TypeVar("U")

SESSION_COOKIE_MISSING = "Session cookie not found. Please login"
SESSION_NOT_FOUND = "Could not extract user profile from the cookie"


@dataclass(frozen=True)
class RequestContext:
    cookies: Mapping[str, str] = field(default_factory=dict)
    headers: Mapping[str, str] = field(default_factory=dict)
    client_address: Optional[str] = None

    def cookie(self, name: str) -> Optional[str]:
        return self.cookies.get(name)

    def header(self, name: str) -> Optional[str]:
        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                return value
        return None

    @property
    def forwarded_for(self) -> Optional[str]:
        return self.header(FORWARDED_FOR_HEADER)


class RequestAuthenticator(Generic[U]):
    """Resolve session cookie -> session record -> authenticated principal."""

    def __init__(
        self,
        config: AuthConfig,
        session_store: SessionStore,
        lookup: Callable[[OidcAuthenticatedUser], Optional[U]] | None = None,
        observer: AuthObserver | None = None,
    ):
        self.cfg = config
        self.sessions = session_store
        self.lookup = lookup
        self.observer = observer or LoggingObserver()

    def authenticate(self, request: RequestContext) -> OidcAuthenticatedUser:
        sid = request.cookie(self.cfg.cookie_name)
        if sid is None:
            raise LookupFailure(SESSION_COOKIE_MISSING)
        rec = self.sessions.get_session(sid)
        if rec is None:
            # Unknown and expired sessions look the same from outside.
            self.observer.session_not_found()
            raise LookupFailure(SESSION_NOT_FOUND)
        return rec.user

    def transform_user(self, user: OidcAuthenticatedUser) -> Optional[U]:
        if self.lookup is None:
            return user  # type: ignore[return-value]
        return self.lookup(user)

    def resolve_app_user(self, user: OidcAuthenticatedUser) -> U:
        """Map the principal to the application user; 401 when the lookup no longer knows it."""
        app_user = self.transform_user(user)
        if app_user is None:
            self.observer.user_not_recognized(user.sub)
            raise LookupFailure("User not recognized", code="user_not_recognized")
        return app_user


def _origin_host(value: str) -> Optional[str]:
    parsed = urlparse(value)
    if not parsed.scheme or not parsed.hostname:
        return None
    return parsed.hostname.lower()


class CsrfGuard:
    """Double-submit-cookie check: x-xsrf-token header must equal xsrf-token cookie."""

    def __init__(self, observer: AuthObserver | None = None, trusted_origins: Iterable[str] = ()):
        self.observer = observer or LoggingObserver()
        self.trusted_origins = frozenset(h.lower() for h in trusted_origins)

    def check(self, request: RequestContext) -> str:
        forwarded_for = request.forwarded_for
        header = request.header(XSRF_HEADER_NAME)
        if header is None:
            self.observer.xsrf_header_missing(forwarded_for)
            raise ProtocolViolation("No x-xsrf-token header found", code="xsrf_header_missing")
        cookie = request.cookie(XSRF_COOKIE_NAME)
        if cookie is None:
            self.observer.xsrf_cookie_missing(forwarded_for)
            raise ProtocolViolation("No xsrf-token cookie found", code="xsrf_cookie_missing")
        if not hmac.compare_digest(header.encode("utf-8"), cookie.encode("utf-8")):
            self.observer.xsrf_mismatch(forwarded_for)
            raise ProtocolViolation("xsrf check failed", code="xsrf_check_failed")
        self._report_untrusted_origin(request, forwarded_for)
        return header

    def _report_untrusted_origin(self, request: RequestContext, forwarded_for: Optional[str]) -> None:
        # Diagnostics only; the header/cookie match above is the decision.
        if not self.trusted_origins:
            return
        origin = request.header("origin") or request.header("referer")
        if not origin:
            return
        if _origin_host(origin) not in self.trusted_origins:
            self.observer.origin_mismatch(origin, forwarded_for)


__all__ = ["RequestContext", "RequestAuthenticator", "CsrfGuard", "SESSION_COOKIE_MISSING", "SESSION_NOT_FOUND"]
