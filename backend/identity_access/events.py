"""
Security event observer.

Why: The login flow and the guards report suspicious situations (state
mismatch, CSRF mismatch, failed verification) at a handful of well-defined
points. Routing them through one injected observer keeps the core testable
without a logging subsystem; tests pass a recorder, production uses
`LoggingObserver`.

Security: Never log tokens, cookie values or the client secret. Client network
metadata (X-Forwarded-For, peer address) is logged for diagnosis only and is
never used for decisions.
"""
from __future__ import annotations

from typing import Optional
import logging

logger = logging.getLogger("identity_access.security")


class AuthObserver:
    """No-op base observer; override the hooks you care about."""

    def invalid_state(self, client_address: Optional[str]) -> None:
        pass

    def state_mismatch(self, client_address: Optional[str]) -> None:
        pass

    def upstream_failure(self, detail: str, payload: str) -> None:
        pass

    def verification_failed(self, reason: str) -> None:
        pass

    def user_not_recognized(self, sub: str) -> None:
        pass

    def session_not_found(self) -> None:
        pass

    def xsrf_header_missing(self, forwarded_for: Optional[str]) -> None:
        pass

    def xsrf_cookie_missing(self, forwarded_for: Optional[str]) -> None:
        pass

    def xsrf_mismatch(self, forwarded_for: Optional[str]) -> None:
        pass

    def origin_mismatch(self, origin: str, forwarded_for: Optional[str]) -> None:
        pass


class LoggingObserver(AuthObserver):
    """Default observer writing to the `identity_access.security` logger."""

    def __init__(self, log: logging.Logger | None = None):
        self.log = log or logger

    def invalid_state(self, client_address: Optional[str]) -> None:
        self.log.error("Invalid state, possible CSRF-attack on login. X-Forwarded-For: %s", client_address or "")

    def state_mismatch(self, client_address: Optional[str]) -> None:
        self.log.error("State values do not match, possible XSRF-attack! X-Forwarded-For: %s", client_address or "")

    def upstream_failure(self, detail: str, payload: str) -> None:
        self.log.error("Invalid response from IdP: %s. Payload: %s", detail, payload)

    def verification_failed(self, reason: str) -> None:
        self.log.error("ID token verification failed: %s", reason)

    def user_not_recognized(self, sub: str) -> None:
        self.log.warning("Authenticated user not recognized by application lookup: sub=%s", sub)

    def session_not_found(self) -> None:
        self.log.warning("Could not extract user profile, session timed out or unknown")

    def xsrf_header_missing(self, forwarded_for: Optional[str]) -> None:
        self.log.error("No x-xsrf-token header, possible CSRF-attack! X-Forwarded-For: %s", forwarded_for or "")

    def xsrf_cookie_missing(self, forwarded_for: Optional[str]) -> None:
        self.log.error("No xsrf-cookie, possible CSRF-attack from %s", forwarded_for or "")

    def xsrf_mismatch(self, forwarded_for: Optional[str]) -> None:
        self.log.error(
            "XsrfCookie does not match Xsrf header, possible CSRF-attack! X-Forwarded-For: %s", forwarded_for or ""
        )

    def origin_mismatch(self, origin: str, forwarded_for: Optional[str]) -> None:
        self.log.warning("Request origin %s is not trusted. X-Forwarded-For: %s", origin, forwarded_for or "")


__all__ = ["AuthObserver", "LoggingObserver"]
