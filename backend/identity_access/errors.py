"""
Failure taxonomy for the login flow and the per-request guards.

Every failure is terminal for the current request; nothing here is retried.
`message` is safe to show to clients, `code` is a short machine-readable value
for JSON payloads and tests. Diagnostic detail goes to the observer, never
into these fields.
"""
from __future__ import annotations


class AuthFailure(Exception):
    """Base class; carries the HTTP status class the web adapter should use."""

    status_code = 500
    default_code = "auth_failure"

    def __init__(self, message: str, *, code: str | None = None, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        if status_code is not None:
            self.status_code = status_code


class ProtocolViolation(AuthFailure):
    """State mismatch, replayed state, missing required cookie or header."""

    status_code = 400
    default_code = "protocol_violation"


class UpstreamFailure(AuthFailure):
    """The IdP answered with something we cannot use.

    `detail` and `payload` are kept for server-side logging only.
    """

    status_code = 502
    default_code = "upstream_failure"

    def __init__(self, message: str, *, detail: str = "", payload: str = "", code: str | None = None):
        super().__init__(message, code=code)
        self.detail = detail
        self.payload = payload


class VerificationFailure(AuthFailure):
    """Signature, issuer, audience or expiry check failed; `reason` says which."""

    status_code = 500
    default_code = "token_verification_failed"

    def __init__(self, message: str = "Token verification failed", *, reason: str = ""):
        super().__init__(message)
        self.reason = reason


class LookupFailure(AuthFailure):
    """Session or state unknown/expired, or user unknown to the application."""

    status_code = 401
    default_code = "unauthenticated"


__all__ = [
    "AuthFailure",
    "ProtocolViolation",
    "UpstreamFailure",
    "VerificationFailure",
    "LookupFailure",
]
