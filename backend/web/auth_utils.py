"""
Shared authentication utilities for the web adapter.

Why:
    Avoid duplicating cookie and error-response logic across the auth router
    and the application factory. The identity_access package decides what a
    cookie looks like; this module only transfers it onto a Starlette response.

Design:
    Helpers are small and pure where possible: they accept a request/response
    and return a value. No module-level state.
"""

from __future__ import annotations

from typing import Iterable

from fastapi import Request, Response
from fastapi.responses import JSONResponse

from identity_access.cookies import CookieSpec
from identity_access.errors import AuthFailure
from identity_access.guards import RequestContext

NO_STORE = {"Cache-Control": "private, no-store"}


def set_cookies(response: Response, cookies: Iterable[CookieSpec]) -> None:
    for spec in cookies:
        response.set_cookie(**spec.to_set_cookie_kwargs())


def request_context(request: Request) -> RequestContext:
    """Build the framework-agnostic request view used by the guards.

    `client_address` prefers X-Forwarded-For for log readability; it is never
    used for a security decision.
    """
    peer = request.client.host if request.client else None
    return RequestContext(
        cookies=dict(request.cookies),
        headers=dict(request.headers),
        client_address=request.headers.get("x-forwarded-for") or peer,
    )


def failure_response(failure: AuthFailure) -> JSONResponse:
    """Generic client-facing error; diagnostic detail stays in server logs."""
    return JSONResponse(
        {"error": failure.code, "detail": failure.message},
        status_code=failure.status_code,
        headers=dict(NO_STORE),
    )
