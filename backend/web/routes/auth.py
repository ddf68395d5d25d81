"""
Authentication-related FastAPI routes (router-only module).

Why:
    Keep auth endpoints in a dedicated router. All protocol decisions live in
    `identity_access.flow.LoginFlow`; handlers only translate between HTTP and
    the flow and set cookies.

Notes:
    - The flow instance is read from `request.app.state.login_flow`, which the
      application factory wires. Tests build apps with fake collaborators.
    - The callback handler is a plain `def` so FastAPI runs the blocking IdP
      calls (token exchange, key set fetch) on its worker thread pool.
"""

from __future__ import annotations

from urllib.parse import urlparse
import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, RedirectResponse

from identity_access.cookies import STATE_COOKIE_NAME
from identity_access.flow import LoginFlow
from web.auth_utils import NO_STORE, request_context, set_cookies

auth_router = APIRouter(tags=["Auth"])  # explicit paths, no prefix
logger = logging.getLogger("web.auth")


def _flow(request: Request) -> LoginFlow:
    return request.app.state.login_flow


def _default_return_url(callback_url: str) -> str:
    """Return `scheme://host[:port]/` of the configured callback URL."""
    parsed = urlparse(callback_url)
    if parsed.scheme and parsed.netloc:
        return f"{parsed.scheme}://{parsed.netloc}/"
    return "/"


@auth_router.get("/auth/login")
async def auth_login(request: Request, return_to: str | None = None):
    """
    Start the authorization-code flow; redirect to the IdP.

    Behavior:
        - Validates `return_to` against the return-URL host whitelist before
          anything is persisted (400 otherwise).
        - Stores a fresh state server-side and sets the one-time `statecookie`.
        - Adds `Cache-Control: private, no-store` to the 302.
    Permissions:
        Public.
    """
    flow = _flow(request)
    target = return_to or _default_return_url(flow.cfg.callback_url)
    login = flow.initiate_login(target)
    resp = RedirectResponse(url=login.url, status_code=302, headers=dict(NO_STORE))
    set_cookies(resp, [login.state_cookie])
    return resp


@auth_router.get("/auth/callback")
def auth_callback(request: Request, code: str | None = None, state: str | None = None):
    """
    Handle the IdP redirect: validate state, exchange code, verify ID token.

    On success sets the session and xsrf cookies, clears `statecookie` and
    redirects (302) to the return URL stored with the state.
    """
    flow = _flow(request)
    ctx = request_context(request)
    state_cookie = ctx.cookie(STATE_COOKIE_NAME)
    if state_cookie is None:
        # Absent cookie is a 401 regardless of the query (IdP error redirects carry no code).
        flow.validate_state(None, state or "", ctx.client_address)
    if not code or not state:
        return JSONResponse({"error": "invalid_code_or_state"}, status_code=400, headers=dict(NO_STORE))
    result = flow.handle_callback(
        code=code,
        state=state,
        state_cookie=state_cookie,
        client_address=ctx.client_address,
    )
    logger.info("Login succeeded for sub=%s", result.user.sub)
    resp = RedirectResponse(url=result.return_url or "/", status_code=302, headers=dict(NO_STORE))
    set_cookies(resp, result.cookies)
    return resp


@auth_router.get("/auth/logout")
async def auth_logout(request: Request):
    """
    Tear down the server-side session and clear session/xsrf cookies.

    Never fails: a missing or unknown session still yields the redirect.
    """
    cookies = _flow(request).logout(request_context(request))
    resp = RedirectResponse(url="/", status_code=302, headers=dict(NO_STORE))
    set_cookies(resp, cookies)
    return resp
