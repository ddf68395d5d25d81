"Relying-party web adapter"
from __future__ import annotations

from typing import Callable, Optional
import logging
import os
import sys

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from identity_access.config import AuthConfig, load_auth_config
from identity_access.errors import AuthFailure
from identity_access.events import AuthObserver, LoggingObserver
from identity_access.flow import IdTokenVerifier, LoginFlow, TokenExchanger
from identity_access.guards import CsrfGuard, RequestAuthenticator
from identity_access.oidc import OIDCClient
from identity_access.stores import InMemorySessionStore, InMemoryStateStore, SessionStore, StateStore
from identity_access.tokens import JWKSKeyProvider, OidcAuthenticatedUser, TokenVerifier
from web.auth_utils import NO_STORE, failure_response, request_context
from web.config import ensure_secure_config_on_startup
from web.routes.auth import auth_router

logger = logging.getLogger("web.main")


def _should_load_dotenv() -> bool:
    """Decide if we should load a local .env file.

    - Never load under pytest to avoid contaminating test env.
    - Allow explicit opt-out via APP_ENABLE_DOTENV (default true outside pytest).
    """
    if "pytest" in sys.modules or os.getenv("PYTEST_CURRENT_TEST"):
        return False
    flag = (os.getenv("APP_ENABLE_DOTENV", "true") or "").strip().lower()
    return flag in ("1", "true", "yes")


def _accept_any_user(user: OidcAuthenticatedUser) -> OidcAuthenticatedUser:
    return user


def _build_stores() -> tuple[StateStore, SessionStore]:
    if os.getenv("SESSIONS_BACKEND", "memory").lower() == "db":
        from identity_access.stores_db import DBSessionStore, DBStateStore

        return DBStateStore(), DBSessionStore()
    return InMemoryStateStore(), InMemorySessionStore()


def create_app(
    config: AuthConfig | None = None,
    *,
    state_store: StateStore | None = None,
    session_store: SessionStore | None = None,
    token_client: TokenExchanger | None = None,
    verifier: IdTokenVerifier | None = None,
    lookup: Callable[[OidcAuthenticatedUser], Optional[object]] | None = None,
    observer: AuthObserver | None = None,
) -> FastAPI:
    """Build the FastAPI app with the login flow and both guards wired.

    Every collaborator can be injected; defaults talk to the configured IdP
    and keep state in memory (or Postgres with SESSIONS_BACKEND=db).
    """
    cfg = config or load_auth_config()
    observer = observer or LoggingObserver()
    if state_store is None or session_store is None:
        default_states, default_sessions = _build_stores()
        # Empty in-memory stores are falsy; compare against None explicitly.
        if state_store is None:
            state_store = default_states
        if session_store is None:
            session_store = default_sessions
    token_client = token_client or OIDCClient(cfg)
    verifier = verifier or TokenVerifier(JWKSKeyProvider(cfg.jwks_endpoint), issuer=cfg.issuer, audience=cfg.client_id)
    lookup = lookup or _accept_any_user

    app = FastAPI(title="OIDC relying party", version="0.1.0")
    app.state.config = cfg
    app.state.login_flow = LoginFlow(
        cfg,
        state_store=state_store,
        session_store=session_store,
        token_client=token_client,
        verifier=verifier,
        lookup=lookup,
        observer=observer,
    )
    app.state.authenticator = RequestAuthenticator(cfg, session_store, lookup=lookup, observer=observer)
    app.state.csrf_guard = CsrfGuard(observer=observer, trusted_origins=cfg.return_url_whitelist)

    @app.exception_handler(AuthFailure)
    async def _auth_failure_handler(request: Request, exc: AuthFailure):
        return failure_response(exc)

    app.include_router(auth_router)

    @app.get("/health")
    async def health_check():
        return {"status": "ok"}

    @app.get("/api/me", dependencies=[Depends(require_app_user)])
    async def get_me(user: OidcAuthenticatedUser = Depends(require_user)):
        return JSONResponse(
            {"sub": user.sub, "email": user.email, "name": user.name, "expires_at": user.expires_at},
            headers=dict(NO_STORE),
        )

    @app.post("/api/xsrf-check", dependencies=[Depends(require_app_user)])
    async def xsrf_check(
        user: OidcAuthenticatedUser = Depends(require_user),
        token: str = Depends(require_xsrf),
    ):
        # Minimal state-changing endpoint protected by session + double-submit cookie.
        return JSONResponse({"ok": True, "sub": user.sub}, headers=dict(NO_STORE))

    return app


def require_user(request: Request) -> OidcAuthenticatedUser:
    """FastAPI dependency: the authenticated principal or a 401 failure."""
    return request.app.state.authenticator.authenticate(request_context(request))


def require_app_user(request: Request, user: OidcAuthenticatedUser = Depends(require_user)):
    """FastAPI dependency: the application user from the lookup, or a 401 failure.

    Runs the lookup on every request so users removed from the application
    lose access before their session expires.
    """
    return request.app.state.authenticator.resolve_app_user(user)


def require_xsrf(request: Request) -> str:
    """FastAPI dependency: the validated x-xsrf-token or a 400 failure."""
    return request.app.state.csrf_guard.check(request_context(request))


def create_default_app() -> FastAPI:
    if _should_load_dotenv():
        from dotenv import load_dotenv

        load_dotenv()
    cfg = load_auth_config()
    ensure_secure_config_on_startup(cfg)
    return create_app(cfg)
