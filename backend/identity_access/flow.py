"""
Login flow controller: initiate login and handle the IdP callback.

Why: The callback is a chain of checks where each step may end the request
(missing cookie, replayed state, bad upstream answer, bad token, unknown
user). Each step raises an `AuthFailure`; the web adapter turns it into a
response. Collaborators (stores, token client, verifier, user lookup) are
injected so tests can replace them with deterministic fakes.

Security:
- The return URL host is checked against the whitelist before anything else
  happens (open-redirect defense).
- The state record is removed by the same read that fetches it, so a state
  value can validate at most one callback.
- The state cookie absence check precedes the state value check.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Generic, List, Mapping, Optional, Protocol, TypeVar
from urllib.parse import urlparse
import time

from .config import AuthConfig
from .cookies import STATE_BYTES, STATE_COOKIE_NAME, XSRF_COOKIE_NAME, CookieFactory, CookieSpec, random_token
from .errors import LookupFailure, ProtocolViolation, UpstreamFailure, VerificationFailure
from .events import AuthObserver, LoggingObserver
from .guards import RequestContext
from .oidc import TokenResponse, build_authorization_url
from .stores import SessionRecord, SessionStore, StateRecord, StateStore
from .tokens import OidcAuthenticatedUser, TokenVerificationError

U = TypeVar("U")


class TokenExchanger(Protocol):
    def exchange_code_for_tokens(self, *, code: str, redirect_uri: Optional[str] = None) -> TokenResponse:
        ...


class IdTokenVerifier(Protocol):
    def verify(self, id_token: str) -> OidcAuthenticatedUser:
        ...


@dataclass(frozen=True)
class LoginRedirect:
    url: str
    state_cookie: CookieSpec


@dataclass(frozen=True)
class LoginResult(Generic[U]):
    user: OidcAuthenticatedUser
    app_user: U
    session: SessionRecord
    return_url: Optional[str]
    session_cookie: CookieSpec
    xsrf_cookie: CookieSpec
    clear_state_cookie: CookieSpec
    data: Mapping[str, Any] = field(default_factory=dict)

    @property
    def cookies(self) -> List[CookieSpec]:
        return [self.session_cookie, self.xsrf_cookie, self.clear_state_cookie]


class LoginFlow(Generic[U]):
    def __init__(
        self,
        config: AuthConfig,
        *,
        state_store: StateStore,
        session_store: SessionStore,
        token_client: TokenExchanger,
        verifier: IdTokenVerifier,
        lookup: Callable[[OidcAuthenticatedUser], Optional[U]],
        observer: AuthObserver | None = None,
        cookies: CookieFactory | None = None,
    ):
        self.cfg = config
        self.states = state_store
        self.sessions = session_store
        self.token_client = token_client
        self.verifier = verifier
        self.lookup = lookup
        self.observer = observer or LoggingObserver()
        self.cookies = cookies or CookieFactory(config)

    def is_return_url_whitelisted(self, return_url: str) -> bool:
        try:
            host = urlparse(return_url).hostname
        except ValueError:
            return False
        return self.cfg.is_whitelisted_host(host)

    def initiate_login(self, return_url: str, data: Dict[str, Any] | None = None) -> LoginRedirect:
        """Persist a fresh state and return the IdP redirect plus the state cookie.

        Raises ProtocolViolation when the return URL host is not whitelisted;
        in that case no state record and no cookie exist.
        """
        if not self.is_return_url_whitelisted(return_url):
            raise ProtocolViolation("Return url not allowed", code="return_url_not_allowed")

        state = random_token(STATE_BYTES)
        state_cookie = self.cookies.state_cookie()
        record = StateRecord(state=state, return_url=return_url, data=dict(data or {}))
        self.states.put_state(state_cookie.value, record, self.cfg.state_ttl_seconds)
        url = build_authorization_url(self.cfg, state=state, callback_url=self.cfg.callback_url)
        return LoginRedirect(url=url, state_cookie=state_cookie)

    def validate_state(self, state_cookie: Optional[str], state: str, client_address: Optional[str] = None) -> StateRecord:
        if state_cookie is None:
            raise ProtocolViolation("State cookie missing", code="state_cookie_missing", status_code=401)
        record = self.states.pop_state(state_cookie)
        if record is None:
            self.observer.invalid_state(client_address)
            raise ProtocolViolation("Invalid state, possible csrf-attack", code="invalid_state")
        if state != record.state:
            self.observer.state_mismatch(client_address)
            raise ProtocolViolation("Illegal state value", code="illegal_state")
        return record

    def verify_tokens(self, tokens: TokenResponse) -> OidcAuthenticatedUser:
        try:
            return self.verifier.verify(tokens.id_token)
        except TokenVerificationError as exc:
            self.observer.verification_failed(exc.reason)
            raise VerificationFailure(reason=exc.reason) from exc

    def handle_callback(
        self,
        code: str,
        state: str,
        state_cookie: Optional[str],
        client_address: Optional[str] = None,
    ) -> LoginResult[U]:
        record = self.validate_state(state_cookie, state, client_address)

        try:
            tokens = self.token_client.exchange_code_for_tokens(code=code, redirect_uri=self.cfg.callback_url)
        except UpstreamFailure as exc:
            self.observer.upstream_failure(exc.detail, exc.payload)
            raise

        user = self.verify_tokens(tokens)

        app_user = self.lookup(user)
        if app_user is None:
            self.observer.user_not_recognized(user.sub)
            raise LookupFailure("User not recognized", code="user_not_recognized")

        session_cookie = self.cookies.session_cookie()
        now = int(time.time())
        session = SessionRecord(
            session_id=session_cookie.value,
            user=user,
            created_at=now,
            expires_at=now + self.cfg.session_ttl_seconds,
        )
        self.sessions.put_session(session_cookie.value, session, self.cfg.session_ttl_seconds)
        return LoginResult(
            user=user,
            app_user=app_user,
            session=session,
            return_url=record.return_url,
            session_cookie=session_cookie,
            xsrf_cookie=self.cookies.xsrf_cookie(),
            clear_state_cookie=self.cookies.expired(STATE_COOKIE_NAME),
            data=record.data,
        )

    def logout(self, request: RequestContext) -> List[CookieSpec]:
        """Drop the server-side session (if any) and return clearing cookies."""
        sid = request.cookie(self.cfg.cookie_name)
        if sid:
            self.sessions.delete_session(sid)
        return [
            self.cookies.expired(self.cfg.cookie_name, same_site="strict"),
            self.cookies.expired(XSRF_COOKIE_NAME, http_only=False),
        ]


__all__ = ["LoginFlow", "LoginRedirect", "LoginResult", "TokenExchanger", "IdTokenVerifier"]
