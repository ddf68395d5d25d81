"""
Login flow tests (initiate login + callback state machine).

Collaborators are deterministic fakes: a scripted token client, a static key
provider around the real TokenVerifier and in-memory stores.
"""

from __future__ import annotations

import re
import threading
import time
from urllib.parse import parse_qs, urlparse

import pytest

from identity_access.cookies import SESSION_ID_BYTES, STATE_COOKIE_NAME, XSRF_COOKIE_NAME
from identity_access.errors import LookupFailure, ProtocolViolation, UpstreamFailure, VerificationFailure
from identity_access.flow import LoginFlow
from identity_access.guards import RequestContext
from identity_access.oidc import TokenResponse
from identity_access.stores import InMemorySessionStore, InMemoryStateStore, StateRecord
from identity_access.tokens import TokenVerifier
from idp_support import TEST_AUDIENCE, TEST_ISSUER, StaticKeyProvider, make_id_token


class FakeTokenClient:
    def __init__(self, id_token: str | None = None, error: Exception | None = None):
        self.id_token = id_token or make_id_token()
        self.error = error
        self.calls: list[tuple[str, str | None]] = []

    def exchange_code_for_tokens(self, *, code: str, redirect_uri: str | None = None) -> TokenResponse:
        self.calls.append((code, redirect_uri))
        if self.error is not None:
            raise self.error
        return TokenResponse(access_token="at", expires_in=86400, id_token=self.id_token, token_type="Bearer")


@pytest.fixture
def states():
    return InMemoryStateStore()


@pytest.fixture
def sessions():
    return InMemorySessionStore()


@pytest.fixture
def token_client():
    return FakeTokenClient()


@pytest.fixture
def make_flow(auth_config, states, sessions, token_client, observer):
    def _make(lookup=lambda user: user, client=None):
        return LoginFlow(
            auth_config,
            state_store=states,
            session_store=sessions,
            token_client=client or token_client,
            verifier=TokenVerifier(StaticKeyProvider(), issuer=TEST_ISSUER, audience=TEST_AUDIENCE),
            lookup=lookup,
            observer=observer,
        )

    return _make


def _state_param(url: str) -> str:
    return parse_qs(urlparse(url).query)["state"][0]


def test_initiate_login_whitelisted_return_url(make_flow, states):
    flow = make_flow()

    login = flow.initiate_login("https://app.example.com/home")

    state = _state_param(login.url)
    assert re.fullmatch(r"[0-9a-f]{32}", state)
    assert login.url.startswith("https://idp.example.com/authorize?")
    assert login.state_cookie.name == STATE_COOKIE_NAME
    record = states.pop_state(login.state_cookie.value)
    assert record == StateRecord(state=state, return_url="https://app.example.com/home", data={})


def test_initiate_login_rejects_foreign_host_before_side_effects(make_flow, states, monkeypatch):
    from identity_access import flow as flow_mod

    def no_randomness(_):
        raise AssertionError("random token generated before whitelist check")

    monkeypatch.setattr(flow_mod, "random_token", no_randomness)
    flow = make_flow()

    with pytest.raises(ProtocolViolation) as exc:
        flow.initiate_login("https://evil.example.org/home")

    assert exc.value.status_code == 400
    assert exc.value.code == "return_url_not_allowed"
    assert len(states) == 0


@pytest.mark.parametrize("url", ["/relative/path", "not a url", "https://app.example.com.evil.org/"])
def test_initiate_login_rejects_urls_without_whitelisted_host(make_flow, url):
    with pytest.raises(ProtocolViolation):
        make_flow().initiate_login(url)


def test_initiate_login_keeps_correlation_data(make_flow, states):
    login = make_flow().initiate_login("https://app.example.com/", data={"tab": "billing"})
    assert states.pop_state(login.state_cookie.value).data == {"tab": "billing"}


def test_callback_success_establishes_session(make_flow, sessions, token_client):
    flow = make_flow()
    login = flow.initiate_login("https://app.example.com/home")

    result = flow.handle_callback("good-code", _state_param(login.url), login.state_cookie.value)

    assert result.user.sub == "auth0|123456"
    assert result.return_url == "https://app.example.com/home"
    assert token_client.calls == [("good-code", "https://app.example.com/auth/callback")]
    assert len(bytes.fromhex(result.session_cookie.value)) == SESSION_ID_BYTES
    assert result.xsrf_cookie.name == XSRF_COOKIE_NAME
    assert result.clear_state_cookie.max_age == 0
    stored = sessions.get_session(result.session_cookie.value)
    assert stored is not None
    assert stored.user == result.user
    assert stored.expires_at - stored.created_at == 3600


def test_state_is_single_use(make_flow, observer):
    flow = make_flow()
    login = flow.initiate_login("https://app.example.com/home")
    state = _state_param(login.url)

    flow.handle_callback("good-code", state, login.state_cookie.value)
    with pytest.raises(ProtocolViolation) as exc:
        flow.handle_callback("good-code", state, login.state_cookie.value)

    assert exc.value.code == "invalid_state"
    assert observer.names() == ["invalid_state"]


def test_missing_state_cookie_is_401_not_state_mismatch(make_flow, token_client, observer):
    flow = make_flow()
    flow.initiate_login("https://app.example.com/home")

    with pytest.raises(ProtocolViolation) as exc:
        flow.handle_callback("good-code", "whatever", None)

    assert exc.value.status_code == 401
    assert exc.value.code == "state_cookie_missing"
    assert token_client.calls == []
    assert observer.events == []


def test_unknown_state_cookie_fails_without_token_exchange(make_flow, token_client, observer):
    flow = make_flow()

    with pytest.raises(ProtocolViolation) as exc:
        flow.handle_callback("good-code", "abc", "xyz", client_address="203.0.113.9")

    assert exc.value.status_code == 400
    assert exc.value.code == "invalid_state"
    assert token_client.calls == []
    assert observer.events == [("invalid_state", ("203.0.113.9",))]


def test_state_mismatch_is_logged_with_client_address(make_flow, token_client, observer):
    flow = make_flow()
    login = flow.initiate_login("https://app.example.com/home")

    with pytest.raises(ProtocolViolation) as exc:
        flow.handle_callback("good-code", "0" * 32, login.state_cookie.value, client_address="198.51.100.7")

    assert exc.value.message == "Illegal state value"
    assert exc.value.status_code == 400
    assert observer.events == [("state_mismatch", ("198.51.100.7",))]
    assert token_client.calls == []


def test_mismatch_still_consumes_state(make_flow):
    flow = make_flow()
    login = flow.initiate_login("https://app.example.com/home")
    with pytest.raises(ProtocolViolation):
        flow.handle_callback("good-code", "wrong", login.state_cookie.value)

    with pytest.raises(ProtocolViolation) as exc:
        flow.handle_callback("good-code", _state_param(login.url), login.state_cookie.value)
    assert exc.value.code == "invalid_state"


def test_expired_state_fails(make_flow, states, token_client):
    flow = make_flow()
    states.put_state("cookie-ref", StateRecord(state="s1"), ttl_seconds=-1)

    with pytest.raises(ProtocolViolation) as exc:
        flow.handle_callback("good-code", "s1", "cookie-ref")

    assert exc.value.code == "invalid_state"
    assert token_client.calls == []


def test_upstream_failure_is_reported(make_flow, observer):
    failing = FakeTokenClient(error=UpstreamFailure("Invalid response from IdP", detail="status=500", payload="oops"))
    flow = make_flow(client=failing)
    login = flow.initiate_login("https://app.example.com/home")

    with pytest.raises(UpstreamFailure) as exc:
        flow.handle_callback("good-code", _state_param(login.url), login.state_cookie.value)

    assert exc.value.status_code == 502
    assert observer.events == [("upstream_failure", ("status=500", "oops"))]


@pytest.mark.parametrize(
    "id_token, reason",
    [
        (lambda: make_id_token({"iss": "https://evil.example.com/"}), "invalid_issuer"),
        (lambda: make_id_token({"aud": "other"}), "invalid_audience"),
        (lambda: make_id_token({"exp": int(time.time()) - 60}), "expired"),
        (lambda: make_id_token(header_overrides={"kid": "unknown"}), "unknown_kid"),
        (lambda: "not-a-jwt", "malformed_header"),
    ],
)
def test_verification_failures_collapse_to_one_error(make_flow, observer, sessions, id_token, reason):
    flow = make_flow(client=FakeTokenClient(id_token=id_token()))
    login = flow.initiate_login("https://app.example.com/home")

    with pytest.raises(VerificationFailure) as exc:
        flow.handle_callback("good-code", _state_param(login.url), login.state_cookie.value)

    assert exc.value.status_code == 500
    assert exc.value.message == "Token verification failed"
    assert exc.value.reason == reason
    assert observer.events == [("verification_failed", (reason,))]
    assert len(sessions) == 0


def test_unrecognized_user_gets_no_session(make_flow, observer, sessions):
    flow = make_flow(lookup=lambda user: None)
    login = flow.initiate_login("https://app.example.com/home")

    with pytest.raises(LookupFailure) as exc:
        flow.handle_callback("good-code", _state_param(login.url), login.state_cookie.value)

    assert exc.value.status_code == 401
    assert exc.value.code == "user_not_recognized"
    assert observer.names() == ["user_not_recognized"]
    assert len(sessions) == 0


def test_lookup_result_is_passed_through(make_flow):
    flow = make_flow(lookup=lambda user: {"id": 42, "email": user.email})
    login = flow.initiate_login("https://app.example.com/home")

    result = flow.handle_callback("good-code", _state_param(login.url), login.state_cookie.value)

    assert result.app_user == {"id": 42, "email": "ada@example.com"}


def test_concurrent_callbacks_with_same_state_succeed_once(make_flow):
    flow = make_flow()
    login = flow.initiate_login("https://app.example.com/home")
    state = _state_param(login.url)
    outcomes: list[str] = []
    barrier = threading.Barrier(8)

    def callback():
        barrier.wait()
        try:
            flow.handle_callback("good-code", state, login.state_cookie.value)
            outcomes.append("ok")
        except ProtocolViolation:
            outcomes.append("rejected")

    threads = [threading.Thread(target=callback) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count("ok") == 1
    assert outcomes.count("rejected") == 7


def test_logout_deletes_session_and_clears_cookies(make_flow, sessions, auth_config):
    flow = make_flow()
    login = flow.initiate_login("https://app.example.com/home")
    result = flow.handle_callback("good-code", _state_param(login.url), login.state_cookie.value)

    cookies = flow.logout(RequestContext(cookies={auth_config.cookie_name: result.session_cookie.value}))

    assert sessions.get_session(result.session_cookie.value) is None
    assert {c.name for c in cookies} == {auth_config.cookie_name, XSRF_COOKIE_NAME}
    assert all(c.max_age == 0 and c.value == "" for c in cookies)


def test_logout_without_session_cookie_still_clears(make_flow):
    cookies = make_flow().logout(RequestContext())
    assert len(cookies) == 2
