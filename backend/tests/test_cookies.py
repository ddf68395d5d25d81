"""
Cookie policy and random token tests.

Covered:
- Tokens are hex, decode back to their byte length and never collide.
- Session cookie: HttpOnly + SameSite=Strict; xsrf cookie: script-readable +
  SameSite=Lax; both share the session TTL and carry Secure on TLS deployments.
"""

from __future__ import annotations

import dataclasses

import pytest

from identity_access.cookies import (
    SESSION_ID_BYTES,
    STATE_BYTES,
    STATE_COOKIE_NAME,
    XSRF_COOKIE_NAME,
    XSRF_TOKEN_BYTES,
    CookieFactory,
    random_token,
)


@pytest.mark.parametrize("size", [SESSION_ID_BYTES, STATE_BYTES, XSRF_TOKEN_BYTES, 1])
def test_random_token_decodes_to_requested_length(size):
    token = random_token(size)
    assert len(token) == 2 * size
    assert len(bytes.fromhex(token)) == size


def test_random_tokens_do_not_collide():
    tokens = {random_token(STATE_BYTES) for _ in range(10_000)}
    assert len(tokens) == 10_000


@pytest.mark.parametrize("size", [0, -1])
def test_random_token_rejects_non_positive_length(size):
    with pytest.raises(ValueError):
        random_token(size)


def test_session_cookie_attributes(auth_config):
    cookie = CookieFactory(auth_config).session_cookie()
    assert cookie.name == "app_session"
    assert cookie.http_only is True
    assert cookie.same_site == "strict"
    assert cookie.secure is True
    assert cookie.path == "/"
    assert cookie.max_age == auth_config.session_ttl_seconds
    assert len(bytes.fromhex(cookie.value)) == SESSION_ID_BYTES


def test_xsrf_cookie_is_readable_by_script(auth_config):
    cookie = CookieFactory(auth_config).xsrf_cookie()
    assert cookie.name == XSRF_COOKIE_NAME
    assert cookie.http_only is False
    assert cookie.same_site == "lax"
    assert cookie.max_age == auth_config.session_ttl_seconds
    assert len(bytes.fromhex(cookie.value)) == XSRF_TOKEN_BYTES


def test_secure_flag_follows_deployment(auth_config):
    plain = CookieFactory(dataclasses.replace(auth_config, secure_cookies=False))
    assert plain.session_cookie().secure is False
    assert plain.xsrf_cookie().secure is False


def test_state_cookie_uses_state_ttl(auth_config):
    cookie = CookieFactory(auth_config).state_cookie()
    assert cookie.name == STATE_COOKIE_NAME
    assert cookie.http_only is True
    assert cookie.max_age == auth_config.state_ttl_seconds


def test_fresh_values_per_cookie(auth_config):
    factory = CookieFactory(auth_config)
    assert factory.session_cookie().value != factory.session_cookie().value
    assert factory.xsrf_cookie().value != factory.xsrf_cookie().value


def test_expired_cookie_clears_value(auth_config):
    cookie = CookieFactory(auth_config).expired(STATE_COOKIE_NAME)
    kwargs = cookie.to_set_cookie_kwargs()
    assert kwargs["key"] == STATE_COOKIE_NAME
    assert kwargs["value"] == ""
    assert kwargs["max_age"] == 0
