"""
Relying-party configuration for the identity_access bounded context.

Why: Keep the recognized options (IdP domain, client credentials, cookie name,
session lifetime, return-URL whitelist) in one immutable object so the login
flow, the guards and the web adapter read the same values.

Security: The client secret is only ever sent to the IdP token endpoint. It is
never logged and never placed into a cookie or redirect URL.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping, Optional
import os

DEFAULT_SESSION_COOKIE_NAME = "session"
DEFAULT_SESSION_TTL_SECONDS = 3600
DEFAULT_STATE_TTL_SECONDS = 300


@dataclass(frozen=True)
class AuthConfig:
    auth_domain: str  # e.g., tenant.eu.auth0.com (no scheme)
    client_id: str
    client_secret: str
    callback_url: str  # e.g., https://app.example.com/auth/callback
    cookie_name: str = DEFAULT_SESSION_COOKIE_NAME
    session_ttl_seconds: int = DEFAULT_SESSION_TTL_SECONDS
    return_url_whitelist: frozenset[str] = field(default_factory=frozenset)
    secure_cookies: bool = True
    state_ttl_seconds: int = DEFAULT_STATE_TTL_SECONDS
    issuer_override: Optional[str] = None

    @property
    def base_url(self) -> str:
        return f"https://{self.auth_domain}"

    @property
    def issuer(self) -> str:
        # The IdP publishes its issuer with a trailing slash.
        return self.issuer_override or f"{self.base_url}/"

    @property
    def authorize_endpoint(self) -> str:
        return f"{self.base_url}/authorize"

    @property
    def token_endpoint(self) -> str:
        return f"{self.base_url}/oauth/token"

    @property
    def jwks_endpoint(self) -> str:
        return f"{self.base_url}/.well-known/jwks.json"

    def is_whitelisted_host(self, host: Optional[str]) -> bool:
        if not host:
            return False
        return host.lower() in self.return_url_whitelist


def _parse_hosts(raw: Optional[str]) -> frozenset[str]:
    """Parse a comma-separated host list; blanks are ignored, hosts lowercased."""
    if not raw:
        return frozenset()
    return frozenset(part.strip().lower() for part in raw.split(",") if part.strip())


def _parse_int(raw: Optional[str], default: int, var_name: str) -> int:
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError as exc:
        raise ValueError(f"{var_name} must be an integer") from exc


def _parse_bool(raw: Optional[str], default: bool) -> bool:
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def load_auth_config(environ: Mapping[str, str] | None = None) -> AuthConfig:
    """Build an `AuthConfig` from environment variables.

    Parameters
    ----------
    environ:
        Mapping to read from; defaults to `os.environ`. Tests pass a plain dict.

    Raises
    ------
    ValueError:
        When a numeric option cannot be parsed.
    """
    env = os.environ if environ is None else environ
    return AuthConfig(
        auth_domain=env.get("AUTH_DOMAIN", "localhost"),
        client_id=env.get("AUTH_CLIENT_ID", ""),
        client_secret=env.get("AUTH_CLIENT_SECRET", ""),
        callback_url=env.get("AUTH_CALLBACK_URL", "https://app.localhost/auth/callback"),
        cookie_name=env.get("SESSION_COOKIE_NAME", DEFAULT_SESSION_COOKIE_NAME) or DEFAULT_SESSION_COOKIE_NAME,
        session_ttl_seconds=_parse_int(env.get("SESSION_TTL_SECONDS"), DEFAULT_SESSION_TTL_SECONDS, "SESSION_TTL_SECONDS"),
        return_url_whitelist=_parse_hosts(env.get("RETURN_URL_WHITELIST")),
        secure_cookies=_parse_bool(env.get("SECURE_COOKIES"), True),
        state_ttl_seconds=_parse_int(env.get("STATE_TTL_SECONDS"), DEFAULT_STATE_TTL_SECONDS, "STATE_TTL_SECONDS"),
        issuer_override=(env.get("AUTH_ISSUER") or None),
    )
