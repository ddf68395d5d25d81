"""
Minimal OIDC client: authorization URL and code-for-token exchange.

Why: Keep web framework independent protocol code in a separate module. The
login flow calls into this client to build the IdP redirect and to exchange
the authorization code for tokens.

Security: The token exchange carries the client secret and therefore happens
server-side only. Raw IdP payloads end up on `UpstreamFailure` for logging and
are never returned to the browser.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional
from urllib.parse import urlencode
import json

# Small indirection to ease monkeypatching in tests
import requests as http

from .config import AuthConfig
from .errors import UpstreamFailure

SCOPE = "openid profile email"
INVALID_RESPONSE = "Invalid response from IdP"


def http_post(url: str, json_body: Dict[str, Any], headers: Dict[str, str]):
    return http.post(url, json=json_body, headers=headers, timeout=5)


@dataclass(frozen=True)
class TokenRequest:
    grant_type: str
    client_id: str
    client_secret: str
    code: str
    redirect_uri: str

    def to_json(self) -> Dict[str, str]:
        return asdict(self)


@dataclass(frozen=True)
class TokenResponse:
    access_token: str
    expires_in: int
    id_token: str
    token_type: str

    @classmethod
    def from_json(cls, body: str) -> "TokenResponse":
        """Decode the token endpoint body; raises ValueError on any mismatch."""
        data = json.loads(body)
        if not isinstance(data, dict):
            raise ValueError("token response is not an object")
        try:
            access_token = data["access_token"]
            expires_in = data["expires_in"]
            id_token = data["id_token"]
            token_type = data["token_type"]
        except KeyError as exc:
            raise ValueError(f"missing field {exc.args[0]}") from exc
        if not all(isinstance(v, str) for v in (access_token, id_token, token_type)):
            raise ValueError("token fields must be strings")
        if isinstance(expires_in, bool) or not isinstance(expires_in, int):
            raise ValueError("expires_in must be an integer")
        return cls(access_token=access_token, expires_in=expires_in, id_token=id_token, token_type=token_type)


def build_authorization_url(cfg: AuthConfig, *, state: str, callback_url: Optional[str] = None) -> str:
    """Return the IdP authorization URL for the configured client.

    Parameters
    - state: Opaque anti-CSRF value echoed back by the IdP on the callback
    - callback_url: Where the IdP sends the browser; defaults to the configured one
    """
    params = {
        "client_id": cfg.client_id,
        "redirect_uri": callback_url or cfg.callback_url,
        "scope": SCOPE,
        "state": state,
        "response_type": "code",
    }
    return f"{cfg.authorize_endpoint}?{urlencode(params)}"


class OIDCClient:
    def __init__(self, config: AuthConfig):
        self.cfg = config

    def exchange_code_for_tokens(self, *, code: str, redirect_uri: Optional[str] = None) -> TokenResponse:
        """Exchange an authorization code for tokens at the token endpoint.

        Raises UpstreamFailure when the call fails, the status is not 200, the
        body is empty or it does not decode into a TokenResponse.
        """
        payload = TokenRequest(
            grant_type="authorization_code",
            client_id=self.cfg.client_id,
            client_secret=self.cfg.client_secret,
            code=code,
            redirect_uri=redirect_uri or self.cfg.callback_url,
        )
        headers = {"Content-Type": "application/json; charset=utf-8"}
        try:
            resp = http_post(self.cfg.token_endpoint, json_body=payload.to_json(), headers=headers)
        except http.RequestException as exc:
            raise UpstreamFailure(INVALID_RESPONSE, detail=f"{exc.__class__.__name__}: {exc}") from exc

        body = resp.text or ""
        if resp.status_code != 200:
            raise UpstreamFailure(INVALID_RESPONSE, detail=f"status={resp.status_code}", payload=body)
        if not body.strip():
            raise UpstreamFailure(INVALID_RESPONSE, detail="No data received from IdP")
        try:
            return TokenResponse.from_json(body)
        except ValueError as exc:
            raise UpstreamFailure(INVALID_RESPONSE, detail=f"Error parsing token from IdP: {exc}", payload=body) from exc


__all__ = ["SCOPE", "TokenRequest", "TokenResponse", "build_authorization_url", "OIDCClient", "http_post"]
