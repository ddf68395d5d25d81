"""
ID token verification for the identity_access bounded context.

Why: Keep cryptographic validation of ID tokens outside the login flow and the
web adapter so it can be unit tested on its own and the key source swapped.

Security: Checks, in this order, the RS256 signature against the IdP's
published key (resolved by `kid`), the issuer, the audience and the expiry.
Callers only ever see one verification failure; the specific reason is carried
on the exception for logs and tests.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Protocol
import json
import threading
import time

import requests
from jose import jwt
from jose.exceptions import JOSEError
from jose.utils import base64url_decode

RS256 = "RS256"

# Claims mapped onto dedicated fields; everything else lands in `profile`.
_STANDARD_CLAIMS = frozenset(
    {"sub", "iss", "aud", "exp", "iat", "nbf", "email", "email_verified", "name", "nickname", "picture"}
)


class TokenVerificationError(Exception):
    """Raised when the ID token fails verification."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


@dataclass(frozen=True)
class OidcAuthenticatedUser:
    sub: str
    issuer: str
    audience: str
    expires_at: int
    email: Optional[str] = None
    email_verified: Optional[bool] = None
    name: Optional[str] = None
    nickname: Optional[str] = None
    picture: Optional[str] = None
    profile: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    @classmethod
    def from_claims(cls, claims: Mapping[str, Any], *, audience: str) -> "OidcAuthenticatedUser":
        extra = {k: v for k, v in claims.items() if k not in _STANDARD_CLAIMS}
        return cls(
            sub=str(claims.get("sub") or ""),
            issuer=str(claims.get("iss") or ""),
            audience=audience,
            expires_at=int(claims["exp"]),
            email=claims.get("email"),
            email_verified=claims.get("email_verified"),
            name=claims.get("name"),
            nickname=claims.get("nickname"),
            picture=claims.get("picture"),
            profile=MappingProxyType(extra),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sub": self.sub,
            "issuer": self.issuer,
            "audience": self.audience,
            "expires_at": self.expires_at,
            "email": self.email,
            "email_verified": self.email_verified,
            "name": self.name,
            "nickname": self.nickname,
            "picture": self.picture,
            "profile": dict(self.profile),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "OidcAuthenticatedUser":
        values = dict(data)
        values["profile"] = MappingProxyType(dict(values.get("profile") or {}))
        return cls(**values)


def _decode_segment(value: str) -> str:
    """Base64url-decode a JWT segment; malformed input yields ''."""
    try:
        return base64url_decode(value.encode("ascii")).decode("utf-8")
    except (ValueError, UnicodeError):
        return ""


def decode_token_header(token: str) -> Dict[str, Any]:
    """Return the unverified JOSE header, or {} when it cannot be decoded."""
    raw = _decode_segment(token.split(".", 1)[0]) if isinstance(token, str) else ""
    if not raw:
        return {}
    try:
        header = json.loads(raw)
    except ValueError:
        return {}
    return header if isinstance(header, dict) else {}


class KeyProvider(Protocol):
    def get(self, kid: str) -> Dict[str, Any]:
        """Return the JWK for `kid`; raise TokenVerificationError if unknown."""
        ...


def http_get(url: str):
    return requests.get(url, timeout=5)


class JWKSKeyProvider:
    """Fetch and cache the IdP's published key set.

    Unknown `kid` values trigger one refetch (key rotation) before failing.
    """

    def __init__(self, jwks_url: str, ttl_seconds: int = 300):
        self.jwks_url = jwks_url
        self.ttl_seconds = ttl_seconds
        self._jwks: Dict[str, Any] | None = None
        self._expires_at = 0.0
        self._lock = threading.Lock()

    def get(self, kid: str) -> Dict[str, Any]:
        key = _find_key(self._load(force=False), kid)
        if key is None:
            key = _find_key(self._load(force=True), kid)
        if key is None:
            raise TokenVerificationError("unknown_kid")
        return key

    def _load(self, *, force: bool) -> Dict[str, Any]:
        with self._lock:
            now = time.time()
            if not force and self._jwks is not None and self._expires_at > now:
                return self._jwks
            jwks = self._fetch()
            self._jwks = jwks
            self._expires_at = now + self.ttl_seconds
            return jwks

    def _fetch(self) -> Dict[str, Any]:
        try:
            resp = http_get(self.jwks_url)
        except requests.RequestException as exc:
            raise TokenVerificationError("jwks_fetch_failed") from exc
        if resp.status_code != 200:
            raise TokenVerificationError("jwks_fetch_failed")
        try:
            jwks = resp.json()
        except ValueError as exc:
            raise TokenVerificationError("jwks_invalid") from exc
        if not isinstance(jwks, dict) or not isinstance(jwks.get("keys"), list):
            raise TokenVerificationError("jwks_invalid")
        return jwks


def _find_key(jwks: Dict[str, Any], kid: str) -> Dict[str, Any] | None:
    for key in jwks.get("keys", []):
        if isinstance(key, dict) and key.get("kid") == kid:
            return key
    return None


def _audience_matches(aud: object, expected: str) -> bool:
    if isinstance(aud, str):
        return aud == expected
    if isinstance(aud, list):
        return expected in aud
    return False


def verify_id_token(
    id_token: str,
    public_key: Mapping[str, Any] | str,
    *,
    issuer: str,
    audience: str,
    now: float | None = None,
) -> Dict[str, Any]:
    """Verify an ID token and return its claims.

    Parameters
    ----------
    id_token:
        The raw JWT returned by the IdP.
    public_key:
        JWK dict (or PEM string) of the signing key.
    issuer, audience:
        Expected `iss` and `aud` (the configured domain and client id).
    now:
        Current epoch seconds; defaults to `time.time()`.

    Raises
    ------
    TokenVerificationError:
        reason is one of invalid_signature, invalid_issuer, invalid_audience,
        expired, malformed_token.
    """
    try:
        # Claims are checked below so the order and the reported reason are ours.
        claims = jwt.decode(
            id_token,
            public_key,
            algorithms=[RS256],
            options={
                "verify_signature": True,
                "verify_aud": False,
                "verify_iss": False,
                "verify_exp": False,
                "verify_iat": False,
                "verify_nbf": False,
                "verify_sub": False,
                "verify_jti": False,
                "verify_at_hash": False,
            },
        )
    except JOSEError as exc:
        raise TokenVerificationError("invalid_signature") from exc

    if claims.get("iss") != issuer:
        raise TokenVerificationError("invalid_issuer")
    if not _audience_matches(claims.get("aud"), audience):
        raise TokenVerificationError("invalid_audience")
    exp = claims.get("exp")
    if not isinstance(exp, (int, float)) or isinstance(exp, bool):
        raise TokenVerificationError("malformed_token")
    current = time.time() if now is None else now
    if exp <= current:
        raise TokenVerificationError("expired")
    return claims


class TokenVerifier:
    """Resolve the signing key by `kid` and verify the ID token."""

    def __init__(self, key_provider: KeyProvider, *, issuer: str, audience: str):
        self.key_provider = key_provider
        self.issuer = issuer
        self.audience = audience

    def verify(self, id_token: str) -> OidcAuthenticatedUser:
        header = decode_token_header(id_token)
        if not header:
            raise TokenVerificationError("malformed_header")
        kid = header.get("kid")
        if not isinstance(kid, str) or not kid:
            raise TokenVerificationError("missing_kid")
        key = self.key_provider.get(kid)
        claims = verify_id_token(id_token, key, issuer=self.issuer, audience=self.audience)
        return OidcAuthenticatedUser.from_claims(claims, audience=self.audience)


__all__ = [
    "TokenVerificationError",
    "OidcAuthenticatedUser",
    "decode_token_header",
    "KeyProvider",
    "JWKSKeyProvider",
    "verify_id_token",
    "TokenVerifier",
]
