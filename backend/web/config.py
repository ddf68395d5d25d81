"""
Startup security checks for the relying party.

Why: A login flow with a placeholder client secret, plain-http callback or
non-Secure cookies works fine on a laptop and is dangerous in production. This
module provides a single guard that enforces minimal production safety
constraints without burdening local development.

Permissions: The caller needs no special privileges. The function reads the
environment and the loaded `AuthConfig` and raises `SystemExit` on fatal
misconfiguration.
"""
from __future__ import annotations

import os

from identity_access.config import AuthConfig


def _is_prod_like(env: str) -> bool:
    env_l = (env or "").lower()
    return env_l in {"prod", "production", "stage", "staging"}


def app_environment() -> str:
    return (os.getenv("APP_ENV", "dev") or "dev").strip().lower()


def ensure_secure_config_on_startup(cfg: AuthConfig) -> None:
    """Fail fast on insecure production configuration.

    Checks (prod/stage only):
    - AUTH_CLIENT_SECRET is set and not a placeholder.
    - AUTH_CALLBACK_URL uses https.
    - SECURE_COOKIES is not disabled.
    - RETURN_URL_WHITELIST is not empty (otherwise every login is rejected).
    """
    if not _is_prod_like(app_environment()):
        return  # dev/test remain permissive

    secret = (cfg.client_secret or "").strip()
    if not secret or secret.upper().startswith("CHANGE_ME"):
        raise SystemExit("Refusing to start: AUTH_CLIENT_SECRET is unset or a placeholder in production.")

    if not cfg.callback_url.strip().lower().startswith("https://"):
        raise SystemExit("Refusing to start: AUTH_CALLBACK_URL must use https in production.")

    if not cfg.secure_cookies:
        raise SystemExit("Refusing to start: SECURE_COOKIES=false is not allowed in production/staging.")

    if not cfg.return_url_whitelist:
        raise SystemExit("Refusing to start: RETURN_URL_WHITELIST must list at least one host in production.")
