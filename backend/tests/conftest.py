"""
Pytest configuration for backend tests.

Why: Force AnyIO to use the asyncio backend and make `identity_access`, `web`
and the shared IdP test material importable without an install.
"""
from __future__ import annotations

import sys
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[2]
BACKEND_DIR = REPO_ROOT / "backend"
TESTS_DIR = BACKEND_DIR / "tests"
for p in (str(BACKEND_DIR), str(TESTS_DIR)):
    if p not in sys.path:
        sys.path.insert(0, p)

from identity_access.config import AuthConfig  # noqa: E402
from idp_support import TEST_AUDIENCE, TEST_DOMAIN, RecordingObserver  # noqa: E402


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def auth_config() -> AuthConfig:
    return AuthConfig(
        auth_domain=TEST_DOMAIN,
        client_id=TEST_AUDIENCE,
        client_secret="s3cret",
        callback_url="https://app.example.com/auth/callback",
        cookie_name="app_session",
        session_ttl_seconds=3600,
        return_url_whitelist=frozenset({"app.example.com"}),
        secure_cookies=True,
    )


@pytest.fixture
def observer() -> RecordingObserver:
    return RecordingObserver()


@pytest.fixture(autouse=True)
def _clear_app_env(monkeypatch: pytest.MonkeyPatch):
    """Keep env-driven toggles from leaking between tests."""
    for var in ("APP_ENV", "SESSIONS_BACKEND"):
        monkeypatch.delenv(var, raising=False)
    yield
