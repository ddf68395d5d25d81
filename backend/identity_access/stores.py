"""
Session/state store contract and in-memory stores for development.

Why: Keep server-side state (pending-login state, sessions) opaque to the
client. The login flow and the guards only depend on the two protocols below;
`stores_db` provides the Postgres-backed variant for production.

Security: Cookies carry only opaque keys. `pop_state` is a single
lookup-and-invalidate, so a state value can validate at most one callback even
when two callbacks race.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol, Tuple
import threading
import time

from .tokens import OidcAuthenticatedUser


def _now() -> int:
    return int(time.time())


@dataclass(frozen=True)
class StateRecord:
    state: str
    return_url: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SessionRecord:
    session_id: str
    user: OidcAuthenticatedUser
    created_at: int
    expires_at: int


class StateStore(Protocol):
    def put_state(self, key: str, record: StateRecord, ttl_seconds: int) -> None:
        ...

    def pop_state(self, key: str) -> Optional[StateRecord]:
        """Atomically return and remove the live record for `key`."""
        ...


class SessionStore(Protocol):
    def put_session(self, key: str, record: SessionRecord, ttl_seconds: int) -> None:
        ...

    def get_session(self, key: str) -> Optional[SessionRecord]:
        ...

    def delete_session(self, key: str) -> None:
        ...


class InMemoryStateStore:
    def __init__(self):
        self._data: Dict[str, Tuple[StateRecord, int]] = {}
        self._lock = threading.Lock()

    def put_state(self, key: str, record: StateRecord, ttl_seconds: int) -> None:
        with self._lock:
            now = _now()
            # Abandoned logins never reach pop_state; drop them on the next write.
            for stale in [k for k, (_, exp) in self._data.items() if exp <= now]:
                del self._data[stale]
            self._data[key] = (record, now + ttl_seconds)

    def pop_state(self, key: str) -> Optional[StateRecord]:
        with self._lock:
            entry = self._data.pop(key, None)
        if not entry:
            return None
        record, expires_at = entry
        if expires_at <= _now():
            return None
        return record

    def __len__(self) -> int:
        return len(self._data)


class InMemorySessionStore:
    def __init__(self):
        self._data: Dict[str, SessionRecord] = {}
        self._lock = threading.Lock()

    def put_session(self, key: str, record: SessionRecord, ttl_seconds: int) -> None:
        with self._lock:
            now = _now()
            for stale in [k for k, rec in self._data.items() if rec.expires_at <= now]:
                del self._data[stale]
            self._data[key] = record

    def get_session(self, key: str) -> Optional[SessionRecord]:
        with self._lock:
            rec = self._data.get(key)
            if not rec:
                return None
            if rec.expires_at <= _now():
                self._data.pop(key, None)
                return None
            return rec

    def delete_session(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def __len__(self) -> int:
        return len(self._data)


__all__ = [
    "StateRecord",
    "SessionRecord",
    "StateStore",
    "SessionStore",
    "InMemoryStateStore",
    "InMemorySessionStore",
]
