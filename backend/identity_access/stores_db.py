"""
Database-backed session and state stores for production use (Postgres).

Why: In-memory stores are not durable and do not work across instances. These
stores keep sessions and pending-login states in Postgres while the cookies
stay opaque.

Security:
- State consumption is one `DELETE ... RETURNING` statement; Postgres row
  locking guarantees that two concurrent callbacks presenting the same state
  cannot both receive the record.
- Expired rows are filtered in SQL (`expires_at > now()`), so an expired entry
  is indistinguishable from a missing one.
- Use a dedicated login role; the application tables must not be reachable
  from anonymous clients.
"""
from __future__ import annotations

from typing import Optional
import os
import re
import time

import psycopg
from psycopg import sql
from psycopg.types.json import Json

from .stores import SessionRecord, StateRecord
from .tokens import OidcAuthenticatedUser

_TABLE_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}(?:\.[A-Za-z_][A-Za-z0-9_]{0,62})?$")


def _now() -> int:
    return int(time.time())


def _resolve_dsn(dsn: str | None) -> str:
    value = dsn or os.getenv("SESSION_DATABASE_URL") or os.getenv("DATABASE_URL", "")
    if not value:
        raise RuntimeError("No database DSN provided (SESSION_DATABASE_URL or DATABASE_URL)")
    return value


class _PgStore:
    def __init__(self, dsn: str | None, table: str) -> None:
        self._dsn = _resolve_dsn(dsn)
        # Identifiers cannot be bound as parameters; validate early.
        if not _TABLE_NAME.match(table or ""):
            raise ValueError("Invalid table name")
        self._table = table

    def _stmt(self, template: str):
        if "." in self._table:
            schema, name = self._table.split(".", 1)
        else:
            schema, name = "public", self._table
        return sql.SQL(template).format(sql.Identifier(schema), sql.Identifier(name))


class DBSessionStore(_PgStore):
    """Sessions keyed by the session cookie content.

    Parameters
    ----------
    dsn:
        Psycopg3 connection string; falls back to SESSION_DATABASE_URL, then
        DATABASE_URL.
    table:
        Table name, optionally schema-qualified. Defaults to `public.app_sessions`.
    """

    def __init__(self, dsn: str | None = None, table: str = "public.app_sessions") -> None:
        super().__init__(dsn, table)

    def put_session(self, key: str, record: SessionRecord, ttl_seconds: int) -> None:
        with psycopg.connect(self._dsn, autocommit=True) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    self._stmt(
                        "insert into {}.{} (session_id, user_claims, created_at, expires_at) "
                        "values (%s, %s, to_timestamp(%s), to_timestamp(%s)) "
                        "on conflict (session_id) do update set user_claims = excluded.user_claims, "
                        "expires_at = excluded.expires_at"
                    ),
                    (key, Json(record.user.to_dict()), record.created_at, record.created_at + ttl_seconds),
                )

    def get_session(self, key: str) -> Optional[SessionRecord]:
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    self._stmt(
                        "select session_id, user_claims, extract(epoch from created_at)::bigint, "
                        "extract(epoch from expires_at)::bigint "
                        "from {}.{} where session_id = %s and expires_at > now()"
                    ),
                    (key,),
                )
                row = cur.fetchone()
        if not row:
            return None
        return SessionRecord(
            session_id=row[0],
            user=OidcAuthenticatedUser.from_dict(row[1]),
            created_at=int(row[2]),
            expires_at=int(row[3]),
        )

    def delete_session(self, key: str) -> None:
        with psycopg.connect(self._dsn, autocommit=True) as conn:
            with conn.cursor() as cur:
                cur.execute(self._stmt("delete from {}.{} where session_id = %s"), (key,))


class DBStateStore(_PgStore):
    """Pending-login states keyed by the state cookie content."""

    def __init__(self, dsn: str | None = None, table: str = "public.app_login_states") -> None:
        super().__init__(dsn, table)

    def put_state(self, key: str, record: StateRecord, ttl_seconds: int) -> None:
        with psycopg.connect(self._dsn, autocommit=True) as conn:
            with conn.cursor() as cur:
                self._purge(cur)
                cur.execute(
                    self._stmt(
                        "insert into {}.{} (state_key, state, return_url, data, expires_at) "
                        "values (%s, %s, %s, %s, to_timestamp(%s))"
                    ),
                    (key, record.state, record.return_url, Json(dict(record.data)), _now() + ttl_seconds),
                )

    def pop_state(self, key: str) -> Optional[StateRecord]:
        with psycopg.connect(self._dsn, autocommit=True) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    self._stmt(
                        "delete from {}.{} where state_key = %s and expires_at > now() "
                        "returning state, return_url, data"
                    ),
                    (key,),
                )
                row = cur.fetchone()
        if not row:
            return None
        return StateRecord(state=row[0], return_url=row[1], data=dict(row[2] or {}))

    def purge_expired(self) -> None:
        """Remove states whose callback never arrived."""
        with psycopg.connect(self._dsn, autocommit=True) as conn:
            with conn.cursor() as cur:
                self._purge(cur)

    def _purge(self, cur) -> None:
        cur.execute(self._stmt("delete from {}.{} where expires_at <= now()"), ())


__all__ = ["DBSessionStore", "DBStateStore"]
