"""
auth/sessions.py -- Server-side session lifecycle.

A session is the revocable half of a bearer token: the token proves identity
on its own, the session lets the server take that proof back before the
token's natural expiry.

  Active  -> expires_at in the future; returned by lookups
  Expired -> expires_at passed; invisible to lookups, still stored until swept
  Revoked -> row deleted (logout, logout-all, deactivation)

Expiry is checked at query time, never proactively. sweep_expired() reclaims
storage and runs at startup and on a timer (see api/main.py).

The session TTL mirrors the token TTL so a valid token never outlives its
session (or vice versa) under normal operation.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError

from auth.models import Session
from auth.store import AccountStore
from auth.tokens import hash_token
from core.errors import TransientStoreError

logger = logging.getLogger("outr.sessions")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionManager:
    """Creates, looks up, refreshes and revokes session records."""

    def __init__(
        self,
        store: AccountStore,
        ttl_seconds: int = 7 * 24 * 60 * 60,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def create(
        self,
        user_id: int,
        token_hash: str,
        ip_address: str | None,
        user_agent: str | None,
        ttl_seconds: int | None = None,
        conn: Connection | None = None,
    ) -> str:
        """Store a new session for `token_hash` and return its opaque id."""
        session_id = uuid.uuid4().hex
        now = self._clock()
        ttl = ttl_seconds if ttl_seconds is not None else self.ttl_seconds
        self.store.insert_session(
            session_id,
            user_id,
            token_hash,
            ip_address,
            user_agent,
            expires_at=now + timedelta(seconds=ttl),
            now=now,
            conn=conn,
        )
        return session_id

    def lookup(self, session_id: str) -> Session | None:
        """Return the session, or None if it is absent or expired."""
        return self.store.find_session(session_id, now=self._clock())

    def lookup_by_token(self, token: str) -> Session | None:
        """Return the live session linked to a raw bearer token, if any."""
        return self.store.find_session_by_token_hash(hash_token(token), now=self._clock())

    def touch(self, session_id: str) -> None:
        """Refresh last_used_at. Best-effort: failures are logged, never raised."""
        try:
            self.store.touch_session(session_id, now=self._clock())
        except (SQLAlchemyError, TransientStoreError) as e:
            logger.warning("Could not touch session %s: %s", session_id[:8], e)

    def revoke(self, session_id: str, conn: Connection | None = None) -> bool:
        """Delete the session. Idempotent: revoking an absent session returns False."""
        return self.store.delete_session(session_id, conn=conn)

    def revoke_token(self, token: str, conn: Connection | None = None) -> bool:
        """Delete the session linked to a raw bearer token. Idempotent."""
        return self.store.delete_session_by_token_hash(hash_token(token), conn=conn)

    def revoke_all(self, user_id: int, conn: Connection | None = None) -> int:
        """Delete every session owned by `user_id`. Returns the number removed."""
        return self.store.delete_sessions_for_user(user_id, conn=conn)

    def sweep_expired(self) -> int:
        """Delete all sessions past expiry. Returns the number removed."""
        count = self.store.sweep_expired_sessions(now=self._clock())
        if count:
            logger.info("Swept %d expired sessions", count)
        return count
