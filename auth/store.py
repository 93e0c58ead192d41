"""
auth/store.py -- SQLAlchemy Core persistence layer for account entities.

Pattern: Repository + Data Mapper. AccountStore is the repository; the
_row_to_* functions are the mappers. Route and service code never touches
SQL directly.

Transactions:
  Every method takes an optional `conn`. Without one, the method runs in its
  own short transaction. With one, it joins the caller's transaction:

      with store.transaction() as conn:
          user = store.insert_user(email, username, pw_hash, conn=conn)
          store.insert_audit_log(user.id, "signup", ip, ua, conn=conn)

  Both statements commit together or not at all.

Case-insensitive identity:
  Emails are lowercased before every write and lookup and carry a plain
  UNIQUE constraint. Usernames keep their original case; a UNIQUE index on
  lower(username) rejects case variants. Either violation raises
  sqlalchemy.exc.IntegrityError, which the service maps to ConflictError.

Failure mapping:
  OperationalError (database locked, unreachable) and pool checkout timeouts
  are re-raised as TransientStoreError. IntegrityError passes through
  untouched.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Sessions hold SHA-256 of the bearer token, never the token itself.

DB path: data/outr.db by default (see core.config.Settings.database_url).

Layer rule: no imports from api/.
"""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from sqlalchemy import (
    Column,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Connection, Engine, make_url
from sqlalchemy.exc import OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from auth.models import AuditLogEntry, Profile, Session, User, UserWithProfile
from core.errors import TransientStoreError

PROFILE_FIELDS = ("bio", "avatar_url", "display_name", "location", "website")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),  # always lowercase
    Column("username", String(64), nullable=False),
    Column("password_hash", Text, nullable=False),
    Column("email_verified", Integer, nullable=False, server_default="0"),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("last_login_at", String(32)),
)
Index("ux_users_username_lower", func.lower(_users.c.username), unique=True)

_profiles = Table(
    "user_profiles",
    metadata,
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("bio", Text),
    Column("avatar_url", Text),
    Column("display_name", String(100)),
    Column("location", String(100)),
    Column("website", Text),
    Column("updated_at", String(32), nullable=False),
)

_sessions = Table(
    "sessions",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, unique=True),  # SHA-256 hex
    Column("ip_address", String(64)),
    Column("user_agent", Text),
    Column("created_at", String(32), nullable=False),
    Column("last_used_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False, index=True),
)

_audit_logs = Table(
    "audit_logs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="SET NULL")),  # NULL = anonymous
    Column("action", String(50), nullable=False),
    Column("ip_address", String(64)),
    Column("user_agent", Text),
    Column("metadata_json", Text),
    Column("created_at", String(32), nullable=False),
)
Index("ix_audit_logs_user_created", _audit_logs.c.user_id, _audit_logs.c.created_at)


# ---------------------------------------------------------------------------
# SQLite connection setup
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable foreign keys and WAL journal mode on every new SQLite connection.

    SQLite PRAGMAs are per-connection and not inherited from the pool, so this
    runs on each connect. WAL lets readers proceed while a writer commits.
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.close()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _iso(dt: datetime) -> str:
    # Fixed-width UTC form so stored timestamps compare correctly as strings.
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _now_iso() -> str:
    return _iso(datetime.now(timezone.utc))


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AccountStore:
    """Repository for users, profiles, sessions and audit log entries.

    Usage:
        store = AccountStore("sqlite:///data/outr.db")
        user = store.insert_user("a@x.com", "alice", hash_password("secret123"))
        store.find_user_by_email("A@X.COM")   # -> same user
        store.close()
    """

    def __init__(self, db_url: str, timeout: float = 5.0) -> None:
        connect_args: dict = {}
        engine_kwargs: dict = {}
        is_sqlite = db_url.startswith("sqlite")
        if is_sqlite:
            connect_args["check_same_thread"] = False
            connect_args["timeout"] = timeout  # busy timeout on locked DB
            database = make_url(db_url).database or ""
            if database and database != ":memory:" and not database.startswith("file:"):
                Path(database).parent.mkdir(parents=True, exist_ok=True)
        else:
            engine_kwargs["pool_timeout"] = timeout
        self.engine: Engine = create_engine(db_url, connect_args=connect_args, **engine_kwargs)
        if is_sqlite:
            event.listen(self.engine, "connect", _set_sqlite_pragmas)
        try:
            metadata.create_all(self.engine)
        except OperationalError as e:
            raise TransientStoreError("Account store unavailable.") from e

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        """Yield a connection inside a transaction; commit on exit, roll back on error."""
        try:
            with self.engine.begin() as conn:
                yield conn
        except (OperationalError, PoolTimeoutError) as e:
            raise TransientStoreError("Account store unavailable.") from e

    @contextmanager
    def _connection(self, conn: Connection | None) -> Iterator[Connection]:
        if conn is not None:
            yield conn
            return
        with self.transaction() as own:
            yield own

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def find_user_by_email(self, email: str, conn: Connection | None = None) -> User | None:
        """Look up a user by email, case-insensitively. Returns None if not found."""
        with self._connection(conn) as c:
            row = c.execute(_users.select().where(_users.c.email == email.strip().lower())).fetchone()
        return _row_to_user(row) if row is not None else None

    def find_user_by_username(self, username: str, conn: Connection | None = None) -> User | None:
        """Look up a user by username, case-insensitively. Returns None if not found."""
        with self._connection(conn) as c:
            row = c.execute(
                _users.select().where(func.lower(_users.c.username) == username.strip().lower())
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def find_user_by_id(self, user_id: int, conn: Connection | None = None) -> User | None:
        with self._connection(conn) as c:
            row = c.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def find_user_with_profile(self, user_id: int, conn: Connection | None = None) -> UserWithProfile | None:
        """Return the user and their profile (None if never written) in one read."""
        with self._connection(conn) as c:
            user = self.find_user_by_id(user_id, conn=c)
            if user is None:
                return None
            profile = self.get_profile(user_id, conn=c)
        return UserWithProfile(user=user, profile=profile)

    def insert_user(self, email: str, username: str, password_hash: str, conn: Connection | None = None) -> User:
        """Insert a new user and return the stored record.

        Raises sqlalchemy.exc.IntegrityError if the email or username (in any
        case) already exists. Callers treat that as a conflict, which also
        covers the race where two signups pass the existence check together.
        """
        now = _now_iso()
        with self._connection(conn) as c:
            result = c.execute(
                _users.insert().values(
                    email=email.strip().lower(),
                    username=username.strip(),
                    password_hash=password_hash,
                    created_at=now,
                    updated_at=now,
                )
            )
            user_id = result.inserted_primary_key[0]
            row = c.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row)

    def update_last_login(self, user_id: int, conn: Connection | None = None) -> None:
        """Stamp the current UTC time as last_login_at (and updated_at, like every user write)."""
        now = _now_iso()
        with self._connection(conn) as c:
            c.execute(_users.update().where(_users.c.id == user_id).values(last_login_at=now, updated_at=now))

    def set_user_active(self, user_id: int, active: bool, conn: Connection | None = None) -> bool:
        """Activate or deactivate a user. Returns False if user_id was not found."""
        with self._connection(conn) as c:
            result = c.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(is_active=1 if active else 0, updated_at=_now_iso())
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    def get_profile(self, user_id: int, conn: Connection | None = None) -> Profile | None:
        with self._connection(conn) as c:
            row = c.execute(_profiles.select().where(_profiles.c.user_id == user_id)).fetchone()
        return _row_to_profile(row) if row is not None else None

    def upsert_profile(self, user_id: int, fields: dict[str, Any], conn: Connection | None = None) -> Profile:
        """Create or replace the user's profile atomically.

        Every profile column is written on each call: fields missing from
        `fields` (or given as empty strings) are stored as NULL. Unknown keys
        raise ValueError.

        Uses the dialect's native INSERT ... ON CONFLICT DO UPDATE so two
        concurrent first writes cannot both insert.
        """
        unknown = set(fields) - set(PROFILE_FIELDS)
        if unknown:
            raise ValueError(f"Unknown profile fields: {sorted(unknown)!r}")
        values = {name: (fields.get(name) or None) for name in PROFILE_FIELDS}
        values["updated_at"] = _now_iso()

        with self._connection(conn) as c:
            dialect = c.dialect.name
            if dialect in ("sqlite", "postgresql"):
                insert = sqlite_insert if dialect == "sqlite" else pg_insert
                stmt = insert(_profiles).values(user_id=user_id, **values)
                stmt = stmt.on_conflict_do_update(index_elements=[_profiles.c.user_id], set_=values)
                c.execute(stmt)
            else:
                result = c.execute(_profiles.update().where(_profiles.c.user_id == user_id).values(**values))
                if result.rowcount == 0:
                    c.execute(_profiles.insert().values(user_id=user_id, **values))
            row = c.execute(_profiles.select().where(_profiles.c.user_id == user_id)).fetchone()
        return _row_to_profile(row)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def insert_session(
        self,
        session_id: str,
        user_id: int,
        token_hash: str,
        ip_address: str | None,
        user_agent: str | None,
        expires_at: datetime,
        now: datetime | None = None,
        conn: Connection | None = None,
    ) -> None:
        created = _iso(now) if now is not None else _now_iso()
        with self._connection(conn) as c:
            c.execute(
                _sessions.insert().values(
                    id=session_id,
                    user_id=user_id,
                    token_hash=token_hash,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    created_at=created,
                    last_used_at=created,
                    expires_at=_iso(expires_at),
                )
            )

    def find_session(
        self, session_id: str, now: datetime | None = None, conn: Connection | None = None
    ) -> Session | None:
        """Return the session if it exists and has not expired at `now`."""
        cutoff = _iso(now) if now is not None else _now_iso()
        with self._connection(conn) as c:
            row = c.execute(
                _sessions.select().where((_sessions.c.id == session_id) & (_sessions.c.expires_at > cutoff))
            ).fetchone()
        return _row_to_session(row) if row is not None else None

    def find_session_by_token_hash(
        self, token_hash: str, now: datetime | None = None, conn: Connection | None = None
    ) -> Session | None:
        """Return the unexpired session linked to a token hash. O(1) via UNIQUE index."""
        cutoff = _iso(now) if now is not None else _now_iso()
        with self._connection(conn) as c:
            row = c.execute(
                _sessions.select().where(
                    (_sessions.c.token_hash == token_hash) & (_sessions.c.expires_at > cutoff)
                )
            ).fetchone()
        return _row_to_session(row) if row is not None else None

    def touch_session(self, session_id: str, now: datetime | None = None, conn: Connection | None = None) -> bool:
        stamp = _iso(now) if now is not None else _now_iso()
        with self._connection(conn) as c:
            result = c.execute(_sessions.update().where(_sessions.c.id == session_id).values(last_used_at=stamp))
        return result.rowcount > 0

    def delete_session(self, session_id: str, conn: Connection | None = None) -> bool:
        with self._connection(conn) as c:
            result = c.execute(_sessions.delete().where(_sessions.c.id == session_id))
        return result.rowcount > 0

    def delete_session_by_token_hash(self, token_hash: str, conn: Connection | None = None) -> bool:
        with self._connection(conn) as c:
            result = c.execute(_sessions.delete().where(_sessions.c.token_hash == token_hash))
        return result.rowcount > 0

    def delete_sessions_for_user(self, user_id: int, conn: Connection | None = None) -> int:
        with self._connection(conn) as c:
            result = c.execute(_sessions.delete().where(_sessions.c.user_id == user_id))
        return result.rowcount

    def sweep_expired_sessions(self, now: datetime | None = None, conn: Connection | None = None) -> int:
        """Delete every session whose expiry has passed. Returns the number removed."""
        cutoff = _iso(now) if now is not None else _now_iso()
        with self._connection(conn) as c:
            result = c.execute(_sessions.delete().where(_sessions.c.expires_at <= cutoff))
        return result.rowcount

    # ------------------------------------------------------------------
    # Audit log (append-only)
    # ------------------------------------------------------------------

    def insert_audit_log(
        self,
        user_id: int | None,
        action: str,
        ip_address: str | None,
        user_agent: str | None,
        metadata: dict[str, Any] | None = None,
        conn: Connection | None = None,
    ) -> int:
        with self._connection(conn) as c:
            result = c.execute(
                _audit_logs.insert().values(
                    user_id=user_id,
                    action=action,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    metadata_json=json.dumps(metadata) if metadata else None,
                    created_at=_now_iso(),
                )
            )
        return result.inserted_primary_key[0]

    def list_audit_logs(
        self, user_id: int, limit: int = 50, offset: int = 0, conn: Connection | None = None
    ) -> list[AuditLogEntry]:
        """Return a user's audit entries, newest first."""
        with self._connection(conn) as c:
            rows = c.execute(
                _audit_logs.select()
                .where(_audit_logs.c.user_id == user_id)
                .order_by(_audit_logs.c.created_at.desc(), _audit_logs.c.id.desc())
                .limit(limit)
                .offset(offset)
            ).fetchall()
        return [_row_to_audit(r) for r in rows]

    def list_recent_audit_logs(self, limit: int = 100, conn: Connection | None = None) -> list[AuditLogEntry]:
        """Return the newest audit entries across all users, joined with username/email."""
        stmt = (
            select(_audit_logs, _users.c.username, _users.c.email)
            .select_from(_audit_logs.outerjoin(_users, _audit_logs.c.user_id == _users.c.id))
            .order_by(_audit_logs.c.created_at.desc(), _audit_logs.c.id.desc())
            .limit(limit)
        )
        with self._connection(conn) as c:
            rows = c.execute(stmt).fetchall()
        return [_row_to_audit(r) for r in rows]

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        username=row.username,
        password_hash=row.password_hash,
        email_verified=bool(row.email_verified),
        is_active=bool(row.is_active),
        created_at=row.created_at,
        updated_at=row.updated_at,
        last_login_at=row.last_login_at,
    )


def _row_to_profile(row) -> Profile:
    return Profile(
        user_id=row.user_id,
        bio=row.bio,
        avatar_url=row.avatar_url,
        display_name=row.display_name,
        location=row.location,
        website=row.website,
        updated_at=row.updated_at,
    )


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        created_at=row.created_at,
        last_used_at=row.last_used_at,
        expires_at=row.expires_at,
    )


def _row_to_audit(row) -> AuditLogEntry:
    mapping = row._mapping
    return AuditLogEntry(
        id=row.id,
        user_id=row.user_id,
        action=row.action,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        metadata=json.loads(row.metadata_json) if row.metadata_json else None,
        created_at=row.created_at,
        username=mapping.get("username"),
        email=mapping.get("email"),
    )
