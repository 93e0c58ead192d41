"""
auth/models.py -- Domain dataclasses for account entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own domain
shape; the store and the service do the work.

All timestamps are ISO 8601 UTC strings, matching what the store persists.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class User:
    """An account identity.

    email is always stored lowercased. username keeps the case the user chose
    at signup; uniqueness is enforced on lower(username) so "Alice" and
    "alice" cannot both exist.

    password_hash is a bcrypt hash. The plaintext is never persisted.
    """

    email: str
    username: str
    password_hash: str
    id: int | None = None
    email_verified: bool = False
    is_active: bool = True
    created_at: str | None = None
    updated_at: str | None = None
    last_login_at: str | None = None


@dataclass
class Profile:
    """One-to-one extension of User. Replaced wholesale on every write (upsert)."""

    user_id: int
    bio: str | None = None
    avatar_url: str | None = None
    display_name: str | None = None
    location: str | None = None
    website: str | None = None
    updated_at: str | None = None


@dataclass
class Session:
    """Server-side record of one issued bearer token.

    token_hash is SHA-256 of the raw token string, never the token itself.
    Valid only while now < expires_at; expired rows linger until swept.
    """

    id: str
    user_id: int
    token_hash: str
    expires_at: str
    ip_address: str | None = None
    user_agent: str | None = None
    created_at: str | None = None
    last_used_at: str | None = None


@dataclass
class AuditLogEntry:
    """Append-only record of a security-relevant event.

    user_id is None for anonymous events (e.g. a login attempt against an
    unknown email). metadata is free-form and stored as JSON.
    """

    action: str  # "signup", "login", "login_failed", "logout", ...
    user_id: int | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    metadata: dict[str, Any] | None = None
    id: int | None = None
    created_at: str | None = None
    # Populated only by list_recent_audit_logs(), which joins users.
    username: str | None = None
    email: str | None = None


@dataclass
class UserWithProfile:
    user: User
    profile: Profile | None = None


@dataclass
class AuthResult:
    """What signup and login hand back to the caller: the user and a fresh token."""

    user: User
    token: str
    session_id: str
    claims: dict[str, Any] = field(default_factory=dict)
