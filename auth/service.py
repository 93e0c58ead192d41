"""
auth/service.py -- Auth orchestrator: signup, login, logout and account flows.

Composes the store, password hashing, token issuer, session manager and
notifier into the account operations the API exposes. Route handlers call
these methods and never sequence store calls themselves.

Atomicity:
  Each primary mutation and its audit entry share one transaction:
    signup  -> insert user + "signup" audit
    login   -> stamp last_login + "login" audit
    logout  -> delete session + "logout" audit
  Failed-login audit entries are written on their own. If that insert
  fails, the failure is logged and the login is still rejected with the
  intended error -- an audit hiccup never changes the outcome.

User enumeration:
  An unknown email and a wrong password produce the same AuthenticationError
  (same message, same detail). The unknown-email path runs bcrypt against a
  dummy hash so both paths cost the same.

Notifications are fire-and-forget: Notifier.notify() only submits work, so
signup/login latency and success never depend on webhook delivery.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.models import AuditLogEntry, AuthResult, Profile, Session, User, UserWithProfile
from auth.passwords import DUMMY_HASH, MAX_PASSWORD_BYTES, hash_password, verify_password
from auth.sessions import SessionManager
from auth.store import PROFILE_FIELDS, AccountStore
from auth.tokens import TokenIssuer, hash_token
from core.errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    InvalidToken,
    NotFoundError,
    TransientStoreError,
    ValidationError,
)
from core.notifier import NotificationEvent, Notifier

logger = logging.getLogger("outr.auth")

MIN_USERNAME_LENGTH = 2
MIN_PASSWORD_LENGTH = 8
MAX_AUDIT_PAGE = 200

_BAD_CREDENTIALS = "Invalid email or password."
_BAD_TOKEN = "Invalid or expired token."
_DUPLICATE = "Email or username already in use."


@dataclass(frozen=True)
class ClientInfo:
    """Where a request came from, as recorded in sessions and audit entries."""

    ip: str = "unknown"
    user_agent: str = ""


@dataclass
class AuthContext:
    """The result of authenticating a bearer token."""

    user: User
    session: Session
    claims: dict[str, Any]


class AuthService:
    """Account flows over an AccountStore.

    Usage:
        service = AuthService(store, TokenIssuer(secret), SessionManager(store), notifier)
        result = service.signup("a@x.com", "alice", "password123", ClientInfo(ip="203.0.113.7"))
        service.logout(result.token, ClientInfo())
    """

    def __init__(
        self,
        store: AccountStore,
        tokens: TokenIssuer,
        sessions: SessionManager,
        notifier: Notifier | None = None,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.sessions = sessions
        self.notifier = notifier

    # ------------------------------------------------------------------
    # Signup / login / logout
    # ------------------------------------------------------------------

    def signup(self, email: str, username: str, password: str, client: ClientInfo) -> AuthResult:
        """Register a new account and open its first session.

        Raises ValidationError for missing, too-short or over-long fields and
        ConflictError when the email or username is taken in any case.
        """
        if not email or not username or not password:
            raise ValidationError(
                "Missing fields.",
                detail={"required": ["email", "username", "password"]},
            )
        email_norm = str(email).strip().lower()
        username_norm = str(username).strip()
        if not email_norm:
            raise ValidationError("Email is required.")
        if len(username_norm) < MIN_USERNAME_LENGTH:
            raise ValidationError(f"Username must be at least {MIN_USERNAME_LENGTH} characters.")
        if len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")
        if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
            raise ValidationError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes.")

        if self.store.find_user_by_email(email_norm) or self.store.find_user_by_username(username_norm):
            raise ConflictError(_DUPLICATE)

        password_hash = hash_password(password)
        try:
            with self.store.transaction() as conn:
                user = self.store.insert_user(email_norm, username_norm, password_hash, conn=conn)
                self.store.insert_audit_log(
                    user.id,
                    "signup",
                    client.ip,
                    client.user_agent,
                    {"username": username_norm},
                    conn=conn,
                )
        except IntegrityError as e:
            # Another signup won the race between the check above and the insert.
            raise ConflictError(_DUPLICATE) from e

        result = self._open_session(user, client)
        logger.info("Signup user_id=%s", user.id)
        self._notify("signup", user, client)
        return result

    def login(self, email: str, password: str, client: ClientInfo) -> AuthResult:
        """Verify credentials and open a new session.

        Raises AuthenticationError for an unknown email or a wrong password
        (indistinguishable to the caller) and AuthorizationError for an
        inactive account. Every rejection is audited as "login_failed".
        """
        if not email or not password:
            raise ValidationError("Missing email or password.")
        email_norm = str(email).strip().lower()

        user = self.store.find_user_by_email(email_norm)
        if user is None:
            # Equalize timing -- do NOT return before running bcrypt.
            verify_password(password, DUMMY_HASH)
            self._audit_failed_login(None, client, {"email": email_norm, "reason": "user_not_found"})
            raise AuthenticationError(_BAD_CREDENTIALS)

        if not user.is_active:
            self._audit_failed_login(user.id, client, {"reason": "account_inactive"})
            raise AuthorizationError("Account is inactive.")

        if not verify_password(password, user.password_hash):
            self._audit_failed_login(user.id, client, {"reason": "invalid_password"})
            raise AuthenticationError(_BAD_CREDENTIALS)

        with self.store.transaction() as conn:
            self.store.update_last_login(user.id, conn=conn)
            self.store.insert_audit_log(user.id, "login", client.ip, client.user_agent, conn=conn)
            user = self.store.find_user_by_id(user.id, conn=conn) or user

        result = self._open_session(user, client)
        logger.info("Login user_id=%s", user.id)
        self._notify("login", user, client)
        return result

    def logout(self, token: str | None, client: ClientInfo) -> bool:
        """Revoke the session behind `token`. Always succeeds.

        No token, or a token that fails verification (bad signature,
        malformed, expired), is a no-op. Returns True only when a session
        row was actually deleted.
        """
        if not token:
            return False
        try:
            claims = self.tokens.verify(token)
        except InvalidToken:
            return False

        try:
            with self.store.transaction() as conn:
                revoked = self.sessions.revoke_token(token, conn=conn)
                self.store.insert_audit_log(claims["user_id"], "logout", client.ip, client.user_agent, conn=conn)
        except IntegrityError:
            # Validly signed token for a user this store does not know.
            logger.warning("Logout for unknown user_id=%s ignored", claims.get("user_id"))
            return False
        return revoked

    def logout_all(self, user_id: int, client: ClientInfo) -> int:
        """Revoke every session of a user. Returns the number revoked."""
        with self.store.transaction() as conn:
            count = self.sessions.revoke_all(user_id, conn=conn)
            self.store.insert_audit_log(
                user_id, "logout_all", client.ip, client.user_agent, {"sessions": count}, conn=conn
            )
        return count

    def deactivate(self, user_id: int, client: ClientInfo | None = None) -> None:
        """Deactivate an account and revoke all its sessions atomically."""
        client = client or ClientInfo(ip="local")
        with self.store.transaction() as conn:
            if not self.store.set_user_active(user_id, False, conn=conn):
                raise NotFoundError("User not found.")
            count = self.sessions.revoke_all(user_id, conn=conn)
            self.store.insert_audit_log(
                user_id, "account_deactivated", client.ip, client.user_agent, {"sessions": count}, conn=conn
            )
        logger.info("Deactivated user_id=%s (%d sessions revoked)", user_id, count)

    # ------------------------------------------------------------------
    # Bearer authentication
    # ------------------------------------------------------------------

    def authenticate(self, token: str | None) -> AuthContext:
        """Resolve a bearer token to its user and live session.

        The token must verify, its session must still exist (not revoked, not
        expired) and the owning user must be active. Raises
        AuthenticationError otherwise.
        """
        if not token:
            raise AuthenticationError("Missing or invalid token.")
        try:
            claims = self.tokens.verify(token)
        except InvalidToken as e:
            raise AuthenticationError(_BAD_TOKEN) from e

        session = self.sessions.lookup_by_token(token)
        if session is None:
            raise AuthenticationError(_BAD_TOKEN)
        user = self.store.find_user_by_id(claims["user_id"])
        if user is None or not user.is_active or session.user_id != user.id:
            raise AuthenticationError(_BAD_TOKEN)

        self.sessions.touch(session.id)
        return AuthContext(user=user, session=session, claims=claims)

    # ------------------------------------------------------------------
    # Profile and audit
    # ------------------------------------------------------------------

    def me(self, user_id: int) -> UserWithProfile:
        found = self.store.find_user_with_profile(user_id)
        if found is None:
            raise NotFoundError("User not found.")
        return found

    def get_profile(self, user_id: int) -> Profile | None:
        return self.store.get_profile(user_id)

    def update_profile(self, user_id: int, fields: dict[str, Any], client: ClientInfo) -> Profile:
        """Replace the user's profile and audit which fields were submitted."""
        unknown = set(fields) - set(PROFILE_FIELDS)
        if unknown:
            raise ValidationError("Unknown profile fields.", detail={"fields": sorted(unknown)})
        with self.store.transaction() as conn:
            profile = self.store.upsert_profile(user_id, fields, conn=conn)
            self.store.insert_audit_log(
                user_id,
                "profile_update",
                client.ip,
                client.user_agent,
                {"fields": sorted(fields)},
                conn=conn,
            )
        return profile

    def audit_logs(self, user_id: int, limit: int = 50, offset: int = 0) -> list[AuditLogEntry]:
        if not 1 <= limit <= MAX_AUDIT_PAGE:
            raise ValidationError(f"limit must be between 1 and {MAX_AUDIT_PAGE}.")
        if offset < 0:
            raise ValidationError("offset must not be negative.")
        return self.store.list_audit_logs(user_id, limit=limit, offset=offset)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _open_session(self, user: User, client: ClientInfo) -> AuthResult:
        claims = {"user_id": user.id, "email": user.email, "username": user.username}
        token = self.tokens.issue(claims)
        session_id = self.sessions.create(
            user.id,
            hash_token(token),
            client.ip,
            client.user_agent,
            ttl_seconds=self.tokens.ttl_seconds,
        )
        return AuthResult(user=user, token=token, session_id=session_id, claims=claims)

    def _audit_failed_login(self, user_id: int | None, client: ClientInfo, metadata: dict[str, Any]) -> None:
        try:
            self.store.insert_audit_log(user_id, "login_failed", client.ip, client.user_agent, metadata)
        except (SQLAlchemyError, TransientStoreError) as e:
            logger.warning("Could not record failed login (%s): %s", metadata.get("reason"), e)

    def _notify(self, event_type: str, user: User, client: ClientInfo) -> None:
        if self.notifier is None:
            return
        self.notifier.notify(
            NotificationEvent(
                type=event_type,
                email=user.email,
                username=user.username,
                ip=client.ip,
                user_agent=client.user_agent,
            )
        )
