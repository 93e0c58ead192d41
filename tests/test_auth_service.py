"""Unit tests for auth/service.py -- the auth orchestrator.

Covers:
- signup creates user, session and "signup" audit entry; notifies
- signup conflicts on case-insensitive email/username; validates lengths
- login succeeds case-insensitively, stamps last_login, audits, notifies
- unknown email and wrong password raise identical AuthenticationErrors
- inactive accounts are refused with AuthorizationError and audited
- failed-login audit errors never change the login outcome
- logout revokes the presented token's session; any bad token is a no-op
- authenticate() requires a live session and an active user
- logout_all / deactivate revoke every session
- profile updates and audit paging
- a failed audit write rolls back signup, login and logout
"""

from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from auth.service import ClientInfo
from auth.tokens import hash_token
from core.errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    NotFoundError,
    TransientStoreError,
    ValidationError,
)
from core.notifier import NotificationEvent

CLIENT = ClientInfo(ip="203.0.113.7", user_agent="pytest-agent")


@pytest.fixture
def alice(service):
    return service.signup("Alice@X.com", "alice", "password123", CLIENT)


def _actions(store, user_id) -> list[str]:
    return [e.action for e in store.list_audit_logs(user_id)]


# ---------------------------------------------------------------------------
# Signup
# ---------------------------------------------------------------------------


def test_signup_creates_user_session_and_audit(store, clock, alice):
    assert alice.user.email == "alice@x.com"
    assert alice.user.username == "alice"
    assert alice.token
    assert alice.claims == {"user_id": alice.user.id, "email": "alice@x.com", "username": "alice"}

    session = store.find_session_by_token_hash(hash_token(alice.token), now=clock.now)
    assert session is not None
    assert session.id == alice.session_id
    assert session.ip_address == "203.0.113.7"

    entries = store.list_audit_logs(alice.user.id)
    assert [e.action for e in entries] == ["signup"]
    assert entries[0].metadata == {"username": "alice"}
    assert entries[0].user_agent == "pytest-agent"


def test_signup_notifies(service, notifier, alice):
    notifier.notify.assert_called_once_with(
        NotificationEvent(
            type="signup",
            email="alice@x.com",
            username="alice",
            ip="203.0.113.7",
            user_agent="pytest-agent",
        )
    )


@pytest.mark.parametrize(
    "email,username",
    [
        ("ALICE@x.com", "someone"),
        ("other@x.com", "ALICE"),
    ],
)
def test_signup_conflict_is_case_insensitive(service, store, alice, email, username):
    with pytest.raises(ConflictError):
        service.signup(email, username, "password123", CLIENT)
    assert store.find_user_by_email("other@x.com") is None


@pytest.mark.parametrize(
    "email,username,password",
    [
        ("", "bob", "password123"),
        ("b@x.com", "", "password123"),
        ("b@x.com", "bob", ""),
        ("b@x.com", "b", "password123"),
        ("b@x.com", "bob", "short"),
        ("b@x.com", "bob", "é" * 37),
    ],
)
def test_signup_validation(service, store, email, username, password):
    with pytest.raises(ValidationError):
        service.signup(email, username, password, CLIENT)
    assert store.find_user_by_email("b@x.com") is None


def test_signup_race_maps_integrity_error_to_conflict(service, store, alice):
    # Both existence checks pass, but the insert hits the UNIQUE constraint.
    with patch.object(store, "find_user_by_email", return_value=None):
        with pytest.raises(ConflictError):
            service.signup("alice@x.com", "alice2", "password123", CLIENT)


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


def test_login_success(service, store, notifier, alice):
    notifier.reset_mock()
    result = service.login("ALICE@x.com", "password123", CLIENT)

    assert result.user.id == alice.user.id
    assert result.user.last_login_at is not None
    assert result.token != alice.token
    assert service.authenticate(result.token).user.id == alice.user.id
    assert _actions(store, alice.user.id) == ["login", "signup"]
    assert notifier.notify.call_args.args[0].type == "login"


def test_unknown_email_and_wrong_password_are_indistinguishable(service, store, alice):
    with pytest.raises(AuthenticationError) as unknown:
        service.login("nobody@x.com", "password123", CLIENT)
    with pytest.raises(AuthenticationError) as wrong:
        service.login("alice@x.com", "wrong-password", CLIENT)

    assert unknown.value.message == wrong.value.message
    assert unknown.value.detail == wrong.value.detail
    assert unknown.value.status_code == wrong.value.status_code == 401


def test_failed_logins_are_audited(service, store, alice):
    with pytest.raises(AuthenticationError):
        service.login("alice@x.com", "wrong-password", CLIENT)
    with pytest.raises(AuthenticationError):
        service.login("nobody@x.com", "password123", CLIENT)

    recent = store.list_recent_audit_logs(limit=10)
    anonymous, mine = recent[0], recent[1]
    assert anonymous.action == "login_failed"
    assert anonymous.user_id is None
    assert anonymous.metadata == {"email": "nobody@x.com", "reason": "user_not_found"}
    assert mine.action == "login_failed"
    assert mine.user_id == alice.user.id
    assert mine.metadata == {"reason": "invalid_password"}


def test_inactive_account_refused(service, store, alice):
    store.set_user_active(alice.user.id, False)

    with pytest.raises(AuthorizationError):
        service.login("alice@x.com", "password123", CLIENT)

    latest = store.list_audit_logs(alice.user.id)[0]
    assert latest.action == "login_failed"
    assert latest.metadata == {"reason": "account_inactive"}


def test_failed_login_audit_error_keeps_outcome(service, store, alice, caplog):
    with patch.object(
        store, "insert_audit_log", side_effect=OperationalError("INSERT", {}, Exception("disk full"))
    ):
        with pytest.raises(AuthenticationError):
            service.login("alice@x.com", "wrong-password", CLIENT)
    assert "Could not record failed login" in caplog.text


def test_login_missing_fields(service):
    with pytest.raises(ValidationError):
        service.login("", "password123", CLIENT)


# ---------------------------------------------------------------------------
# Logout
# ---------------------------------------------------------------------------


def test_logout_revokes_session(service, store, alice):
    assert service.logout(alice.token, CLIENT) is True

    with pytest.raises(AuthenticationError):
        service.authenticate(alice.token)
    assert _actions(store, alice.user.id) == ["logout", "signup"]


def test_logout_only_revokes_presented_session(service, alice):
    other = service.login("alice@x.com", "password123", CLIENT)
    service.logout(alice.token, CLIENT)
    assert service.authenticate(other.token).session.id == other.session_id


def test_logout_is_idempotent(service, alice):
    assert service.logout(alice.token, CLIENT) is True
    assert service.logout(alice.token, CLIENT) is False


@pytest.mark.parametrize("token", [None, "", "garbage", "a.b.c"])
def test_logout_without_valid_token_is_noop(service, store, alice, token):
    assert service.logout(token, CLIENT) is False
    assert service.authenticate(alice.token).user.id == alice.user.id
    assert _actions(store, alice.user.id) == ["signup"]


def test_logout_with_expired_token_revokes_nothing(service, store, alice, clock):
    issued_at = clock.now
    clock.advance(days=8)

    assert service.logout(alice.token, CLIENT) is False
    # Session row is untouched (only invisible because it expired too).
    assert store.find_session(alice.session_id, now=issued_at) is not None
    assert _actions(store, alice.user.id) == ["signup"]


# ---------------------------------------------------------------------------
# Atomicity -- a failed audit write undoes the whole operation
# ---------------------------------------------------------------------------


def _audit_write_fails():
    return OperationalError("INSERT", {}, Exception("disk full"))


def test_signup_rolls_back_user_when_audit_write_fails(service, store, notifier):
    with patch.object(store, "insert_audit_log", side_effect=_audit_write_fails()):
        with pytest.raises(TransientStoreError):
            service.signup("b@x.com", "bob", "password123", CLIENT)

    assert store.find_user_by_email("b@x.com") is None
    assert store.find_user_by_username("bob") is None
    notifier.notify.assert_not_called()


def test_login_rolls_back_last_login_when_audit_write_fails(service, store, alice):
    with patch.object(store, "insert_audit_log", side_effect=_audit_write_fails()):
        with pytest.raises(TransientStoreError):
            service.login("alice@x.com", "password123", CLIENT)

    assert store.find_user_by_id(alice.user.id).last_login_at is None
    assert _actions(store, alice.user.id) == ["signup"]


def test_logout_keeps_session_when_audit_write_fails(service, store, alice, clock):
    with patch.object(store, "insert_audit_log", side_effect=_audit_write_fails()):
        with pytest.raises(TransientStoreError):
            service.logout(alice.token, CLIENT)

    assert store.find_session(alice.session_id, now=clock.now) is not None
    assert service.authenticate(alice.token).session.id == alice.session_id


# ---------------------------------------------------------------------------
# Authenticate
# ---------------------------------------------------------------------------


def test_authenticate_touches_session(service, store, alice, clock):
    before = store.find_session(alice.session_id, now=clock.now).last_used_at
    clock.advance(minutes=5)

    ctx = service.authenticate(alice.token)

    assert ctx.user.id == alice.user.id
    assert ctx.claims["username"] == "alice"
    assert store.find_session(alice.session_id, now=clock.now).last_used_at > before


def test_authenticate_rejects_expired_token(service, alice, clock):
    clock.advance(days=8)
    with pytest.raises(AuthenticationError):
        service.authenticate(alice.token)


def test_authenticate_rejects_missing_token(service):
    with pytest.raises(AuthenticationError):
        service.authenticate(None)


def test_authenticate_rejects_inactive_user(service, store, alice):
    store.set_user_active(alice.user.id, False)
    with pytest.raises(AuthenticationError):
        service.authenticate(alice.token)


# ---------------------------------------------------------------------------
# Logout-all / deactivate
# ---------------------------------------------------------------------------


def test_logout_all_revokes_every_session(service, store, alice):
    second = service.login("alice@x.com", "password123", CLIENT)

    assert service.logout_all(alice.user.id, CLIENT) == 2
    for token in (alice.token, second.token):
        with pytest.raises(AuthenticationError):
            service.authenticate(token)
    latest = store.list_audit_logs(alice.user.id)[0]
    assert latest.action == "logout_all"
    assert latest.metadata == {"sessions": 2}


def test_deactivate(service, store, alice):
    service.deactivate(alice.user.id)

    assert store.find_user_by_id(alice.user.id).is_active is False
    with pytest.raises(AuthenticationError):
        service.authenticate(alice.token)
    assert _actions(store, alice.user.id)[0] == "account_deactivated"


def test_deactivate_unknown_user(service):
    with pytest.raises(NotFoundError):
        service.deactivate(9999)


# ---------------------------------------------------------------------------
# Profile / audit
# ---------------------------------------------------------------------------


def test_update_profile_audits_submitted_fields(service, store, alice):
    profile = service.update_profile(alice.user.id, {"location": "Oslo", "bio": "hi"}, CLIENT)

    assert profile.bio == "hi"
    assert service.get_profile(alice.user.id).location == "Oslo"
    assert service.me(alice.user.id).profile.bio == "hi"
    latest = store.list_audit_logs(alice.user.id)[0]
    assert latest.action == "profile_update"
    assert latest.metadata == {"fields": ["bio", "location"]}


def test_update_profile_rejects_unknown_fields(service, alice):
    with pytest.raises(ValidationError):
        service.update_profile(alice.user.id, {"password_hash": "x"}, CLIENT)


@pytest.mark.parametrize("limit,offset", [(0, 0), (201, 0), (10, -1)])
def test_audit_logs_bounds(service, alice, limit, offset):
    with pytest.raises(ValidationError):
        service.audit_logs(alice.user.id, limit=limit, offset=offset)


def test_me_unknown_user(service):
    with pytest.raises(NotFoundError):
        service.me(9999)
