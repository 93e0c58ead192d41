"""
tests/conftest.py -- Shared test fixtures for the accounts service.

This module provides:
  - FakeClock / clock: a controllable UTC clock for token and session expiry
  - store: an isolated in-memory AccountStore per test
  - service: an AuthService wired to `store`, `clock` and a mock notifier
  - api_client: TestClient over the real app with a patched lifespan

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
for the API client because TestClient runs route handlers in a thread pool.
Plain :memory: DBs are per-connection and would present a blank schema to
each worker thread. The named URI format
(file:name?mode=memory&cache=shared&uri=true) shares one in-memory instance
across all connections in the same process.

The DEBUG env var must be set before any project import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

# CRITICAL: Set DEBUG before any core/auth/api import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("WEBHOOK_URL", "")

import pytest
from fastapi.testclient import TestClient

from api.main import app, init_services
from auth.service import AuthService
from auth.sessions import SessionManager
from auth.store import AccountStore
from auth.tokens import TokenIssuer
from core.config import get_settings
from core.notifier import Notifier
from core.ratelimit import FixedWindowRateLimiter

TEST_SECRET = "test-secret-key-for-unit-tests-only-0123456789"
T0 = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable UTC clock that only moves when a test advances it."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


# ---------------------------------------------------------------------------
# Unit fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> Generator[AccountStore, None, None]:
    s = AccountStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def notifier() -> MagicMock:
    return MagicMock(spec=Notifier)


@pytest.fixture
def service(store: AccountStore, clock: FakeClock, notifier: MagicMock) -> AuthService:
    tokens = TokenIssuer(TEST_SECRET, ttl_seconds=7 * 24 * 3600, clock=clock)
    sessions = SessionManager(store, ttl_seconds=7 * 24 * 3600, clock=clock)
    return AuthService(store, tokens, sessions, notifier)


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(store: AccountStore, notifier: MagicMock, limiter: FixedWindowRateLimiter):
    """Return an async context manager that replaces the real lifespan.

    Wires the test store, a mock notifier and a fresh limiter into app.state
    so TestClient routes see isolated state rather than the production DB.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        init_services(app, get_settings(), store, notifier=notifier, limiter=limiter)
        yield

    return test_lifespan


@pytest.fixture
def api_client() -> Generator[tuple[TestClient, MagicMock], None, None]:
    """Yield (client, notifier) over the real app with a fresh DB and limiter.

    Function-scoped so every test starts with empty rate limit buckets and
    no accounts.
    """
    db_url = f"sqlite:///file:test_accounts_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"
    store = AccountStore(db_url)
    notifier = MagicMock(spec=Notifier)
    limiter = FixedWindowRateLimiter(max_per_window=45, window_seconds=60, cooldown_seconds=180)

    app.router.lifespan_context = _patch_lifespan(store, notifier, limiter)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, notifier

    store.close()


def signup(client: TestClient, email: str = "a@x.com", username: str = "alice", password: str = "password123"):
    return client.post("/api/auth/signup", json={"email": email, "username": username, "password": password})


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}
