"""
tests/conftest.py -- Shared test fixtures for the auth service tests.

This module provides:
  - settings:        explicit Settings with fixed secrets and short TTLs
  - db_engine:       a file-backed SQLite engine per test (tmp_path)
  - account_store / session_store / auth_engine / account_service
  - make_account:    registers an account and returns it
  - api_client:      TestClient wired to an isolated database, plus an admin token

Design: file-backed SQLite databases in tmp_path rather than shared-memory URIs.
Route handlers and the last-seen worker write from different threads, and only a
file database honours SQLite's busy timeout; a shared-cache memory database fails
concurrent writers immediately with "database table is locked".

The env vars must be set before any auth/core/api import so get_settings() and
the login rate limit see test values.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager

# CRITICAL: set before any auth/core/api import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app, build_services
from auth.accounts import AccountService
from auth.engine import AuthEngine
from auth.models import Account, Role
from auth.sessions import SessionStore
from auth.store import AccountStore, create_db_engine
from core.config import Settings

ACCESS_SECRET = "access-secret-for-tests-0123456789abcdef"
REFRESH_SECRET = "refresh-secret-for-tests-0123456789abcdef"
PASSWORD = "Passw0rd!"


def make_settings(database_url: str, **overrides) -> Settings:
    values = dict(
        debug=True,
        database_url=database_url,
        access_token_secret=ACCESS_SECRET,
        refresh_token_secret=REFRESH_SECRET,
        access_token_ttl_seconds=900,
        refresh_token_ttl_seconds=3600,
        last_seen_backoff_seconds=0.01,
        session_purge_interval_seconds=99999,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


# ---------------------------------------------------------------------------
# Unit-level fixtures -- one fresh database per test
# ---------------------------------------------------------------------------


@pytest.fixture
def db_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'auth_test.db'}"


@pytest.fixture
def settings(db_url: str) -> Settings:
    return make_settings(db_url)


@pytest.fixture
def db_engine(settings: Settings):
    engine = create_db_engine(settings.database_url, timeout=settings.db_timeout_seconds)
    yield engine
    engine.dispose()


@pytest.fixture
def account_store(db_engine) -> AccountStore:
    return AccountStore(db_engine)


@pytest.fixture
def session_store(db_engine) -> SessionStore:
    return SessionStore(db_engine)


@pytest.fixture
def auth_engine(account_store: AccountStore, session_store: SessionStore, settings: Settings) -> AuthEngine:
    return AuthEngine(account_store, session_store, settings)


@pytest.fixture
def account_service(account_store: AccountStore, auth_engine: AuthEngine) -> AccountService:
    return AccountService(account_store, auth_engine)


@pytest.fixture
def make_account(account_service: AccountService) -> Callable[..., Account]:
    """Return a factory: make_account(email, password=PASSWORD, role=Role.user)."""

    def _make(email: str = "a@x.com", password: str = PASSWORD, role: Role = Role.user) -> Account:
        return account_service.register(email, password, role=role)

    return _make


# ---------------------------------------------------------------------------
# API fixtures -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


def _patch_lifespan(settings: Settings):
    """Return a lifespan that builds the real object graph against test settings.

    The purge task is a long-sleeping coroutine so shutdown has a real
    asyncio.Task to cancel.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        build_services(app, settings)
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()
        app.state.db_engine.dispose()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(tmp_path_factory) -> Generator[tuple[TestClient, str, int], None, None]:
    """Yield (client, admin_access_token, admin_id) for API integration tests.

    The admin logs in through the real /auth/login route so the token is
    produced exactly as a client would receive it.
    """
    db_path = tmp_path_factory.mktemp("api") / "auth_api.db"
    settings = make_settings(f"sqlite:///{db_path}")

    app.router.lifespan_context = _patch_lifespan(settings)

    with TestClient(app, base_url="http://localhost", raise_server_exceptions=True) as client:
        admin = client.app.state.account_service.register("admin@x.com", PASSWORD, role=Role.admin)
        resp = client.post("/api/v1/auth/login", json={"email": "admin@x.com", "password": PASSWORD})
        assert resp.status_code == 200, resp.text
        yield client, resp.json()["access_token"], admin.id
