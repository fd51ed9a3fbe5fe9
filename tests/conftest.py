"""
tests/conftest.py -- Shared test fixtures for SessionKeeper.

This module provides:
  - make_store(): creates an isolated in-memory credential store
  - FakeClock: controllable UTC clock for lockout / expiry / grace tests
  - store, clock, issuer, service: unit-level fixtures on a fresh store
  - account_factory: creates accounts with unique emails and a cached hash
  - api: TestClient over the assembled ASGI app (api + edge relay routes)

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

Environment variables must be set before any core/auth/api import so
get_settings() (an lru_cache singleton) sees them on first call.
"""

from __future__ import annotations

import asyncio
import itertools
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

# CRITICAL: configure the environment before any project import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("SECRET_KEY", "test-signing-key-0123456789abcdef0123456789")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost", "127.0.0.1"]')
os.environ.setdefault("DATABASE_URL", "sqlite:///file:test_default?mode=memory&cache=shared&uri=true")

import pytest
from fastapi.testclient import TestClient

from api.main import build_services
from asgi import app
from auth.audit import AuditLog
from auth.models import Account
from auth.sessions import SessionService
from auth.store import AuthStore
from auth.tokens import TokenIssuer, hash_password
from core.config import get_settings

PASSWORD = "correct-horse-battery"

# bcrypt is deliberately slow; hash the shared test password once per session.
_PASSWORD_HASH = hash_password(PASSWORD)

_store_ids = itertools.count()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def make_store(label: str) -> AuthStore:
    """Create an isolated named shared-memory SQLite store.

    A process-wide counter keeps every store distinct even when the same
    label is reused by several tests.
    """
    name = f"test_auth_{label}_{next(_store_ids)}"
    return AuthStore(f"sqlite:///file:{name}?mode=memory&cache=shared&uri=true")


class FakeClock:
    """Callable UTC clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2030, 1, 15, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def _patch_lifespan(store: AuthStore):
    """Return an async context manager that replaces the real lifespan.

    Wires the test store into app.state through build_services(), exactly as
    production startup does, and drops any relay cached by a previous module.
    The purge_task is a long-sleeping coroutine so shutdown can cancel it.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        build_services(app, store, get_settings())
        app.state.session_relay = None
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


# ---------------------------------------------------------------------------
# Unit fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def store() -> Generator[AuthStore, None, None]:
    s = make_store("unit")
    yield s
    s.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def issuer(settings) -> TokenIssuer:
    return TokenIssuer.from_settings(settings)


@pytest.fixture
def service(store, issuer, settings, clock) -> SessionService:
    return SessionService(store, issuer, AuditLog(store), settings, clock=clock)


@pytest.fixture
def account_factory(store):
    """Return create(**overrides) -> Account, stored with PASSWORD as its password."""
    counter = itertools.count(1)

    def create(target: AuthStore | None = None, **overrides) -> Account:
        n = next(counter)
        fields = {
            "email": f"user{n}@example.com",
            "display_name": f"User {n}",
            "role": "student",
            "password_hash": _PASSWORD_HASH,
        }
        fields.update(overrides)
        s = target or store
        account_id = s.create_account(Account(**fields))
        return s.get_account(account_id)

    return create


# ---------------------------------------------------------------------------
# Integration fixture -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def api() -> Generator[SimpleNamespace, None, None]:
    """Yield a namespace with client, store, admin account and admin bearer headers.

    The TestClient uses the real assembled app with a patched lifespan so
    tests hit real route handlers but an isolated in-memory store. Tests
    create their own accounts (unique emails) via new_account().
    """
    api_store = make_store("api")
    admin_id = api_store.create_account(
        Account(email="admin@example.com", display_name="Admin", role="admin", password_hash=_PASSWORD_HASH)
    )
    counter = itertools.count(1)

    def new_account(**overrides) -> Account:
        n = next(counter)
        fields = {
            "email": f"member{n}@example.com",
            "display_name": f"Member {n}",
            "role": "student",
            "password_hash": _PASSWORD_HASH,
        }
        fields.update(overrides)
        return api_store.get_account(api_store.create_account(Account(**fields)))

    app.router.lifespan_context = _patch_lifespan(api_store)

    with TestClient(app, raise_server_exceptions=True) as client:
        admin = api_store.get_account(admin_id)
        token = app.state.token_issuer.create_access_token(admin)
        yield SimpleNamespace(
            client=client,
            store=api_store,
            app=app,
            admin=admin,
            admin_headers={"Authorization": f"Bearer {token}"},
            new_account=new_account,
        )

    api_store.close()
