"""
tests/conftest.py -- Shared test fixtures for LedgerGuard tests.

This module provides:
  - _make_test_store(): creates an isolated in-memory LedgerStore
  - _patch_lifespan(): wires the test store into app.state, bypassing real startup
  - store / seeded_store: function-scoped stores for unit tests
  - seeded_file_store: file-backed store for tests that need a second writer
  - api_client: TestClient over a seeded store, with JWTs for each demo user

The seeded data is the demo brokerage from ledger/ingest.py:
  tenant 1001 "ACME Capital"      users 501 (mutate on ACC-ACME-001/002),
                                        502 (read-only on both)
  tenant 1002 "Globex Securities" user  601 (mutate on ACC-GLOBEX-001)
plus an administrator (login "admin@ops.test") in tenant 1 "Operations".

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.

DEBUG must be set before any auth/core import so get_settings() auto-generates
SECRET_KEY in dev mode rather than raising ValueError. Rate limiting is
switched off so module-scoped clients can log in as often as they like.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.tokens import create_access_token, hash_password
from core.context import RequestContext
from ledger.ingest import demo_seed, load_seed
from ledger.models import Tenant, User
from ledger.store import LedgerStore

ADMIN_LOGIN = "admin@ops.test"
ADMIN_PASSWORD = "adminpass123"
USER_PASSWORD = "tradepass123"

# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _make_test_store(db_suffix: str) -> LedgerStore:
    """Create an isolated named shared-memory SQLite store.

    Args:
        db_suffix: Unique string appended to the DB name so tests and test
                   modules never share state.
    """
    return LedgerStore(db_url=f"sqlite:///file:test_ledger_{db_suffix}?mode=memory&cache=shared&uri=true")


def _bootstrap(store: LedgerStore) -> RequestContext:
    """Create the administrator and return its context."""
    admin_id = store.bootstrap_admin(
        User(
            login=ADMIN_LOGIN,
            display_name="Ops Admin",
            tenant_id=1,
            hashed_password=hash_password(ADMIN_PASSWORD),
        ),
        Tenant(id=1, name="Operations"),
    )
    admin = store.get_user(admin_id)
    return RequestContext(tenant_id=admin.tenant_id, user_id=admin.id, role=admin.role)


def _seed_demo(store: LedgerStore, admin_ctx: RequestContext, with_passwords: bool = False) -> None:
    """Load the demo brokerage. with_passwords pre-creates the users so they can log in."""
    seed = demo_seed()
    if with_passwords:
        for tenant in seed.tenants:
            store.create_tenant(tenant, ctx=admin_ctx)
        hashed = hash_password(USER_PASSWORD)
        for user in seed.users:
            store.create_user(
                User(
                    id=user.id,
                    login=user.login,
                    display_name=user.display_name,
                    tenant_id=user.tenant_id,
                    role=user.role,
                    hashed_password=hashed,
                ),
                ctx=admin_ctx,
            )
    summary = load_seed(store, seed, admin_ctx)
    assert summary.errors == []


def _patch_lifespan(store: LedgerStore):
    """Return an async context manager that replaces the real lifespan.

    Wires the pre-created test store into app.state so TestClient routes see
    the isolated test DB rather than the configured database.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.store = store
        yield

    return test_lifespan


# ---------------------------------------------------------------------------
# Function-scoped store fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> Generator[LedgerStore, None, None]:
    """Empty store with only the administrator."""
    s = _make_test_store(uuid.uuid4().hex)
    yield s
    s.close()


@pytest.fixture
def admin_ctx(store: LedgerStore) -> RequestContext:
    return _bootstrap(store)


@pytest.fixture
def seeded_store(store: LedgerStore, admin_ctx: RequestContext) -> LedgerStore:
    """Store loaded with the demo brokerage."""
    _seed_demo(store, admin_ctx)
    return store


@pytest.fixture
def seeded_file_store(tmp_path) -> Generator[tuple[LedgerStore, RequestContext], None, None]:
    """Demo brokerage in a SQLite file, for tests that open a second store.

    Shared-memory databases use table locks instead of WAL snapshots, so
    concurrent-writer behaviour is only realistic against a file.
    """
    s = LedgerStore(db_url=f"sqlite:///{tmp_path / 'ledger.db'}")
    admin_ctx = _bootstrap(s)
    _seed_demo(s, admin_ctx)
    yield s, admin_ctx
    s.close()


# ---------------------------------------------------------------------------
# Module-scoped API fixture -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, dict[str, str]], None, None]:
    """Yield (client, tokens) for API integration tests.

    tokens maps "admin", "alice" (501), "bob" (502) and "carol" (601) to
    long-lived JWTs for Authorization headers. Every demo user can also log
    in with USER_PASSWORD.
    """
    store = _make_test_store(f"api_{uuid.uuid4().hex}")
    admin_ctx = _bootstrap(store)
    _seed_demo(store, admin_ctx, with_passwords=True)

    tokens = {
        "admin": create_access_token(admin_ctx.user_id, ADMIN_LOGIN, admin_ctx.tenant_id, "admin", expire_seconds=3600),
        "alice": create_access_token(501, "alice@acme.test", 1001, "user", expire_seconds=3600),
        "bob": create_access_token(502, "bob@acme.test", 1001, "user", expire_seconds=3600),
        "carol": create_access_token(601, "carol@globex.test", 1002, "user", expire_seconds=3600),
    }

    app.router.lifespan_context = _patch_lifespan(store)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, tokens

    store.close()
