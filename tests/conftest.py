"""
tests/conftest.py -- Shared test fixtures for FloraOps unit and integration tests.

This module provides:
  - sql_url(): a unique named shared-memory SQLite URL per call
  - file_db_url: a file-backed SQLite URL under tmp_path, for thread races
  - credential_store / order_repo: parametrized over the in-memory and SQL
    implementations so every contract test runs against both
  - session_manager / order_service: services wired to those stores
  - api_client: TestClient with a patched lifespan and isolated SQL stores
  - register_owner(): helper that registers an organization over HTTP

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

Shared-memory URIs get a SingletonThreadPool, so every thread shares one
connection. Tests that race threads against the SQL stores use file_db_url,
a file-backed database under tmp_path with a real connection per thread.

DEBUG, BCRYPT_ROUNDS and RATE_LIMIT_ENABLED must be set before any auth/ or
api/ import because get_settings() is cached on first use.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager, suppress

# CRITICAL: Set these before any auth/core import so get_settings() picks them up.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.sessions import SessionManager
from auth.store import InMemoryCredentialStore, SqlCredentialStore
from orders.service import OrderService
from orders.store import InMemoryOrderRepository, SqlOrderRepository

PASSWORD = "Passw0rd1"


def sql_url(prefix: str = "floraops") -> str:
    """Return a fresh named shared-memory SQLite URL."""
    return f"sqlite:///file:{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


@pytest.fixture
def file_db_url(tmp_path) -> str:
    """SQLite database file private to one test."""
    return f"sqlite:///{tmp_path / 'floraops.db'}"


# ---------------------------------------------------------------------------
# Store fixtures -- parametrized over both implementations
# ---------------------------------------------------------------------------


@pytest.fixture(params=["memory", "sql"])
def credential_store(request):
    if request.param == "memory":
        store = InMemoryCredentialStore()
    else:
        store = SqlCredentialStore(sql_url("auth"))
    yield store
    store.close()


@pytest.fixture(params=["memory", "sql"])
def order_repo(request):
    if request.param == "memory":
        repo = InMemoryOrderRepository()
    else:
        repo = SqlOrderRepository(sql_url("orders"))
    yield repo
    repo.close()


@pytest.fixture
def session_manager(credential_store) -> SessionManager:
    return SessionManager(credential_store)


@pytest.fixture
def order_service(order_repo, credential_store) -> OrderService:
    return OrderService(order_repo, credential_store)


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(credential_store: SqlCredentialStore, order_repo: SqlOrderRepository):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-created test stores into app.state so TestClient routes see
    isolated test DBs rather than the configured database.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.credential_store = credential_store
        app.state.session_manager = SessionManager(credential_store)
        app.state.order_repository = order_repo
        app.state.order_service = OrderService(order_repo, credential_store)
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()
        with suppress(asyncio.CancelledError):
            await app.state.purge_task

    return test_lifespan


@pytest.fixture
def api_client() -> Generator[TestClient, None, None]:
    """Yield a TestClient bound to fresh, empty SQL stores.

    base_url uses "localhost" because TrustedHostMiddleware rejects the
    TestClient default host ("testserver").
    """
    url = sql_url("api")
    credential_store = SqlCredentialStore(url)
    order_repo = SqlOrderRepository(url)
    app.router.lifespan_context = _patch_lifespan(credential_store, order_repo)

    with TestClient(app, base_url="http://localhost", raise_server_exceptions=False) as client:
        yield client

    order_repo.close()
    credential_store.close()


def register_owner(
    client: TestClient,
    email: str = "a@x.com",
    organization_name: str = "Flowers Co",
    password: str = PASSWORD,
) -> dict:
    """Register an organization over HTTP and return the AuthResponse JSON.

    The client's cookie jar is cleared so later requests authenticate only
    with the headers a test passes explicitly.
    """
    resp = client.post(
        "/api/v1/auth/register",
        json={
            "email": email,
            "password": password,
            "name": "Owner",
            "organization_name": organization_name,
        },
    )
    assert resp.status_code == 201, resp.text
    client.cookies.clear()
    return resp.json()


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}
