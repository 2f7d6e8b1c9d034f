"""
tests/conftest.py -- Shared test fixtures for the payroll auth tests.

This module provides:
  - make_service(): builds a SessionService over an isolated SQLite database
  - service: function-scoped SessionService on a private in-memory DB
  - api_client: TestClient over the real FastAPI app with a patched lifespan

Design: The API fixture uses a named shared-memory SQLite URI (not plain
:memory:) because TestClient runs sync route handlers in a thread pool.
Plain :memory: DBs are per-connection and would present a blank schema to
each worker thread. The named URI format
(file:name?mode=memory&cache=shared&uri=true) shares one in-memory instance
across all connections in the same process.

Environment variables must be set before any auth/core import so
get_settings() auto-generates SECRET_KEY in dev mode, bcrypt runs at its
minimum cost, and the login rate limit does not trip during the suite.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager

# CRITICAL: set before any auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.passwords import PasswordHasher
from auth.service import SessionService
from auth.store import RefreshTokenStore, UserStore
from auth.tokens import AccessTokenCodec

TEST_SECRET = "test-secret-key-that-is-at-least-32-characters"
ACCESS_TTL = 900
REFRESH_TTL = 7 * 24 * 3600


def make_service(
    db_url: str = "sqlite:///:memory:",
    rotate_refresh_tokens: bool = True,
    max_refresh_tokens_per_user: int = 5,
) -> SessionService:
    """Build a SessionService wired exactly like production, but cheap."""
    users = UserStore(db_url=db_url)
    return SessionService(
        users=users,
        refresh_tokens=RefreshTokenStore(users.engine, ttl_seconds=REFRESH_TTL),
        hasher=PasswordHasher(rounds=4),
        codec=AccessTokenCodec(TEST_SECRET, ttl_seconds=ACCESS_TTL),
        rotate_refresh_tokens=rotate_refresh_tokens,
        max_refresh_tokens_per_user=max_refresh_tokens_per_user,
    )


def shared_memory_url(name: str) -> str:
    return f"sqlite:///file:{name}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


@pytest.fixture
def service() -> Generator[SessionService, None, None]:
    svc = make_service()
    yield svc
    svc.users.close()


@pytest.fixture
def service_factory() -> Generator:
    """Yield make_service; every service it builds is closed at teardown."""
    built: list[SessionService] = []

    def factory(**kwargs) -> SessionService:
        svc = make_service(**kwargs)
        built.append(svc)
        return svc

    yield factory
    for svc in built:
        svc.users.close()


def _patch_lifespan(session_service: SessionService):
    """Return an async context manager that replaces the real lifespan.

    Wires the pre-built test service into app.state so TestClient routes see
    an isolated test DB rather than the configured database.

    The purge_task is a long-sleeping coroutine (a real asyncio.Task is
    required; a MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.session_service = session_service
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, SessionService], None, None]:
    """Yield (client, service) for API integration tests.

    One TestClient per test module for speed. Tests register their own
    users with unique names so they do not depend on execution order.
    """
    svc = make_service(db_url=shared_memory_url("test_auth_api"))
    app.router.lifespan_context = _patch_lifespan(svc)

    with TestClient(app, raise_server_exceptions=False) as client:
        yield client, svc

    svc.users.close()
